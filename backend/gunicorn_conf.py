# backend/gunicorn_conf.py

# Gunicorn config file for the engine API: gunicorn -c gunicorn_conf.py
# Several workers need MONGO_URI and REDIS_URL so that sessions and locks
# are shared between them.

import os

wsgi_app = "chatflow.main:app"

# Basic configuration
bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"

# Behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# Send access and error logs to stdout and stderr
accesslog = "-"
errorlog = "-"
loglevel = "info"
