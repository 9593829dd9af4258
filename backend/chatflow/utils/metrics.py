# /chatflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics for the flow engine live here.

# Engine
node_executions_counter = Counter('flow_node_executions_total', 'Node execution attempts', ['node_type', 'status'])
session_transitions_counter = Counter('flow_session_transitions_total', 'Session status transitions', ['status'])
step_duration_histogram = Histogram('flow_step_duration_seconds', 'Node execution time in seconds', ['node_type'])

# Scheduler
inbound_events_counter = Counter('flow_inbound_events_total', 'Events handled by the execution scheduler', ['kind', 'outcome'])
lock_wait_histogram = Histogram('flow_lock_wait_seconds', 'Time spent waiting for a session lock')
follow_up_counter = Counter('flow_follow_ups_total', 'Follow-up schedules processed', ['action', 'status'])

# Collaborators
external_calls_counter = Counter('flow_external_calls_total', 'Calls to channel, AI and webhook providers', ['service', 'status'])
database_operations_counter = Counter('flow_database_operations_total', 'Database operations', ['operation', 'status'])

# HTTP
response_time_histogram = Histogram('flow_http_response_seconds', 'HTTP response time', ['endpoint'])
