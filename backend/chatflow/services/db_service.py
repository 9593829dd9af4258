# /chatflow/services/db_service.py

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from chatflow.config.settings import settings
from chatflow.models.execution import (
    EFFECT_DONE_STATUSES, FollowUpExecutionLog, FollowUpSchedule, FollowUpStatus, StepExecutionRecord
)
from chatflow.models.flow import FlowStatus, FlowVersion
from chatflow.models.session import FlowSession, SessionStatus
from chatflow.services.crm_service import CrmGateway
from chatflow.services.flow_source import FlowDefinitionSource
from chatflow.services.lock_service import LockManager
from chatflow.services.session_store import ScheduleStore, SessionStore
from chatflow.utils.errors import ConcurrencyError, StoreUnavailableError
from chatflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

SESSIONS = "flow_sessions"
STEP_RECORDS = "flow_step_executions"
SCHEDULES = "flow_follow_up_schedules"
EXECUTION_LOG = "flow_follow_up_execution_log"
FLOW_VERSIONS = "flow_versions"


class DatabaseService:
    """Owns the MongoDB client and the indexes the flow engine relies on."""

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            # Present only while the session is open: one open session per (flow, conversation).
            (SESSIONS, [("open_key", 1)], {"unique": True, "sparse": True}),
            (SESSIONS, [("tenant_id", 1), ("conversation_id", 1), ("last_activity_at", -1)], {}),
            (SESSIONS, [("status", 1), ("expires_at", 1)], {}),
            (STEP_RECORDS, [("session_id", 1), ("step_order", 1), ("started_at", 1)], {}),
            (STEP_RECORDS, [("session_id", 1), ("node_id", 1), ("step_order", 1), ("status", 1)], {}),
            (SCHEDULES, [("status", 1), ("scheduled_for", 1)], {}),
            (SCHEDULES, [("session_id", 1)], {}),
            (EXECUTION_LOG, [("schedule_id", 1), ("executed_at", 1)], {}),
            (FLOW_VERSIONS, [("flow_id", 1), ("version", 1)], {"unique": True}),
            (FLOW_VERSIONS, [("tenant_id", 1), ("status", 1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    def close(self):
        self.client.close()


async def _run(operation: str, func):
    """Run one database call, counting it and mapping driver errors onto StoreUnavailableError."""
    try:
        result = await func()
    except (DuplicateKeyError, ConcurrencyError):
        raise
    except PyMongoError as e:
        database_operations_counter.labels(operation=operation, status="failed").inc()
        logger.exception(f"Database operation {operation} failed: {type(e).__name__}")
        raise StoreUnavailableError(f"Database operation {operation} failed: {e}")
    database_operations_counter.labels(operation=operation, status="success").inc()
    return result


def _session_document(session: FlowSession) -> Dict[str, Any]:
    doc = session.model_dump()
    doc["_id"] = session.session_id
    if session.open_key:
        doc["open_key"] = session.open_key
    return doc


def _session_from_document(doc: Optional[Dict[str, Any]]) -> Optional[FlowSession]:
    if not doc:
        return None
    doc = {k: v for k, v in doc.items() if k not in ("_id", "open_key")}
    return FlowSession.model_validate(doc)


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k != "_id"}


# ==================== Sessions & step records ====================

class MongoSessionStore(SessionStore):
    def __init__(self, db, locks: Optional[LockManager] = None):
        super().__init__(locks)
        self.db = db

    async def load_session(self, session_id: str) -> Optional[FlowSession]:
        doc = await _run("load_session", lambda: self.db[SESSIONS].find_one({"_id": session_id}))
        return _session_from_document(doc)

    async def _replace_session(self, session: FlowSession, expected_revision: int) -> FlowSession:
        result = await _run("commit_session", lambda: self.db[SESSIONS].replace_one(
            {"_id": session.session_id, "revision": expected_revision},
            _session_document(session),
        ))
        if result.matched_count == 0:
            raise ConcurrencyError(f"Session {session.session_id} changed since it was loaded")
        return session

    async def create_session(self, session: FlowSession) -> FlowSession:
        try:
            await _run("create_session", lambda: self.db[SESSIONS].insert_one(_session_document(session)))
        except DuplicateKeyError:
            database_operations_counter.labels(operation="create_session", status="conflict").inc()
            raise ConcurrencyError(f"An open session already exists for {session.flow_id}:{session.conversation_id}")
        return session

    async def find_open_session(self, flow_id: str, conversation_id: str) -> Optional[FlowSession]:
        doc = await _run("find_open_session", lambda: self.db[SESSIONS].find_one(
            {"open_key": f"{flow_id}:{conversation_id}"}
        ))
        return _session_from_document(doc)

    async def find_open_sessions_for_conversation(self, tenant_id: str, conversation_id: str) -> List[FlowSession]:
        cursor = self.db[SESSIONS].find(
            {"tenant_id": tenant_id, "conversation_id": conversation_id, "open_key": {"$exists": True}}
        ).sort("last_activity_at", -1)
        docs = await _run("find_open_sessions", lambda: cursor.to_list(length=50))
        return [_session_from_document(doc) for doc in docs]

    async def find_latest_session_for_conversation(self, tenant_id: str, conversation_id: str) -> Optional[FlowSession]:
        doc = await _run("find_latest_session", lambda: self.db[SESSIONS].find_one(
            {"tenant_id": tenant_id, "conversation_id": conversation_id},
            sort=[("last_activity_at", -1)],
        ))
        return _session_from_document(doc)

    async def find_session_with_message(self, tenant_id: str, conversation_id: str, dedupe_key: str) -> Optional[FlowSession]:
        doc = await _run("find_session_with_message", lambda: self.db[SESSIONS].find_one(
            {"tenant_id": tenant_id, "conversation_id": conversation_id, "processed_message_ids": dedupe_key}
        ))
        return _session_from_document(doc)

    async def find_expired_sessions(self, now: datetime, limit: int = 100) -> List[FlowSession]:
        cursor = self.db[SESSIONS].find({
            "status": {"$in": [SessionStatus.ACTIVE.value, SessionStatus.WAITING.value]},
            "expires_at": {"$lt": now},
        }).sort("expires_at", 1).limit(limit)
        docs = await _run("find_expired_sessions", lambda: cursor.to_list(length=limit))
        return [_session_from_document(doc) for doc in docs]

    async def append_step_record(self, record: StepExecutionRecord) -> None:
        doc = record.model_dump()
        doc["_id"] = record.record_id
        await _run("append_step_record", lambda: self.db[STEP_RECORDS].insert_one(doc))

    async def update_step_record(self, record: StepExecutionRecord) -> None:
        doc = record.model_dump()
        doc["_id"] = record.record_id
        await _run("update_step_record", lambda: self.db[STEP_RECORDS].replace_one({"_id": record.record_id}, doc))

    async def list_step_records(self, session_id: str) -> List[StepExecutionRecord]:
        cursor = self.db[STEP_RECORDS].find({"session_id": session_id}).sort([("step_order", 1), ("started_at", 1), ("retry_count", 1)])
        docs = await _run("list_step_records", lambda: cursor.to_list(length=None))
        return [StepExecutionRecord.model_validate(_strip_id(doc)) for doc in docs]

    async def find_effect_record(self, session_id: str, node_id: str, step_order: int) -> Optional[StepExecutionRecord]:
        doc = await _run("find_effect_record", lambda: self.db[STEP_RECORDS].find_one(
            {
                "session_id": session_id,
                "node_id": node_id,
                "step_order": step_order,
                "status": {"$in": [status.value for status in EFFECT_DONE_STATUSES]},
            },
            sort=[("started_at", -1), ("retry_count", -1)],
        ))
        return StepExecutionRecord.model_validate(_strip_id(doc)) if doc else None


# ==================== Follow-up schedules ====================

class MongoScheduleStore(ScheduleStore):
    def __init__(self, db):
        self.db = db

    async def save_schedule(self, schedule: FollowUpSchedule) -> bool:
        doc = schedule.model_dump()
        doc["_id"] = schedule.schedule_id
        try:
            await _run("save_schedule", lambda: self.db[SCHEDULES].insert_one(doc))
        except DuplicateKeyError:
            return False
        return True

    async def get_schedule(self, schedule_id: str) -> Optional[FollowUpSchedule]:
        doc = await _run("get_schedule", lambda: self.db[SCHEDULES].find_one({"_id": schedule_id}))
        return FollowUpSchedule.model_validate(_strip_id(doc)) if doc else None

    async def claim_due(self, now: datetime, limit: int) -> List[FollowUpSchedule]:
        claimed = []
        for _ in range(limit):
            doc = await _run("claim_schedule", lambda: self.db[SCHEDULES].find_one_and_update(
                {"status": FollowUpStatus.SCHEDULED.value, "scheduled_for": {"$lte": now}},
                {"$set": {"status": FollowUpStatus.SENT.value, "sent_at": now}},
                sort=[("scheduled_for", 1)],
                return_document=ReturnDocument.AFTER,
            ))
            if not doc:
                break
            claimed.append(FollowUpSchedule.model_validate(_strip_id(doc)))
        return claimed

    async def update_schedule(self, schedule: FollowUpSchedule) -> None:
        doc = schedule.model_dump()
        doc["_id"] = schedule.schedule_id
        await _run("update_schedule", lambda: self.db[SCHEDULES].replace_one(
            {"_id": schedule.schedule_id}, doc, upsert=True
        ))

    async def cancel_for_session(self, session_id: str) -> int:
        result = await _run("cancel_schedules", lambda: self.db[SCHEDULES].update_many(
            {"session_id": session_id, "status": FollowUpStatus.SCHEDULED.value},
            {"$set": {"status": FollowUpStatus.CANCELLED.value}},
        ))
        return result.modified_count

    async def list_schedules(self, session_id: str) -> List[FollowUpSchedule]:
        cursor = self.db[SCHEDULES].find({"session_id": session_id}).sort("scheduled_for", 1)
        docs = await _run("list_schedules", lambda: cursor.to_list(length=None))
        return [FollowUpSchedule.model_validate(_strip_id(doc)) for doc in docs]

    async def append_execution_log(self, entry: FollowUpExecutionLog) -> None:
        doc = entry.model_dump()
        doc["_id"] = entry.log_id
        await _run("append_execution_log", lambda: self.db[EXECUTION_LOG].insert_one(doc))

    async def list_execution_logs(self, schedule_id: str) -> List[FollowUpExecutionLog]:
        cursor = self.db[EXECUTION_LOG].find({"schedule_id": schedule_id}).sort("executed_at", 1)
        docs = await _run("list_execution_logs", lambda: cursor.to_list(length=None))
        return [FollowUpExecutionLog.model_validate(_strip_id(doc)) for doc in docs]


# ==================== Flow definitions ====================

class MongoFlowSource(FlowDefinitionSource):
    def __init__(self, db):
        self.db = db

    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersion]:
        doc = await _run("get_flow_version", lambda: self.db[FLOW_VERSIONS].find_one(
            {"flow_id": flow_id, "version": version}
        ))
        return FlowVersion.model_validate(_strip_id(doc)) if doc else None

    async def get_active_version(self, flow_id: str) -> Optional[FlowVersion]:
        doc = await _run("get_active_version", lambda: self.db[FLOW_VERSIONS].find_one(
            {"flow_id": flow_id, "status": FlowStatus.ACTIVE.value},
            sort=[("version", -1)],
        ))
        return FlowVersion.model_validate(_strip_id(doc)) if doc else None

    async def list_active_flows(self, tenant_id: str) -> List[FlowVersion]:
        cursor = self.db[FLOW_VERSIONS].find({"tenant_id": tenant_id, "status": FlowStatus.ACTIVE.value})
        docs = await _run("list_active_flows", lambda: cursor.to_list(length=None))
        return [FlowVersion.model_validate(_strip_id(doc)) for doc in docs]


# ==================== CRM ====================

class MongoCrmGateway(CrmGateway):
    def __init__(self, db):
        self.db = db

    async def disable_bot(self, tenant_id: str, conversation_id: str, reason: str | None = None) -> None:
        await _run("disable_bot", lambda: self.db.conversations.update_one(
            {"tenant_id": tenant_id, "conversation_id": conversation_id},
            {"$set": {"bot_disabled": True, "bot_disabled_reason": reason}},
            upsert=True,
        ))
        logger.info(f"Bot disabled for conversation {conversation_id}")

    async def update_pipeline_stage(self, tenant_id: str, contact_id: str, pipeline_id: str | None, stage_id: str) -> None:
        await _run("update_pipeline_stage", lambda: self.db.contacts.update_one(
            {"tenant_id": tenant_id, "contact_id": contact_id},
            {"$set": {"pipeline_id": pipeline_id, "pipeline_stage_id": stage_id}},
            upsert=True,
        ))

    async def update_contact_properties(self, tenant_id: str, contact_id: str, properties: Dict[str, Any]) -> None:
        await _run("update_contact_properties", lambda: self.db.contacts.update_one(
            {"tenant_id": tenant_id, "contact_id": contact_id},
            {"$set": {f"properties.{key}": value for key, value in properties.items()}},
            upsert=True,
        ))
