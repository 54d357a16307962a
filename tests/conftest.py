import datetime
import os

import pytest

# Never touch a real Firestore project from tests.
os.environ.setdefault("TESTING_MODE", "true")

import config
from services.crm_contracts import UTC, ConversationRecord, Message
from services.migration_errors import GroupMergeError, LoadError, MigrationInProgressError, RecordWriteError
from storage.conversation_store import ConversationStore


BASE_TIME = datetime.datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


class FakeConversationStore(ConversationStore):
    """In-memory store that records every write so tests can count them."""

    def __init__(self, records=(), collection=config.FIRESTORE_CONVERSATIONS_COLLECTION):
        self.collections = {collection: {record.id: record for record in records}}
        self.writes = []
        self.failing_groups = set()
        self.crashing_groups = set()
        self.failing_records = set()
        self.scan_error = None
        self.lock_owner = None
        self.lost_lock = False
        self.heartbeat_error = None
        self.release_error = None

    def record(self, record_id, collection=config.FIRESTORE_CONVERSATIONS_COLLECTION):
        return self.collections[collection].get(record_id)

    def scan(self, collection, limit, channels=None):
        if self.scan_error is not None:
            raise self.scan_error
        records = [
            record for record in self.collections.get(collection, {}).values()
            if not record.archived and (not channels or record.channel in channels)
        ]
        return records[:limit], []

    def get_many(self, collection, ids):
        stored = self.collections.get(collection, {})
        return {record_id: stored[record_id] for record_id in ids if record_id in stored}

    def commit_merge(self, collection, plan, update_times, delete_duplicates=True, requested_by=None):
        if plan.group.group_key in self.failing_groups:
            raise GroupMergeError(plan.group.group_key, "simulated write failure")
        if plan.group.group_key in self.crashing_groups:
            raise RuntimeError("collaborator exploded")
        stored = self.collections[collection]
        stored[plan.primary_id] = stored[plan.primary_id].model_copy(update={
            "messages": list(plan.merged_messages),
            "tags": list(plan.merged_tags),
            "last_activity_at": plan.latest_activity_at,
        })
        for discarded_id in plan.discarded_ids:
            if delete_duplicates:
                del stored[discarded_id]
            else:
                stored[discarded_id] = stored[discarded_id].model_copy(
                    update={"archived": True, "status": "closed"}
                )
        self.writes.append(("merge", plan.group.group_key, requested_by))

    def set_identity_key(self, collection, record_id, identity_key, update_time=None):
        if record_id in self.failing_records:
            raise RecordWriteError(record_id, "simulated write failure")
        stored = self.collections[collection]
        stored[record_id] = stored[record_id].model_copy(update={"identity_key": identity_key})
        self.writes.append(("identity_key", record_id, identity_key))

    def acquire_lock(self, owner, ttl_seconds):
        if self.lock_owner is not None and self.lock_owner != owner:
            raise MigrationInProgressError(self.lock_owner)
        self.lock_owner = owner
        self.writes.append(("lock", owner))

    def refresh_lock(self, owner, ttl_seconds):
        if self.heartbeat_error is not None:
            raise self.heartbeat_error
        if self.lost_lock or self.lock_owner != owner:
            raise MigrationInProgressError(self.lock_owner)
        self.writes.append(("heartbeat", owner))

    def release_lock(self, owner):
        if self.release_error is not None:
            raise self.release_error
        if self.lock_owner == owner:
            self.lock_owner = None
        self.writes.append(("unlock", owner))

    @property
    def merge_writes(self):
        return [write for write in self.writes if write[0] == "merge"]


@pytest.fixture
def make_record():
    def _make(record_id, phone="+905314942594", message_count=1, last_activity=None,
              channel="whatsapp", tags=(), identity_key=None, bodies=None):
        bodies = bodies or [f"{record_id} message {index}" for index in range(message_count)]
        messages = [
            Message(
                id=f"{record_id}-{index}",
                direction="inbound" if index % 2 == 0 else "outbound",
                body=body,
                sent_at=BASE_TIME + datetime.timedelta(minutes=index),
            )
            for index, body in enumerate(bodies)
        ]
        return ConversationRecord(
            id=record_id,
            raw_identity=phone,
            identity_key=identity_key,
            channel=channel,
            messages=messages,
            tags=list(tags),
            last_activity_at=last_activity or BASE_TIME,
            created_at=BASE_TIME - datetime.timedelta(days=30),
        )
    return _make


@pytest.fixture
def failing_scan_store(make_record):
    store = FakeConversationStore([make_record("a"), make_record("b")])
    store.scan_error = LoadError("simulated Firestore outage")
    return store


@pytest.fixture
def store_factory():
    return FakeConversationStore
