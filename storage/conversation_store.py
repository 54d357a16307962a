# storage/conversation_store.py
"""
Persistence for CRM conversations used by the migration runner.

ConversationStore is the interface the runner talks to; FirestoreConversationStore
is the production implementation. Each merge group is written in one Firestore
batch so a group is either fully merged or untouched.
"""
import datetime
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from firebase_admin import firestore
from google.api_core import exceptions as gcp_exceptions
from pydantic import ValidationError

import config
from services.crm_contracts import (
    Channel,
    ConversationRecord,
    MergePlan,
    UnmatchedRecord,
    parse_timestamp_utc,
    utc_now,
)
from services.migration_errors import (
    GroupMergeError,
    LoadError,
    MigrationInProgressError,
    RecordWriteError,
)

logger = logging.getLogger(__name__)

# Errors worth retrying: the batch was not applied
RETRYABLE_ERRORS = (
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.Aborted,
    gcp_exceptions.InternalServerError,
)

ScanResult = Tuple[List[ConversationRecord], List[UnmatchedRecord]]


class ConversationStore(ABC):
    """Storage interface for the conversation migration runner."""

    @abstractmethod
    def scan(self, collection: str, limit: int, channels: Optional[Set[Channel]] = None) -> ScanResult:
        """
        Load up to `limit` live (non-archived) conversations in a stable order.
        Returns (records, rejected); rejected holds documents that failed validation.
        Raises LoadError if the store cannot be read.
        """

    @abstractmethod
    def get_many(self, collection: str, ids: Iterable[str]) -> Dict[str, ConversationRecord]:
        """Load specific conversations by id. Missing ids are absent from the result."""

    @abstractmethod
    def commit_merge(
        self,
        collection: str,
        plan: MergePlan,
        update_times: Mapping[str, Any],
        delete_duplicates: bool = True,
        requested_by: Optional[str] = None,
    ) -> None:
        """Apply one merge plan atomically. Raises GroupMergeError."""

    @abstractmethod
    def set_identity_key(self, collection: str, record_id: str, identity_key: str, update_time: Any = None) -> None:
        """Persist a normalized identity key on one record. Raises RecordWriteError."""

    @abstractmethod
    def acquire_lock(self, owner: str, ttl_seconds: int) -> None:
        """Take the migration lock. Raises MigrationInProgressError if another owner holds it."""

    @abstractmethod
    def refresh_lock(self, owner: str, ttl_seconds: int) -> None:
        """Extend the lock expiry while a run is making progress."""

    @abstractmethod
    def release_lock(self, owner: str) -> None:
        """Drop the lock if `owner` still holds it."""


class FirestoreConversationStore(ConversationStore):

    def __init__(self, db, page_size: int = None, commit_retries: int = None, retry_delay_seconds: float = 0.5):
        self.db = db
        self.page_size = page_size or config.MIGRATION_PAGE_SIZE
        self.commit_retries = config.MIGRATION_COMMIT_RETRIES if commit_retries is None else commit_retries
        self.retry_delay_seconds = retry_delay_seconds

    def _lock_ref(self):
        return self.db.collection(config.FIRESTORE_MIGRATION_LOCKS_COLLECTION).document(
            config.MIGRATION_LOCK_DOCUMENT_ID
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def scan(self, collection, limit, channels=None):
        records: List[ConversationRecord] = []
        rejected: List[UnmatchedRecord] = []
        seen_ids: Set[str] = set()
        last_snapshot = None
        pages = 0

        try:
            while len(records) < limit:
                # Ordering by document id keeps documents without created_at in the scan
                query = self.db.collection(collection).order_by("__name__").limit(self.page_size)
                if last_snapshot is not None:
                    query = query.start_after(last_snapshot)
                page = list(query.stream())
                pages += 1
                if not page:
                    break

                for snapshot in page:
                    if snapshot.id in seen_ids:
                        continue
                    seen_ids.add(snapshot.id)
                    data = snapshot.to_dict() or {}
                    try:
                        record = ConversationRecord.from_firestore(snapshot.id, data, snapshot.update_time)
                    except ValidationError as e:
                        logger.warning("Skipping invalid conversation %s/%s: %s", collection, snapshot.id, e)
                        rejected.append(UnmatchedRecord(
                            id=snapshot.id,
                            channel=Channel.parse(data.get("channel")),
                            raw_identity="",
                            reason="invalid document",
                        ))
                        continue
                    if record.archived:
                        continue
                    if channels and record.channel not in channels:
                        continue
                    records.append(record)
                    if len(records) >= limit:
                        break

                if len(page) < self.page_size:
                    break
                last_snapshot = page[-1]
        except gcp_exceptions.GoogleAPIError as e:
            raise LoadError(f"Failed to scan {collection} after {pages} page(s): {e}") from e

        logger.info("Scanned %s: %d records loaded over %d page(s)", collection, len(records), pages)
        return records, rejected

    def get_many(self, collection, ids):
        refs = [self.db.collection(collection).document(record_id) for record_id in dict.fromkeys(ids)]
        found: Dict[str, ConversationRecord] = {}
        try:
            for snapshot in self.db.get_all(refs):
                if not snapshot.exists:
                    continue
                found[snapshot.id] = ConversationRecord.from_firestore(
                    snapshot.id, snapshot.to_dict(), snapshot.update_time
                )
        except gcp_exceptions.GoogleAPIError as e:
            raise LoadError(f"Failed to load conversations from {collection}: {e}") from e
        except ValidationError as e:
            raise LoadError(f"Invalid conversation document in {collection}: {e}") from e
        return found

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _precondition(self, update_time):
        if update_time is None:
            return None
        return self.db.write_option(last_update_time=update_time)

    def _build_merge_batch(self, collection, plan, update_times, delete_duplicates, requested_by):
        batch = self.db.batch()
        conversations = self.db.collection(collection)

        batch.update(
            conversations.document(plan.primary_id),
            {
                "messages": [message.to_firestore() for message in plan.merged_messages],
                "message_count": plan.merged_message_count,
                "tags": list(plan.merged_tags),
                "last_activity_at": plan.latest_activity_at,
                "merged_conversations": firestore.ArrayUnion(list(plan.discarded_ids)),
                "last_merge_at": firestore.SERVER_TIMESTAMP,
                "last_merge_by": requested_by,
                "updated_at": firestore.SERVER_TIMESTAMP,
            },
            option=self._precondition(update_times.get(plan.primary_id)),
        )

        for discarded_id in plan.discarded_ids:
            ref = conversations.document(discarded_id)
            option = self._precondition(update_times.get(discarded_id))
            if delete_duplicates:
                batch.delete(ref, option=option)
            else:
                batch.update(
                    ref,
                    {
                        "status": "closed",
                        "archived": True,
                        "archived_at": firestore.SERVER_TIMESTAMP,
                        "merged_into": plan.primary_id,
                        "updated_at": firestore.SERVER_TIMESTAMP,
                    },
                    option=option,
                )
        return batch

    def commit_merge(self, collection, plan, update_times, delete_duplicates=True, requested_by=None):
        group_key = plan.group.group_key
        if len(plan.group.members) > config.MAX_GROUP_SIZE:
            raise GroupMergeError(
                group_key,
                f"Group has {len(plan.group.members)} records; at most {config.MAX_GROUP_SIZE} fit in one batch",
            )

        attempts = self.commit_retries + 1
        for attempt in range(1, attempts + 1):
            # A committed (or failed) batch cannot be reused
            batch = self._build_merge_batch(collection, plan, update_times, delete_duplicates, requested_by)
            try:
                batch.commit()
                return
            except RETRYABLE_ERRORS as e:
                if attempt >= attempts:
                    raise GroupMergeError(group_key, f"Commit failed after {attempts} attempts: {e}") from e
                logger.warning("Transient error merging %s (attempt %d/%d): %s", group_key, attempt, attempts, e)
                time.sleep(self.retry_delay_seconds * attempt)
            except gcp_exceptions.FailedPrecondition as e:
                raise GroupMergeError(group_key, f"A record changed since it was loaded: {e}") from e
            except gcp_exceptions.NotFound as e:
                raise GroupMergeError(group_key, f"A record no longer exists: {e}") from e
            except gcp_exceptions.GoogleAPIError as e:
                raise GroupMergeError(group_key, f"Commit failed: {e}") from e

    def set_identity_key(self, collection, record_id, identity_key, update_time=None):
        ref = self.db.collection(collection).document(record_id)
        try:
            ref.update(
                {
                    "identity_key": identity_key,
                    "identity_normalized_at": firestore.SERVER_TIMESTAMP,
                },
                option=self._precondition(update_time),
            )
        except gcp_exceptions.GoogleAPIError as e:
            raise RecordWriteError(record_id, f"Failed to store identity key: {e}") from e

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    def acquire_lock(self, owner, ttl_seconds):
        lock_ref = self._lock_ref()

        @firestore.transactional
        def _acquire(transaction):
            snapshot = lock_ref.get(transaction=transaction)
            now = utc_now()
            if snapshot.exists:
                data = snapshot.to_dict() or {}
                holder = data.get("owner")
                expires_at = parse_timestamp_utc(data.get("expires_at"))
                if holder != owner and expires_at > now:
                    raise MigrationInProgressError(holder, expires_at)
                if holder != owner:
                    logger.warning("Taking over stale migration lock from %s (expired %s)", holder, expires_at)
            transaction.set(lock_ref, {
                "owner": owner,
                "acquired_at": now,
                "heartbeat_at": now,
                "expires_at": now + datetime.timedelta(seconds=ttl_seconds),
            })

        _acquire(self.db.transaction())
        logger.info("Migration lock acquired by %s", owner)

    def refresh_lock(self, owner, ttl_seconds):
        lock_ref = self._lock_ref()

        @firestore.transactional
        def _refresh(transaction):
            snapshot = lock_ref.get(transaction=transaction)
            data = (snapshot.to_dict() or {}) if snapshot.exists else {}
            if data.get("owner") != owner:
                raise MigrationInProgressError(data.get("owner"), data.get("expires_at"))
            now = utc_now()
            transaction.update(lock_ref, {
                "heartbeat_at": now,
                "expires_at": now + datetime.timedelta(seconds=ttl_seconds),
            })

        _refresh(self.db.transaction())

    def release_lock(self, owner):
        lock_ref = self._lock_ref()

        @firestore.transactional
        def _release(transaction):
            snapshot = lock_ref.get(transaction=transaction)
            if snapshot.exists and (snapshot.to_dict() or {}).get("owner") == owner:
                transaction.delete(lock_ref)
                return True
            return False

        if _release(self.db.transaction()):
            logger.info("Migration lock released by %s", owner)
        else:
            logger.warning("Migration lock was no longer held by %s at release", owner)
