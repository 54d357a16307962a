# services/conversation_migration_service.py
"""
Conversation merge migration: find CRM conversations that belong to the same
counterparty and fold them into one primary record.

Flow per collection: paginated scan -> identity partition -> merge plan per group
-> one atomic batch per group (live runs only). Live runs hold the migration lock
for their whole duration; dry runs never write, not even the lock.
"""
import dataclasses
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

import config
from services.conversation_identity import groups_from_buckets, identity_key_for, partition_by_identity
from services.crm_contracts import (
    BackfillReport,
    Channel,
    ConversationRecord,
    MergeGroup,
    MigrationOptions,
    MigrationReport,
    UnmatchedRecord,
    utc_now,
)
from services.merge_planner import plan_merge
from services.migration_errors import (
    GroupMergeError,
    LoadError,
    MigrationError,
    MigrationInProgressError,
    NormalizationError,
    RecordWriteError,
)
from storage.conversation_store import ConversationStore, FirestoreConversationStore
from utils.utils import get_firestore_db

logger = logging.getLogger(__name__)


class ConversationMigrationService:

    def __init__(self, store: Optional[ConversationStore] = None, lock_ttl_seconds: int = None):
        self._store = store
        self.lock_ttl_seconds = lock_ttl_seconds or config.MIGRATION_LOCK_TTL_SECONDS

    @property
    def store(self) -> ConversationStore:
        if self._store is None:
            db = get_firestore_db()
            if db is None:
                raise MigrationError("Firestore is not initialized; conversation migration is unavailable")
            self._store = FirestoreConversationStore(db)
        return self._store

    # ------------------------------------------------------------------
    # Lock helpers
    # ------------------------------------------------------------------

    def _lock_owner(self, requested_by: Optional[str]) -> str:
        return f"{requested_by or 'system'}:{uuid.uuid4().hex[:12]}"

    def _heartbeat(self, owner: Optional[str]) -> Optional[str]:
        """Refresh the lock after each unit of work. Returns an error message if the lock was lost."""
        if owner is None:
            return None
        try:
            self.store.refresh_lock(owner, self.lock_ttl_seconds)
        except MigrationInProgressError as e:
            logger.error("Migration lock lost by %s: %s", owner, e)
            return str(e)
        except Exception as e:
            logger.exception("Migration lock refresh failed for %s", owner)
            return f"Lock refresh failed: {e}"
        return None

    def _release_lock(self, owner: str) -> Optional[str]:
        """Release the lock. Returns an error message instead of raising so the report survives."""
        try:
            self.store.release_lock(owner)
        except Exception as e:
            logger.exception("Migration lock release failed for %s", owner)
            return f"Lock release failed (expires after TTL): {e}"
        return None

    # ------------------------------------------------------------------
    # Duplicate merge
    # ------------------------------------------------------------------

    def run(self, options: MigrationOptions) -> MigrationReport:
        """
        Merge duplicate conversations across options.collections.

        `limit` bounds the number of records loaded over all collections together.
        A scan failure aborts the run; groups already committed stay committed and
        are reflected in the returned report.
        """
        report = MigrationReport(dry_run=options.dry_run)
        owner = None
        if not options.dry_run:
            owner = self._lock_owner(options.requested_by)
            self.store.acquire_lock(owner, self.lock_ttl_seconds)

        logger.info(
            "Conversation migration started (dry_run=%s, limit=%d, collections=%s)",
            options.dry_run, options.limit, options.collections,
        )
        remaining = options.limit
        try:
            for collection in options.collections:
                if remaining <= 0:
                    break
                try:
                    records, rejected = self.store.scan(collection, remaining, options.channels)
                except LoadError as e:
                    logger.error("Conversation scan failed, aborting run: %s", e)
                    report.aborted = True
                    report.add_error("load", str(e))
                    break

                remaining -= len(records)
                report.records_scanned += len(records)
                report.unmatched.extend(rejected)
                if not self._merge_collection(collection, records, options, report, owner):
                    break
        finally:
            if owner is not None:
                release_error = self._release_lock(owner)
                if release_error:
                    report.add_error("lock", release_error)
            report.finished_at = utc_now()

        logger.info(
            "Conversation migration finished: found=%d merged=%d failed=%d aborted=%s",
            report.groups_found, report.groups_merged, report.groups_failed, report.aborted,
        )
        return report

    def _merge_collection(
        self,
        collection: str,
        records: Sequence[ConversationRecord],
        options: MigrationOptions,
        report: MigrationReport,
        owner: Optional[str],
    ) -> bool:
        buckets, unmatched = partition_by_identity(records)
        report.unmatched.extend(unmatched)
        groups = groups_from_buckets(buckets)
        report.groups_found += len(groups)

        records_by_id = {record.id: record for record in records}
        for group in groups:
            self._merge_group(collection, group, records_by_id, options, report)
            lock_error = self._heartbeat(owner)
            if lock_error:
                report.aborted = True
                report.add_error("lock", lock_error)
                return False
        return True

    def _merge_group(
        self,
        collection: str,
        group: MergeGroup,
        records_by_id: Dict[str, ConversationRecord],
        options: MigrationOptions,
        report: MigrationReport,
        primary_id: Optional[str] = None,
    ) -> None:
        try:
            plan = plan_merge(group, records_by_id, primary_id=primary_id)
            if options.dry_run:
                report.plans.append(plan.to_preview())
                return
            update_times = {member_id: records_by_id[member_id].update_time for member_id in group.members}
            self.store.commit_merge(
                collection,
                plan,
                update_times,
                delete_duplicates=options.delete_duplicates,
                requested_by=options.requested_by,
            )
        except GroupMergeError as e:
            logger.warning("Merge failed for group %s: %s", e.group_key, e)
            report.groups_failed += 1
            report.add_error(e.group_key, str(e))
            return
        except Exception as e:
            logger.exception("Unexpected error merging group %s", group.group_key)
            report.groups_failed += 1
            report.add_error(group.group_key, str(e) or type(e).__name__)
            return

        report.groups_merged += 1
        report.messages_merged += plan.copied_message_count
        if options.delete_duplicates:
            report.records_deleted += len(plan.discarded_ids)
        else:
            report.records_archived += len(plan.discarded_ids)
        report.plans.append(plan.to_preview())
        logger.info(
            "Merged %s into %s (%d records discarded, %d messages copied)",
            group.group_key, plan.primary_id, len(plan.discarded_ids), plan.copied_message_count,
        )

    def preview(self, options: MigrationOptions) -> MigrationReport:
        return self.run(dataclasses.replace(options, dry_run=True))

    def merge_group(
        self,
        ids: Iterable[str],
        primary_id: Optional[str] = None,
        delete_duplicates: bool = True,
        requested_by: Optional[str] = None,
        collection: Optional[str] = None,
    ) -> MigrationReport:
        """
        Merge an operator-selected set of conversations.
        Raises ValueError for invalid selections and MigrationInProgressError when locked.
        """
        collection = collection or config.FIRESTORE_CONVERSATIONS_COLLECTION
        member_ids = [str(record_id).strip() for record_id in ids if str(record_id).strip()]
        member_ids = list(dict.fromkeys(member_ids))
        if len(member_ids) < 2:
            raise ValueError("At least 2 distinct conversation ids are required")
        if len(member_ids) > config.MAX_GROUP_SIZE:
            raise ValueError(f"At most {config.MAX_GROUP_SIZE} conversations can be merged at once")
        if primary_id is not None and primary_id not in member_ids:
            raise ValueError(f"Primary {primary_id} is not one of the selected conversations")

        report = MigrationReport(dry_run=False)
        owner = self._lock_owner(requested_by)
        self.store.acquire_lock(owner, self.lock_ttl_seconds)
        try:
            records_by_id = self.store.get_many(collection, member_ids)
            missing = [record_id for record_id in member_ids if record_id not in records_by_id]
            if missing:
                raise ValueError(f"Conversations not found: {', '.join(missing)}")
            channels = {records_by_id[record_id].channel for record_id in member_ids}
            if len(channels) > 1:
                raise ValueError("Conversations from different channels cannot be merged")

            report.records_scanned = len(member_ids)
            channel = channels.pop()
            anchor = records_by_id[primary_id or member_ids[0]]
            try:
                identity_key = identity_key_for(anchor)
            except NormalizationError:
                identity_key = anchor.raw_identity or anchor.id
            group = MergeGroup(identity_key=identity_key, channel=channel, members=tuple(member_ids))
            report.groups_found = 1

            options = MigrationOptions(
                dry_run=False,
                limit=len(member_ids),
                delete_duplicates=delete_duplicates,
                collections=[collection],
                requested_by=requested_by,
            )
            self._merge_group(collection, group, records_by_id, options, report, primary_id=primary_id)
        finally:
            release_error = self._release_lock(owner)
            if release_error:
                report.add_error("lock", release_error)
            report.finished_at = utc_now()
        return report

    # ------------------------------------------------------------------
    # Read-only statistics
    # ------------------------------------------------------------------

    def get_stats(
        self,
        limit: int = None,
        channels: Optional[Iterable[Channel]] = None,
        collection: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Duplicate statistics over up to `limit` records. Raises LoadError."""
        options = MigrationOptions(
            dry_run=True,
            limit=limit or config.MIGRATION_DEFAULT_LIMIT,
            channels=set(channels) if channels else None,
            collections=[collection or config.FIRESTORE_CONVERSATIONS_COLLECTION],
        )
        records, rejected = self.store.scan(options.collections[0], options.limit, options.channels)
        buckets, unmatched = partition_by_identity(records)
        groups = groups_from_buckets(buckets)

        channel_distribution: Dict[str, int] = {}
        for group in groups:
            channel_distribution[group.channel.value] = channel_distribution.get(group.channel.value, 0) + 1

        largest = sorted(groups, key=lambda g: (-len(g.members), g.group_key))[:config.MIGRATION_STATS_TOP_GROUPS]
        return {
            "success": True,
            "recordsScanned": len(records),
            "duplicateGroups": len(groups),
            "duplicateRecords": sum(len(group.members) - 1 for group in groups),
            "recordsInGroups": sum(len(group.members) for group in groups),
            "unmatchedCount": len(unmatched) + len(rejected),
            "channelDistribution": channel_distribution,
            "topGroups": [
                {
                    "groupKey": group.group_key,
                    "channel": group.channel.value,
                    "identityKey": group.identity_key,
                    "size": len(group.members),
                    "members": list(group.members),
                }
                for group in largest
            ],
        }

    # ------------------------------------------------------------------
    # Identity key backfill (phone normalization)
    # ------------------------------------------------------------------

    def backfill_identity_keys(self, options: MigrationOptions) -> BackfillReport:
        """Store the normalized identity_key on records where it is missing or stale."""
        report = BackfillReport(dry_run=options.dry_run)
        owner = None
        if not options.dry_run:
            owner = self._lock_owner(options.requested_by)
            self.store.acquire_lock(owner, self.lock_ttl_seconds)

        remaining = options.limit
        try:
            for collection in options.collections:
                if remaining <= 0:
                    break
                try:
                    records, rejected = self.store.scan(collection, remaining, options.channels)
                except LoadError as e:
                    logger.error("Conversation scan failed, aborting backfill: %s", e)
                    report.aborted = True
                    report.errors.append({"recordId": "load", "message": str(e)})
                    break

                remaining -= len(records)
                report.scanned += len(records)
                report.unmatched.extend(rejected)
                if not self._backfill_records(collection, records, report, owner):
                    break
        finally:
            if owner is not None:
                release_error = self._release_lock(owner)
                if release_error:
                    report.errors.append({"recordId": "lock", "message": release_error})

        logger.info(
            "Identity backfill finished (dry_run=%s): scanned=%d updated=%d skipped=%d failed=%d",
            report.dry_run, report.scanned, report.updated, report.skipped, report.failed,
        )
        return report

    def _backfill_records(
        self,
        collection: str,
        records: List[ConversationRecord],
        report: BackfillReport,
        owner: Optional[str],
    ) -> bool:
        for record in records:
            try:
                key = identity_key_for(record)
            except NormalizationError as e:
                report.unmatched.append(UnmatchedRecord(
                    id=record.id,
                    channel=record.channel,
                    raw_identity=record.raw_identity,
                    reason=e.reason,
                ))
                continue

            if record.identity_key == key:
                report.skipped += 1
                continue

            report.updates.append({
                "id": record.id,
                "collection": collection,
                "from": record.identity_key,
                "to": key,
            })
            if report.dry_run:
                continue

            try:
                self.store.set_identity_key(collection, record.id, key, record.update_time)
            except RecordWriteError as e:
                logger.warning("Identity backfill failed for %s: %s", e.record_id, e)
                report.failed += 1
                report.errors.append({"recordId": e.record_id, "message": str(e)})
            except Exception as e:
                logger.exception("Unexpected error storing identity key for %s", record.id)
                report.failed += 1
                report.errors.append({"recordId": record.id, "message": str(e) or type(e).__name__})
            else:
                report.updated += 1
            lock_error = self._heartbeat(owner)
            if lock_error:
                report.aborted = True
                report.errors.append({"recordId": "lock", "message": lock_error})
                return False
        return True


conversation_migration_service = ConversationMigrationService()
