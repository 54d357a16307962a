# services/merge_planner.py
"""
Merge planning for duplicate conversation groups.
Pure computation over already-loaded records: no Firestore access here.
"""
import dataclasses
from typing import List, Mapping, Optional, Set, Tuple

from services.crm_contracts import ConversationRecord, MergeGroup, MergePlan, Message
from services.migration_errors import GroupMergeError


def _primary_rank(record: ConversationRecord):
    # Most messages, then most recent activity, then smallest id
    return (-len(record.messages), -record.last_activity_at.timestamp(), record.id)


def choose_primary(members: List[ConversationRecord]) -> ConversationRecord:
    return min(members, key=_primary_rank)


def _merge_messages(primary: ConversationRecord, others: List[ConversationRecord]) -> Tuple[Tuple[Message, ...], int]:
    """Union of all messages, first occurrence of each (direction, sent_at, body) kept, oldest first."""
    merged: List[Message] = []
    seen: Set[tuple] = set()
    for message in primary.messages:
        if message.dedup_key not in seen:
            seen.add(message.dedup_key)
            merged.append(message)
    primary_count = len(merged)

    for record in others:
        for message in record.messages:
            if message.dedup_key in seen:
                continue
            seen.add(message.dedup_key)
            if not message.source_conversation_id:
                message = message.model_copy(update={"source_conversation_id": record.id})
            merged.append(message)

    # sorted() is stable: equal timestamps keep primary-first order
    merged.sort(key=lambda m: m.sent_at)
    return tuple(merged), len(merged) - primary_count


def plan_merge(
    group: MergeGroup,
    records_by_id: Mapping[str, ConversationRecord],
    primary_id: Optional[str] = None,
) -> MergePlan:
    """
    Build the merge plan for one duplicate group.
    primary_id overrides the automatic choice (operator-selected merges).
    """
    missing = [member_id for member_id in group.members if member_id not in records_by_id]
    if missing:
        raise GroupMergeError(group.group_key, f"Records not loaded: {', '.join(missing)}")
    if len(group.members) < 2:
        raise GroupMergeError(group.group_key, "A merge group needs at least 2 records")

    members = [records_by_id[member_id] for member_id in group.members]
    if primary_id is None:
        primary = choose_primary(members)
    elif primary_id in group.members:
        primary = records_by_id[primary_id]
    else:
        raise GroupMergeError(group.group_key, f"Primary {primary_id} is not a member of the group")

    others = [record for record in members if record.id != primary.id]
    merged_messages, copied_count = _merge_messages(primary, others)

    merged_tags: Set[str] = set()
    for record in members:
        merged_tags.update(record.tags)

    return MergePlan(
        group=dataclasses.replace(group, primary_id=primary.id),
        merged_messages=merged_messages,
        merged_tags=tuple(sorted(merged_tags)),
        discarded_ids=tuple(record.id for record in others),
        copied_message_count=copied_count,
        latest_activity_at=max(record.last_activity_at for record in members),
    )
