# services/conversation_identity.py
"""
Conversation identity: which records belong to the same real-world counterparty.
Records are keyed by (channel, identity_key) where the key comes from the phone
normalizer for phone channels, and from the channel user id / email otherwise.
"""
import logging
from typing import Dict, List, Sequence, Tuple

from services.crm_contracts import Channel, ConversationRecord, MergeGroup, UnmatchedRecord
from services.migration_errors import NormalizationError
from utils.phone_utils import normalize_phone

logger = logging.getLogger(__name__)

IdentityBucketKey = Tuple[Channel, str]


def identity_key_for(record: ConversationRecord) -> str:
    """Normalized identity key of a record. Raises NormalizationError."""
    raw = record.raw_identity
    if record.channel == Channel.EMAIL:
        email = (raw or "").strip().lower()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise NormalizationError(raw, "not an email address")
        return email
    if record.channel == Channel.INSTAGRAM:
        user_id = (raw or "").strip().lower()
        if not user_id:
            raise NormalizationError(raw, "empty")
        return user_id
    return normalize_phone(raw)


def partition_by_identity(
    records: Sequence[ConversationRecord],
) -> Tuple[Dict[IdentityBucketKey, List[str]], List[UnmatchedRecord]]:
    """
    Bucket record ids by (channel, identity_key), keeping first-seen bucket order and
    input order inside each bucket. Records whose identity fails normalization are
    returned separately and never grouped.
    """
    buckets: Dict[IdentityBucketKey, List[str]] = {}
    unmatched: List[UnmatchedRecord] = []
    for record in records:
        try:
            key = identity_key_for(record)
        except NormalizationError as e:
            unmatched.append(UnmatchedRecord(
                id=record.id,
                channel=record.channel,
                raw_identity=record.raw_identity,
                reason=e.reason,
            ))
            continue
        buckets.setdefault((record.channel, key), []).append(record.id)

    if unmatched:
        logger.info("Identity partition: %d records could not be normalized", len(unmatched))
    return buckets, unmatched


def groups_from_buckets(buckets: Dict[IdentityBucketKey, List[str]]) -> List[MergeGroup]:
    return [
        MergeGroup(identity_key=key, channel=channel, members=tuple(member_ids))
        for (channel, key), member_ids in buckets.items()
        if len(member_ids) > 1
    ]


def find_duplicate_groups(records: Sequence[ConversationRecord]) -> List[MergeGroup]:
    """Groups of 2+ records sharing a (channel, identity_key)."""
    buckets, _ = partition_by_identity(records)
    return groups_from_buckets(buckets)
