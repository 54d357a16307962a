"""Canonical contracts for CRM conversations and the duplicate merge pipeline."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

import config


UTC = datetime.timezone.utc
EPOCH = datetime.datetime(1970, 1, 1, tzinfo=UTC)
INBOUND_ROLES = ("inbound", "in", "incoming", "user", "customer")


def utc_now() -> datetime.datetime:
    """Return timezone-aware current timestamp in UTC."""
    return datetime.datetime.now(UTC)


def parse_timestamp_utc(
    timestamp: Any,
    *,
    fallback: Optional[datetime.datetime] = None,
) -> datetime.datetime:
    """Parse mixed timestamp values (datetime, ISO string, epoch, Firestore Timestamp) into UTC."""
    fallback_ts = fallback or EPOCH

    if timestamp is None:
        return fallback_ts

    if isinstance(timestamp, datetime.datetime):
        dt = timestamp
    elif isinstance(timestamp, str):
        try:
            dt = datetime.datetime.fromisoformat(timestamp.strip().replace("Z", "+00:00"))
        except ValueError:
            return fallback_ts
    elif isinstance(timestamp, bool):
        return fallback_ts
    elif isinstance(timestamp, (int, float)):
        seconds = timestamp / 1000.0 if timestamp >= 1e12 else float(timestamp)
        return datetime.datetime.fromtimestamp(seconds, tz=UTC)
    elif hasattr(timestamp, "seconds"):
        return datetime.datetime.fromtimestamp(timestamp.seconds, tz=UTC)
    else:
        return fallback_ts

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    EMAIL = "email"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "Channel":
        """Map stored channel values (including legacy ones) onto the four known channels."""
        if isinstance(value, Channel):
            return value
        raw = str(value or "").strip().lower()
        aliases = {"social_instagram": "instagram", "wa": "whatsapp", "e-mail": "email"}
        try:
            return cls(aliases.get(raw, raw))
        except ValueError:
            return cls.OTHER


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Message(BaseModel):
    """One chat message. Frozen: merging copies messages, it never edits them."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    direction: Direction = Direction.INBOUND
    body: str = ""
    sent_at: datetime.datetime = EPOCH
    source_conversation_id: Optional[str] = None
    # Stored payload as loaded; written back unchanged so unknown fields survive a merge
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("direction", mode="before")
    @classmethod
    def _coerce_direction(cls, value: Any) -> Direction:
        if isinstance(value, Direction):
            return value
        role = str(value or "").strip().lower()
        return Direction.INBOUND if role in INBOUND_ROLES else Direction.OUTBOUND

    @field_validator("body", mode="before")
    @classmethod
    def _coerce_body(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @field_validator("sent_at", mode="before")
    @classmethod
    def _coerce_sent_at(cls, value: Any) -> datetime.datetime:
        return parse_timestamp_utc(value)

    @property
    def dedup_key(self) -> Tuple[str, datetime.datetime, str]:
        return (self.direction.value, self.sent_at, self.body)

    @classmethod
    def from_firestore(
        cls,
        payload: Dict[str, Any],
        index: int,
        conversation_id: str,
        fallback_sent_at: Optional[datetime.datetime] = None,
    ) -> "Message":
        """
        Build a message from a stored entry of a conversation's `messages` array.
        A missing or unparseable timestamp falls back to `fallback_sent_at`.
        """
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        message_id = payload.get("id") or payload.get("message_id") or metadata.get("message_id")
        return cls(
            id=str(message_id) if message_id else f"{conversation_id}-{index}",
            direction=payload.get("direction") or payload.get("role"),
            body=payload.get("body") if "body" in payload else payload.get("text"),
            sent_at=parse_timestamp_utc(
                payload.get("sent_at") or payload.get("timestamp"),
                fallback=fallback_sent_at,
            ),
            source_conversation_id=payload.get("source_conversation_id"),
            raw=dict(payload),
        )

    def to_firestore(self) -> Dict[str, Any]:
        """Stored payload for loaded messages (provenance added), canonical fields otherwise."""
        if self.raw:
            data = dict(self.raw)
            if self.source_conversation_id:
                data["source_conversation_id"] = self.source_conversation_id
            return data
        data = {
            "id": self.id,
            "direction": self.direction.value,
            "body": self.body,
            "sent_at": self.sent_at,
        }
        if self.source_conversation_id:
            data["source_conversation_id"] = self.source_conversation_id
        return data


def _first_text(*values: Any) -> str:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def _raw_identity_from_document(channel: Channel, data: Dict[str, Any]) -> str:
    sender = data.get("sender") if isinstance(data.get("sender"), dict) else {}
    customer_info = data.get("customer_info") if isinstance(data.get("customer_info"), dict) else {}
    channel_metadata = data.get("channel_metadata") if isinstance(data.get("channel_metadata"), dict) else {}

    if channel == Channel.INSTAGRAM:
        return _first_text(
            channel_metadata.get("instagram_user_id"),
            sender.get("instagram_id"),
            sender.get("id"),
        )
    if channel == Channel.EMAIL:
        return _first_text(sender.get("email"), data.get("email"), customer_info.get("email"))
    return _first_text(
        data.get("phone"),
        sender.get("phone"),
        customer_info.get("phone_full"),
        channel_metadata.get("wa_id"),
    )


class ConversationRecord(BaseModel):
    """
    A CRM conversation as loaded from Firestore.
    Optional fields are defaulted here so the rest of the pipeline never checks shapes.
    """

    id: str
    raw_identity: str = ""
    identity_key: Optional[str] = None
    channel: Channel = Channel.OTHER
    messages: List[Message] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    assigned_to: Optional[str] = None
    last_activity_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = EPOCH
    status: str = "open"
    archived: bool = False
    # Firestore update_time of the loaded snapshot, used as a write precondition
    update_time: Optional[Any] = Field(default=None, exclude=True)

    @field_validator("channel", mode="before")
    @classmethod
    def _coerce_channel(cls, value: Any) -> Channel:
        return Channel.parse(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> List[str]:
        if not value:
            return []
        if isinstance(value, str):
            value = [value]
        tags = []
        for tag in value:
            text = str(tag).strip()
            if text and text not in tags:
                tags.append(text)
        return tags

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, value: Any) -> datetime.datetime:
        return parse_timestamp_utc(value)

    @field_validator("last_activity_at", mode="before")
    @classmethod
    def _coerce_last_activity(cls, value: Any) -> Optional[datetime.datetime]:
        if value is None:
            return None
        return parse_timestamp_utc(value)

    @model_validator(mode="after")
    def _default_last_activity(self) -> "ConversationRecord":
        if self.last_activity_at is None:
            sent = [message.sent_at for message in self.messages]
            self.last_activity_at = max(sent) if sent else self.created_at
        return self

    @classmethod
    def from_firestore(cls, doc_id: str, data: Optional[Dict[str, Any]], update_time: Any = None) -> "ConversationRecord":
        data = data or {}
        channel = Channel.parse(data.get("channel"))
        created_at = parse_timestamp_utc(data.get("created_at"))
        raw_messages = data.get("messages") or []
        # Untimestamped messages keep their stored order and stay distinct from each other
        messages = [
            Message.from_firestore(
                payload, index, doc_id,
                fallback_sent_at=created_at + datetime.timedelta(microseconds=index),
            )
            for index, payload in enumerate(raw_messages)
            if isinstance(payload, dict)
        ]
        return cls(
            id=doc_id,
            raw_identity=_raw_identity_from_document(channel, data),
            identity_key=data.get("identity_key") or None,
            channel=channel,
            messages=messages,
            tags=data.get("tags"),
            assigned_to=data.get("assigned_to") or None,
            last_activity_at=data.get("last_activity_at") or data.get("last_activity"),
            created_at=created_at,
            status=str(data.get("status") or "open"),
            archived=bool(data.get("archived", False)),
            update_time=update_time,
        )


# ============================================================
# Transient planning artifacts (never persisted)
# ============================================================

@dataclass(frozen=True)
class MergeGroup:
    identity_key: str
    channel: Channel
    members: Tuple[str, ...]
    primary_id: Optional[str] = None

    @property
    def group_key(self) -> str:
        return f"{self.channel.value}:{self.identity_key}"


@dataclass(frozen=True)
class MergePlan:
    group: MergeGroup
    merged_messages: Tuple[Message, ...]
    merged_tags: Tuple[str, ...]
    discarded_ids: Tuple[str, ...]
    copied_message_count: int
    latest_activity_at: datetime.datetime

    @property
    def primary_id(self) -> str:
        return self.group.primary_id

    @property
    def merged_message_count(self) -> int:
        return len(self.merged_messages)

    def to_preview(self) -> Dict[str, Any]:
        return {
            "groupKey": self.group.group_key,
            "channel": self.group.channel.value,
            "identityKey": self.group.identity_key,
            "members": list(self.group.members),
            "primaryId": self.primary_id,
            "discardedIds": list(self.discarded_ids),
            "mergedMessageCount": self.merged_message_count,
            "copiedMessageCount": self.copied_message_count,
            "mergedTags": list(self.merged_tags),
        }


@dataclass(frozen=True)
class UnmatchedRecord:
    id: str
    channel: Channel
    raw_identity: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel.value,
            "rawIdentity": self.raw_identity,
            "reason": self.reason,
        }


@dataclass
class MigrationOptions:
    dry_run: bool = True
    limit: int = config.MIGRATION_DEFAULT_LIMIT
    delete_duplicates: bool = True
    channels: Optional[Set[Channel]] = None
    collections: List[str] = field(default_factory=lambda: [config.FIRESTORE_CONVERSATIONS_COLLECTION])
    requested_by: Optional[str] = None

    def __post_init__(self):
        if self.limit < 1 or self.limit > config.MIGRATION_MAX_LIMIT:
            raise ValueError(f"limit must be between 1 and {config.MIGRATION_MAX_LIMIT}")
        if not self.collections:
            raise ValueError("at least one collection is required")
        if self.channels is not None:
            self.channels = {Channel(channel) for channel in self.channels}


@dataclass
class MigrationReport:
    dry_run: bool
    groups_found: int = 0
    groups_merged: int = 0
    groups_failed: int = 0
    messages_merged: int = 0
    records_deleted: int = 0
    records_archived: int = 0
    records_scanned: int = 0
    aborted: bool = False
    unmatched: List[UnmatchedRecord] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    plans: List[Dict[str, Any]] = field(default_factory=list)
    started_at: datetime.datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime.datetime] = None

    def add_error(self, group_key: str, message: str) -> None:
        self.errors.append({"groupKey": group_key, "message": message})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": not self.aborted,
            "dryRun": self.dry_run,
            "aborted": self.aborted,
            "groupsFound": self.groups_found,
            "groupsMerged": self.groups_merged,
            "groupsFailed": self.groups_failed,
            "messagesMerged": self.messages_merged,
            "recordsDeleted": self.records_deleted,
            "recordsArchived": self.records_archived,
            "recordsScanned": self.records_scanned,
            "unmatched": [entry.to_dict() for entry in self.unmatched],
            "errors": list(self.errors),
            "plans": list(self.plans),
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class BackfillReport:
    dry_run: bool
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False
    unmatched: List[UnmatchedRecord] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    updates: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": not self.aborted,
            "dryRun": self.dry_run,
            "aborted": self.aborted,
            "scanned": self.scanned,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "unmatched": [entry.to_dict() for entry in self.unmatched],
            "errors": list(self.errors),
            "updates": list(self.updates),
        }


def channels_from_values(values: Optional[Iterable[Any]]) -> Optional[Set[Channel]]:
    """Parse a channel filter; unknown names raise ValueError instead of mapping to OTHER."""
    if not values:
        return None
    return {Channel(str(value).strip().lower()) for value in values if str(value).strip()}
