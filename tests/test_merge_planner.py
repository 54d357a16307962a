import datetime

import pytest

from services.conversation_identity import find_duplicate_groups
from services.crm_contracts import EPOCH, Channel, ConversationRecord, MergeGroup
from services.merge_planner import choose_primary, plan_merge
from services.migration_errors import GroupMergeError


TODAY = datetime.datetime(2026, 3, 10, 12, 0, 0, tzinfo=datetime.timezone.utc)
YESTERDAY = TODAY - datetime.timedelta(days=1)


def _plan_for(records, primary_id=None):
    group = find_duplicate_groups(records)[0]
    return plan_merge(group, {record.id: record for record in records}, primary_id=primary_id)


def test_message_count_wins_over_recency(make_record):
    busy = make_record("busy", message_count=5, last_activity=YESTERDAY)
    recent = make_record("recent", message_count=2, last_activity=TODAY)
    plan = _plan_for([recent, busy])
    assert plan.primary_id == "busy"
    assert plan.discarded_ids == ("recent",)
    assert plan.latest_activity_at == TODAY


def test_recency_breaks_message_count_tie(make_record):
    old = make_record("old", message_count=3, last_activity=YESTERDAY)
    new = make_record("new", message_count=3, last_activity=TODAY)
    assert choose_primary([old, new]).id == "new"


def test_smallest_id_breaks_full_tie(make_record):
    records = [make_record("c2"), make_record("a7"), make_record("b1")]
    assert choose_primary(records).id == "a7"


def test_overlapping_message_is_merged_once(make_record):
    primary = make_record("p", bodies=["hi", "b1", "b2", "b3", "b4"])
    duplicate = make_record("d", bodies=["hi", "x"])
    plan = _plan_for([primary, duplicate])

    assert plan.merged_message_count == 6
    assert plan.merged_message_count < len(primary.messages) + len(duplicate.messages)
    assert plan.copied_message_count == 1
    assert [message.body for message in plan.merged_messages] == ["hi", "b1", "x", "b2", "b3", "b4"]


@pytest.mark.parametrize("created_at", ["2026-02-01T08:00:00Z", None])
def test_repeated_untimestamped_messages_in_one_record_survive(make_record, created_at):
    primary = ConversationRecord.from_firestore("chat", {
        "channel": "whatsapp",
        "phone": "+905314942594",
        "created_at": created_at,
        "messages": [{"role": "user", "text": "ok"}, {"role": "user", "text": "ok"}],
    })
    duplicate = make_record("dup", message_count=1)
    plan = _plan_for([primary, duplicate])

    assert plan.primary_id == "chat"
    assert [m.body for m in plan.merged_messages if m.body == "ok"] == ["ok", "ok"]
    first, second = [m for m in plan.merged_messages if m.body == "ok"]
    assert first.sent_at < second.sent_at
    if created_at:
        assert first.sent_at != EPOCH
    assert plan.copied_message_count == 1


def test_copied_messages_carry_provenance(make_record):
    primary = make_record("p", bodies=["a", "b", "c"])
    duplicate = make_record("d", bodies=["z"])
    plan = _plan_for([primary, duplicate])

    by_body = {message.body: message for message in plan.merged_messages}
    assert by_body["z"].source_conversation_id == "d"
    assert by_body["a"].source_conversation_id is None


def test_existing_provenance_is_preserved(make_record):
    primary = make_record("p", bodies=["a", "b", "c"])
    duplicate = make_record("d", bodies=["z"])
    duplicate.messages[0] = duplicate.messages[0].model_copy(update={"source_conversation_id": "older"})
    plan = _plan_for([primary, duplicate])
    assert [m for m in plan.merged_messages if m.body == "z"][0].source_conversation_id == "older"


def test_messages_sorted_by_sent_at(make_record):
    primary = make_record("p", bodies=["p0", "p1", "p2"])
    duplicate = make_record("d", bodies=["d0", "d1"])
    plan = _plan_for([primary, duplicate])
    sent = [message.sent_at for message in plan.merged_messages]
    assert sent == sorted(sent)


def test_tags_are_unioned(make_record):
    primary = make_record("p", message_count=3, tags=["vip", "laser"])
    duplicate = make_record("d", tags=["laser", "follow-up"])
    plan = _plan_for([primary, duplicate])
    assert plan.merged_tags == ("follow-up", "laser", "vip")


@pytest.mark.parametrize("size", [2, 3, 7])
def test_discarded_ids_exclude_primary(make_record, size):
    records = [make_record(f"r{index}", message_count=index + 1) for index in range(size)]
    plan = _plan_for(records)
    assert len(plan.discarded_ids) == size - 1
    assert plan.primary_id not in plan.discarded_ids
    assert set(plan.discarded_ids) | {plan.primary_id} == {record.id for record in records}


def test_planning_is_idempotent(make_record):
    records = [
        make_record("a", bodies=["x", "y"], tags=["t1"]),
        make_record("b", bodies=["x", "z", "w"], tags=["t2"]),
    ]
    assert _plan_for(records) == _plan_for(records)


def test_primary_override(make_record):
    records = [make_record("a", message_count=5), make_record("b", message_count=1)]
    plan = _plan_for(records, primary_id="b")
    assert plan.primary_id == "b"
    assert plan.discarded_ids == ("a",)


def test_primary_override_must_be_a_member(make_record):
    records = [make_record("a"), make_record("b")]
    with pytest.raises(GroupMergeError):
        _plan_for(records, primary_id="zzz")


def test_missing_member_raises_group_merge_error(make_record):
    group = MergeGroup(identity_key="+905314942594", channel=Channel.WHATSAPP, members=("a", "gone"))
    with pytest.raises(GroupMergeError) as excinfo:
        plan_merge(group, {"a": make_record("a")})
    assert excinfo.value.group_key == "whatsapp:+905314942594"
