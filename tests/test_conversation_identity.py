import pytest

from services.conversation_identity import find_duplicate_groups, identity_key_for, partition_by_identity
from services.crm_contracts import Channel, ConversationRecord
from services.migration_errors import NormalizationError


def test_records_without_shared_identity_produce_no_groups(make_record):
    records = [
        make_record("a", phone="+905314942594"),
        make_record("b", phone="+905324942594"),
        make_record("c", phone="+905334942594"),
    ]
    assert find_duplicate_groups(records) == []


def test_formatting_variants_are_grouped(make_record):
    records = [
        make_record("a", phone="0531 494 25 94"),
        make_record("b", phone="+90 531-494-2594"),
        make_record("c", phone="+905324942594"),
    ]
    groups = find_duplicate_groups(records)
    assert len(groups) == 1
    assert groups[0].identity_key == "+905314942594"
    assert groups[0].members == ("a", "b")
    assert groups[0].group_key == "whatsapp:+905314942594"


def test_member_order_follows_input_order(make_record):
    records = [make_record("z"), make_record("a"), make_record("m")]
    groups = find_duplicate_groups(records)
    assert groups[0].members == ("z", "a", "m")


def test_same_identity_on_different_channels_is_not_merged(make_record):
    records = [
        make_record("a", phone="+905314942594", channel="whatsapp"),
        make_record("b", phone="+905314942594", channel="other"),
    ]
    assert find_duplicate_groups(records) == []


def test_unnormalizable_records_are_reported_not_grouped(make_record):
    records = [
        make_record("a", phone="unknown"),
        make_record("b", phone="unknown"),
        make_record("c", phone=""),
    ]
    buckets, unmatched = partition_by_identity(records)
    assert buckets == {}
    assert [entry.id for entry in unmatched] == ["a", "b", "c"]
    assert unmatched[0].reason == "placeholder"
    assert unmatched[2].reason == "empty"
    assert find_duplicate_groups(records) == []


def test_email_and_instagram_identity_keys(make_record):
    email = make_record("e1", phone="  Ayse@Example.com ", channel="email")
    instagram = make_record("i1", phone=" 17841400000 ", channel="instagram")
    assert identity_key_for(email) == "ayse@example.com"
    assert identity_key_for(instagram) == "17841400000"

    with pytest.raises(NormalizationError):
        identity_key_for(make_record("e2", phone="not-an-email", channel="email"))


def test_raw_identity_read_from_firestore_document_shapes():
    whatsapp = ConversationRecord.from_firestore("w1", {
        "channel": "whatsapp",
        "customer_info": {"phone_full": "0531 494 25 94"},
    })
    instagram = ConversationRecord.from_firestore("i1", {
        "channel": "social_instagram",
        "channel_metadata": {"instagram_user_id": "17841400000"},
    })
    assert whatsapp.raw_identity == "0531 494 25 94"
    assert identity_key_for(whatsapp) == "+905314942594"
    assert instagram.channel == Channel.INSTAGRAM
    assert instagram.raw_identity == "17841400000"
