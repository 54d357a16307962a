import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from routes import conversation_migration_routes
from services.conversation_migration_service import ConversationMigrationService
from services.migration_errors import LoadError

BASE_URL = "/api/admin/crm/conversation-migration"


@pytest.fixture
def store(make_record, store_factory):
    return store_factory([
        make_record("a1", message_count=3),
        make_record("a2", phone="0531 494 25 94"),
        make_record("b1", phone="+905550000000", message_count=2),
        make_record("b2", phone="+90 555 000 00 00"),
        make_record("c1", phone="+905551112233"),
    ])


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(
        conversation_migration_routes,
        "conversation_migration_service",
        ConversationMigrationService(store),
    )
    app = FastAPI()
    app.include_router(conversation_migration_routes.router)
    with TestClient(app) as c:
        yield c


def test_preview_is_always_a_dry_run(client, store):
    r = client.get(BASE_URL, params={"action": "preview"})
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["dryRun"] is True
    assert data["groupsFound"] == 2
    assert len(data["plans"]) == 2
    assert store.writes == []


def test_preview_with_channel_filter(client):
    r = client.get(BASE_URL, params={"action": "preview", "channels": "email,instagram"})
    assert r.status_code == 200
    assert r.json()["groupsFound"] == 0


def test_stats_action(client):
    r = client.get(BASE_URL, params={"action": "stats", "limit": 50})
    assert r.status_code == 200
    data = r.json()
    assert data["duplicateGroups"] == 2
    assert data["channelDistribution"] == {"whatsapp": 2}


@pytest.mark.parametrize(
    "params",
    [
        {"action": "explode"},
        {"action": "preview", "limit": 0},
        {"action": "stats", "limit": 999999},
        {"action": "preview", "channels": "fax"},
    ],
)
def test_invalid_get_requests_return_400(client, params):
    r = client.get(BASE_URL, params=params)
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_post_dry_run(client, store):
    r = client.post(BASE_URL, json={"dryRun": True, "limit": 100})
    assert r.status_code == 200
    assert r.json()["groupsFound"] == 2
    assert store.writes == []


def test_post_live_run_merges(client, store):
    r = client.post(BASE_URL, json={"dryRun": False, "deleteDuplicates": False, "requestedBy": "ops"})
    assert r.status_code == 200
    data = r.json()
    assert data["groupsMerged"] == 2
    assert data["recordsArchived"] == 2
    assert store.record("a2").archived is True
    assert [write[2] for write in store.merge_writes] == ["ops", "ops"]


def test_post_reports_group_failures_with_200(client, store):
    store.failing_groups.add("whatsapp:+905550000000")
    r = client.post(BASE_URL, json={"dryRun": False})
    assert r.status_code == 200
    data = r.json()
    assert data["groupsMerged"] == 1
    assert data["groupsFailed"] == 1
    assert data["errors"][0]["groupKey"] == "whatsapp:+905550000000"


def test_post_returns_409_when_locked(client, store):
    store.lock_owner = "other:1"
    r = client.post(BASE_URL, json={"dryRun": False})
    assert r.status_code == 409
    assert r.json()["success"] is False


def test_load_failure_returns_500_with_partial_report(client, store):
    store.scan_error = LoadError("Firestore unavailable")
    r = client.post(BASE_URL, json={"dryRun": True})
    assert r.status_code == 500
    data = r.json()
    assert data["success"] is False
    assert data["aborted"] is True
    assert data["errors"] == [{"groupKey": "load", "message": "Firestore unavailable"}]


def test_unexpected_error_returns_json_500(client, monkeypatch):
    def _boom(options):
        raise RuntimeError("boom")

    monkeypatch.setattr(conversation_migration_routes.conversation_migration_service, "run", _boom)
    r = client.post(BASE_URL, json={"dryRun": True})
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "boom"}


def test_merge_group(client, store):
    r = client.post(f"{BASE_URL}/merge-group", json={"ids": ["c1", "a1"], "primaryId": "c1"})
    assert r.status_code == 200
    assert r.json()["groupsMerged"] == 1
    assert store.record("a1") is None
    assert len(store.record("c1").messages) == 4


@pytest.mark.parametrize(
    "body",
    [
        {"ids": ["a1"]},
        {"ids": ["a1", "a2"], "primaryId": "zz"},
    ],
)
def test_merge_group_invalid_selection_returns_400(client, body):
    r = client.post(f"{BASE_URL}/merge-group", json=body)
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_phone_normalization_preview_and_run(client, store):
    r = client.get(f"{BASE_URL}/phone-normalization")
    assert r.status_code == 200
    assert len(r.json()["updates"]) == 5
    assert store.writes == []

    r = client.post(f"{BASE_URL}/phone-normalization", json={"dryRun": False})
    assert r.status_code == 200
    assert r.json()["updated"] == 5
    assert store.record("b2").identity_key == "+905550000000"
