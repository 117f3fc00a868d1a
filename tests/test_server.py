"""Tests for the sync protocol server."""

import pytest
from fastapi.testclient import TestClient

from zotesync.config import Config, ServerConfig
from zotesync.notify import CallbackNotifier
from zotesync.server import create_app
from zotesync.store import SyncStore

TOKEN = "pair-secret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def config():
    """Create a test configuration."""
    return Config(server=ServerConfig(token=TOKEN, build_id="test-build"))


@pytest.fixture
def store(tmp_path):
    """Create a store with the bootstrap schema."""
    store = SyncStore(tmp_path / "zotepad.db")
    store.init_schema()
    return store


@pytest.fixture
def events():
    return []


@pytest.fixture
def app(config, store, events):
    """Create the FastAPI app."""
    return create_app(config, store=store, notifier=CallbackNotifier(events.append))


@pytest.fixture
def client(app):
    """Create a test client."""
    return TestClient(app)


def note_change(uuid, updated_at="2024-01-01T00:00:00Z", **fields):
    return {
        "table": "notes",
        "operation": "Upsert",
        "payload": {"uuid": uuid, "title": "A", "content": "x", "tags": "[]", **fields},
        "updated_at": updated_at,
    }


def push(client, changes, client_version=0, table=None):
    body = {"changes": changes, "client_version": client_version}
    if table:
        body["table"] = table
    response = client.post("/push", json=body, headers=AUTH)
    assert response.status_code == 200
    return response.json()["data"]


def pull(client, **params):
    response = client.get("/pull", params=params, headers=AUTH)
    assert response.status_code == 200
    return response.json()["data"]


class TestAuth:
    """Tests for the shared-secret check."""

    @pytest.mark.parametrize("path", ["/state", "/pull", "/metadata"])
    def test_missing_token(self, client, path):
        response = client.get(path)

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Unauthorized"

    def test_wrong_token(self, client):
        response = client.get("/state", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_push_rejected_before_store_access(self, client, store):
        response = client.post("/push", json={"changes": [note_change("n1")]})

        assert response.status_code == 401
        with store.open() as conn:
            assert conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0] == 0

    def test_bearer_prefix_optional(self, client):
        response = client.get("/state", headers={"Authorization": TOKEN})

        assert response.status_code == 200

    def test_dev_token_when_unconfigured(self, store):
        app = create_app(Config(), store=store)
        client = TestClient(app)

        response = client.get("/state", headers={"Authorization": "Bearer zotepad-dev-token"})

        assert response.status_code == 200

    def test_health_needs_no_token(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["server_version"] == "test-build"
        assert isinstance(data["timestamp"], int)


class TestState:
    """Tests for GET /state."""

    def test_empty_store(self, client):
        response = client.get("/state", headers=AUTH)

        body = response.json()
        assert body["success"] is True
        assert body["data"] == {"version": 0, "server_version": "test-build", "paired": True}

    def test_seeded_from_store(self, config, store):
        with store.open() as conn:
            conn.execute("INSERT INTO moments (uuid, updated_at, version) VALUES ('m1', 'x', 17)")
            conn.commit()

        client = TestClient(create_app(config, store=store))

        assert client.get("/state", headers=AUTH).json()["data"]["version"] == 17

    def test_observes_external_writes(self, client, store):
        with store.open() as conn:
            conn.execute("INSERT INTO notes (uuid, updated_at, version) VALUES ('n9', 'x', 30)")
            conn.commit()

        assert client.get("/state", headers=AUTH).json()["data"]["version"] == 30


class TestPushPull:
    """Tests for POST /push and GET /pull."""

    def test_push_then_pull(self, client):
        result = push(client, [note_change("n1")])

        assert result == {"applied": 1, "server_version": 1, "conflict": False}

        data = pull(client, since_version=0)
        assert len(data["changes"]) == 1
        change = data["changes"][0]
        assert change["payload"]["uuid"] == "n1"
        assert change["version"] == 1
        assert change["operation"] == "upsert"
        assert data["next_version"] is None
        assert data["server_version"] == 1

    def test_older_push_leaves_store_unchanged(self, client, store):
        push(client, [note_change("n1")])

        result = push(
            client,
            [note_change("n1", updated_at="2023-12-31T00:00:00Z", title="old")],
            client_version=1,
        )

        assert result["applied"] == 0
        with store.open() as conn:
            row = conn.execute("SELECT title, version FROM notes WHERE uuid = 'n1'").fetchone()
        assert (row["title"], row["version"]) == ("A", 1)

    def test_stale_client_version_conflicts(self, client, store):
        push(client, [note_change("n1")])

        result = push(
            client,
            [note_change("n1", updated_at="2024-06-01T00:00:00Z", title="late")],
            client_version=0,
        )

        assert result == {"applied": 0, "server_version": 1, "conflict": True}
        with store.open() as conn:
            title = conn.execute("SELECT title FROM notes WHERE uuid = 'n1'").fetchone()[0]
        assert title == "A"

    def test_versions_strictly_increase_within_push(self, client):
        push(client, [note_change(f"n{i}") for i in range(3)])

        versions = [c["version"] for c in pull(client)["changes"]]
        assert versions == [1, 2, 3]

    def test_paginated_pull_has_no_gaps(self, client):
        push(client, [note_change(f"n{i}") for i in range(5)])

        seen = []
        since = 0
        while True:
            data = pull(client, since_version=since, limit=2)
            seen.extend(c["payload"]["uuid"] for c in data["changes"])
            if data["next_version"] is None:
                break
            since = data["next_version"]

        assert seen == ["n0", "n1", "n2", "n3", "n4"]

    def test_limit_clamped_to_one(self, client):
        push(client, [note_change("n1"), note_change("n2")])

        data = pull(client, limit=0)

        assert len(data["changes"]) == 1
        assert data["next_version"] == 1

    def test_delete_pulls_as_tombstone(self, client):
        push(client, [note_change("n1")])
        push(
            client,
            [{
                "table": "notes",
                "operation": "Delete",
                "payload": {"uuid": "n1"},
                "updated_at": "2024-02-01T00:00:00Z",
                "deleted_at": "2024-02-01T00:00:00Z",
            }],
            client_version=1,
        )

        changes = pull(client, since_version=1)["changes"]
        assert len(changes) == 1
        assert changes[0]["operation"] == "delete"
        assert changes[0]["deleted_at"] == "2024-02-01T00:00:00Z"
        assert changes[0]["payload"]["tags"] == "[]"

    def test_pull_other_table(self, client):
        push(client, [{
            "table": "moments",
            "operation": "upsert",
            "payload": {"uuid": "m1", "content": "hi", "images": ["a.png"]},
            "updated_at": "2024-01-01T00:00:00Z",
        }])

        changes = pull(client, table="moments")["changes"]
        assert changes[0]["payload"]["images"] == '["a.png"]'
        assert pull(client, table="notes")["changes"] == []

    def test_pull_backfills_legacy_rows(self, client, store):
        with store.open() as conn:
            conn.execute(
                "INSERT INTO notes (uuid, title, updated_at, version) VALUES ('legacy', 'L', 'x', 0)"
            )
            conn.commit()

        changes = pull(client)["changes"]
        assert [c["version"] for c in changes] == [1]

        # Later pushes continue after the backfilled version
        result = push(client, [note_change("n1")], client_version=1)
        assert result["server_version"] == 2

    def test_unsupported_table_skipped(self, client):
        result = push(client, [
            {"table": "users", "operation": "upsert", "payload": {"uuid": "u1"}, "updated_at": "x"},
            note_change("n1"),
        ])

        assert result["applied"] == 1

    def test_malformed_change_skipped(self, client):
        result = push(client, [
            {"table": "notes", "operation": "upsert", "payload": {"uuid": "bad"}},
            {"table": "notes", "operation": "explode", "payload": {"uuid": "bad2"}, "updated_at": "x"},
            note_change("n1"),
        ])

        assert result["applied"] == 1

    def test_default_table_from_body(self, client):
        change = note_change("n1")
        del change["table"]

        result = push(client, [change], table="notes")

        assert result["applied"] == 1

    def test_invalid_body(self, client):
        response = client.post("/push", json={"changes": "nope"}, headers=AUTH)

        assert response.status_code == 422
        assert response.json()["success"] is False

    def test_non_object_change_skipped(self, client):
        result = push(client, ["junk", 5, None, note_change("n1")])

        assert result["applied"] == 1

    def test_same_push_twice_is_idempotent(self, client, store):
        change = note_change("n1")

        first = push(client, [change])
        second = push(client, [change], client_version=first["server_version"])

        assert first["applied"] == 1
        assert second["applied"] == 0
        with store.open() as conn:
            row = conn.execute(
                "SELECT version, updated_at FROM notes WHERE uuid = 'n1'"
            ).fetchone()
        assert (row["version"], row["updated_at"]) == (1, "2024-01-01T00:00:00Z")

    def test_out_of_range_integer_skips_only_that_change(self, client, store):
        response = client.post(
            "/push",
            json={
                "changes": [
                    {
                        "table": "assets",
                        "operation": "upsert",
                        "payload": {"uuid": "a1", "size": 2**70},
                        "updated_at": "2024-01-01T00:00:00Z",
                    },
                    note_change("n1"),
                ],
                "client_version": 0,
            },
            headers=AUTH,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["applied"] == 1
        with store.open() as conn:
            assert conn.execute("SELECT COUNT(*) FROM assets").fetchone()[0] == 0
            assert conn.execute("SELECT COUNT(*) FROM notes WHERE uuid = 'n1'").fetchone()[0] == 1

    def test_store_error_in_one_change_keeps_the_rest(self, client, store):
        with store.open() as conn:
            conn.execute(
                """
                CREATE TRIGGER reject_bad BEFORE INSERT ON notes
                WHEN NEW.uuid = 'bad'
                BEGIN SELECT RAISE(ABORT, 'rejected'); END
                """
            )
            conn.commit()

        result = push(client, [note_change("n1"), note_change("bad"), note_change("n2")])

        assert result["applied"] == 2
        with store.open() as conn:
            uuids = [row[0] for row in conn.execute("SELECT uuid FROM notes ORDER BY uuid")]
        assert uuids == ["n1", "n2"]


class TestNotifications:
    """Tests for the changes-received notification."""

    def test_notified_once_per_push(self, client, events):
        push(client, [note_change("n1"), note_change("n2")])

        assert len(events) == 1
        assert events[0]["event"] == "sync:changes-received"
        assert events[0]["count"] == 2
        assert events[0]["tables"] == ["notes"]

    def test_not_notified_when_nothing_applied(self, client, events):
        push(client, [])

        assert events == []

    def test_notifier_failure_does_not_fail_push(self, config, store):
        def broken(payload):
            raise RuntimeError("gui gone")

        client = TestClient(create_app(config, store=store, notifier=CallbackNotifier(broken)))

        assert push(client, [note_change("n1")])["applied"] == 1


class TestMetadata:
    """Tests for GET /metadata."""

    def test_lists_live_rows(self, client):
        push(client, [note_change("n1"), note_change("n2", updated_at="2024-01-02T00:00:00Z")])

        response = client.get("/metadata", params={"table": "notes"}, headers=AUTH)

        data = response.json()["data"]
        assert [(m["uuid"], m["version"]) for m in data] == [("n2", 2), ("n1", 1)]


def test_store_failure_returns_500(client, app, tmp_path):
    app.state.sync.store = SyncStore(tmp_path / "missing" / "dir" / "zotepad.db")

    response = client.get("/state", headers=AUTH)

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "Store access failed" in body["message"]
