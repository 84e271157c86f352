# test_app_and_deps.py
# Tests for the application wiring, per-user record stores and client configuration.
import pytest
from fastapi.testclient import TestClient

from shelfsync_Server_API.app.api.v1.API_Deps import DB_Deps
from shelfsync_Server_API.app.core.config import load_client_config, settings
from shelfsync_Server_API.app.core.Sync import run_client
from shelfsync_Server_API.app.core.Sync.models import SyncKind
from shelfsync_Server_API.app.main import app


@pytest.fixture
def user_db_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(DB_Deps, "USER_DB_BASE_DIR", tmp_path / "users")
    DB_Deps.close_all_cached_dbs()
    yield tmp_path / "users"
    DB_Deps.close_all_cached_dbs()


def test_health_and_root():
    with TestClient(app) as client:
        assert client.get("/health").json()["status"] == "ok"
        assert client.get("/").status_code == 200


def test_app_serves_sync_with_per_user_store(user_db_dir):
    headers = {"Authorization": f"Bearer {settings['SINGLE_USER_API_KEY']}"}
    with TestClient(app) as client:
        pushed = client.post("/api/v1/sync", json={"goals": [{"id": "g1", "target": 10, "updated_at": 3}]},
                             headers=headers)
        pulled = client.get("/api/v1/sync", params={"since": 0, "type": "goals"}, headers=headers)

    assert pushed.status_code == 200
    assert [g["id"] for g in pulled.json()["goals"]] == ["g1"]
    assert (user_db_dir / settings["SINGLE_USER_FIXED_ID"] / DB_Deps.SYNC_DB_FILENAME).exists()


def test_app_rejects_unauthenticated_requests():
    with TestClient(app) as client:
        response = client.get("/api/v1/sync", params={"since": 0})
    assert response.status_code == 403
    assert response.json() == {"error": "Not authenticated"}


def test_user_stores_are_cached_and_separate(user_db_dir):
    alice = DB_Deps.get_sync_db_for_user_id("alice")
    assert DB_Deps.get_sync_db_for_user_id("alice") is alice

    bob = DB_Deps.get_sync_db_for_user_id("bob")
    alice.insert_record(SyncKind.BOOKS, {"user_id": "alice", "book_hash": "a", "updated_at": 1})
    assert bob.count_records(SyncKind.BOOKS, "alice") == 0


def write_client_config(tmp_path, **overrides):
    values = {
        "server_url": "http://127.0.0.1:9/api/v1",
        "state_file": str(tmp_path / "state.json"),
        "local_db_path": str(tmp_path / "local.sqlite"),
        "timeout_seconds": "2.5",
        "interval_seconds": "30",
        **overrides,
    }
    path = tmp_path / "client.ini"
    path.write_text("[Sync]\n" + "".join(f"{k} = {v}\n" for k, v in values.items()))
    return path


def test_client_config_reads_ini_and_env_overrides(tmp_path, monkeypatch):
    path = write_client_config(tmp_path, token="from-file")
    monkeypatch.setenv("SHELFSYNC_TOKEN", "from-env")
    monkeypatch.delenv("SHELFSYNC_SERVER_URL", raising=False)

    config = load_client_config(str(path))

    assert config["token"] == "from-env"
    assert config["server_url"] == "http://127.0.0.1:9/api/v1"
    assert config["timeout_seconds"] == 2.5
    assert config["interval_seconds"] == 30
    assert config["user_id"] == "local_user"


def test_missing_client_config_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_client_config(str(tmp_path / "absent.ini"))


def test_runner_without_token_stops_for_login(tmp_path, monkeypatch):
    monkeypatch.delenv("SHELFSYNC_TOKEN", raising=False)
    path = write_client_config(tmp_path)

    assert run_client.main(["--config", str(path), "--kind", "books"]) == 1
    assert (tmp_path / "state.json").exists()


def test_runner_reports_missing_config(tmp_path):
    assert run_client.main(["--config", str(tmp_path / "absent.ini")]) == 2
