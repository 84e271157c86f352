# conftest.py
# Shared fixtures for the shelfsync test suite.
#
# Imports
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
#
# Local Imports
from shelfsync_Server_API.app.api.v1.API_Deps.DB_Deps import get_sync_db_for_user
from shelfsync_Server_API.app.api.v1.endpoints import sync as sync_endpoint_module
from shelfsync_Server_API.app.core.AuthNZ.User_DB_Handling import User, get_request_user
from shelfsync_Server_API.app.core.config import settings
from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import SyncRecordsDB
#
########################################################################################################################

USER_ID = settings["SINGLE_USER_FIXED_ID"]


@pytest.fixture
def sync_db(tmp_path):
    # File-backed: the endpoint runs store work in worker threads, each with its own connection
    db = SyncRecordsDB(tmp_path / "sync_records.sqlite", client_id="test_server")
    yield db
    db.close_connection()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {settings['SINGLE_USER_API_KEY']}"}


@pytest.fixture
def test_app(sync_db):
    app = FastAPI()
    app.include_router(sync_endpoint_module.router, prefix="/api/v1/sync", tags=["sync"])
    sync_endpoint_module.add_sync_exception_handlers(app)

    async def override_get_sync_db_for_user(current_user: User = Depends(get_request_user)):
        return sync_db

    app.dependency_overrides[get_sync_db_for_user] = override_get_sync_db_for_user
    return app


@pytest.fixture
def client(test_app):
    with TestClient(test_app) as test_client:
        yield test_client
