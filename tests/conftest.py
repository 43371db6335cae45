import os
import sys
from pathlib import Path

import pytest
import anyio
import httpx
from sqlalchemy import delete

BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite:///" + str(BASE_DIR / "test.db"))
os.environ.setdefault("SMS_DRY_RUN", "true")
os.environ.setdefault("TERMII_API_KEY", "test-termii-key")
os.environ.setdefault("DISPATCH_BATCH_SIZE", "100")
os.environ.setdefault("BATCH_DELAY_MS", "0")
os.environ.setdefault("SEND_DELAY_MS", "0")
os.environ.setdefault("WORKER_POLL_INTERVAL_SECONDS", "0.01")
os.environ.setdefault("PROGRESS_POLL_INTERVAL_MS", "10")
os.environ.setdefault("PROGRESS_CLOSE_GRACE_SECONDS", "0")

from bulksms.core.config import get_settings
from bulksms.core import db as db_module
from bulksms.core.dependencies import get_db
from bulksms.core.store import InMemoryKeyValueBackend, store_manager
from bulksms.models import Base, CampaignJob
from bulksms.main import app

get_settings.cache_clear()

db_module._engine = None
db_module._SessionLocal = None
_db_path = BASE_DIR / "test.db"


@pytest.fixture(scope="session")
def engine():
    engine = db_module.get_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    if _db_path.exists():
        _db_path.unlink()


@pytest.fixture(scope="session")
def session_factory(engine):
    return db_module.get_session_factory()


@pytest.fixture(autouse=True)
def clean_state(session_factory):
    store_manager.reset(InMemoryKeyValueBackend())
    yield
    session = session_factory()
    try:
        session.execute(delete(CampaignJob))
        session.commit()
    finally:
        session.close()
    store_manager.reset()


@pytest.fixture()
def kv_backend():
    return store_manager.get_backend()


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def _get_test_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_test_db

    class _SyncASGIClient:
        def __init__(self, fastapi_app):
            self._client = httpx.AsyncClient(
                transport=httpx.ASGITransport(app=fastapi_app),
                base_url="http://testserver",
            )

        def request(self, method: str, url: str, **kwargs):
            async def _do_request():
                return await self._client.request(method, url, **kwargs)

            return anyio.run(_do_request)

        def get(self, url: str, **kwargs):
            return self.request("GET", url, **kwargs)

        def post(self, url: str, **kwargs):
            return self.request("POST", url, **kwargs)

        def close(self):
            async def _do_close():
                await self._client.aclose()

            anyio.run(_do_close)

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            self.close()

    with _SyncASGIClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
