import os
import shutil
import tempfile
from pathlib import Path


# Configure an isolated environment before importing url_finder modules.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="url_finder_pytest_"))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR}/default.db")

# Keep external integrations quiet during tests
os.environ.setdefault("GLIF_URL", "http://lotus.test/rpc/v1")
os.environ.setdefault("CID_CONTACT_URL", "http://cid.test")
os.environ.setdefault("BMS_URL", "")
os.environ.setdefault("UPSTREAM_MAX_RETRIES", "0")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from url_finder.database.models import UnifiedVerifiedDeal  # noqa: E402
from url_finder.services.database_service import DatabaseService  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh file-backed SQLite database with every table created."""
    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path}/url_finder.db")
    await service.init_db()
    yield service
    await service.close()


@pytest.fixture
def seed_deals(db):
    """
    Insert rows into the deal view.

    Each deal is ``(provider_id, client_id, piece_cid)`` or a dict of column
    values; deal ids are assigned sequentially from 1000.
    """

    async def _seed(deals):
        async with db.get_session() as session:
            for index, deal in enumerate(deals):
                if isinstance(deal, dict):
                    values = {"deal_id": 1000 + index, **deal}
                else:
                    provider_id, client_id, piece_cid = deal
                    values = {
                        "deal_id": 1000 + index,
                        "provider_id": provider_id,
                        "client_id": client_id,
                        "piece_cid": piece_cid,
                    }
                session.add(UnifiedVerifiedDeal(**values))

    return _seed
