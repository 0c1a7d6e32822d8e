"""Pytest configuration for the share service tests."""
import os
import sys
from pathlib import Path

# Flat app/ layout: modules import each other as top-level names
_APP_DIR = Path(__file__).parent.parent / 'app'
if str(_APP_DIR) not in sys.path:
    sys.path.insert(0, str(_APP_DIR))

os.environ.setdefault('RATE_LIMIT_ENABLED', 'false')

import pytest
import pytest_asyncio
from passlib.context import CryptContext

from blob_store import LocalBlobStore
from database import Database
from security import SecretHasher
from share_manager import ShareManager


@pytest.fixture
def hasher():
    """Low-cost hasher so password tests stay fast."""
    return SecretHasher(CryptContext(schemes=['pbkdf2_sha256'], pbkdf2_sha256__rounds=1000))


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / 'shares.db')
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(tmp_path / 'storage')


@pytest.fixture
def shares(db, blobs, hasher):
    return ShareManager(db, blobs, hasher)
