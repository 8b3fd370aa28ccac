"""
Shared pytest fixtures and test utilities for the out-of-band service tests.

This module provides:
- Database setup/teardown with isolation
- TestClient setup with proper environment configuration
- Helper functions for creating assets and operations
- Recording publishers for asserting on emitted events
"""
import json
import os
import shutil
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

# ─────────────────────────── PATH SETUP ───────────────────────────

TEST_ROOT = Path(__file__).resolve().parent
DATA_DIR = TEST_ROOT / "tmp_data"
FILES_DIR = TEST_ROOT / "tmp_files"

# Ensure test directories exist
for path in (DATA_DIR, FILES_DIR):
    path.mkdir(parents=True, exist_ok=True)

DB_FILE = DATA_DIR / "oob.db"

TENANT = "tenant-a"
ADMIN_KEY = "admin-test-key"
REGISTRAR_KEY = "registrar-test-key"
OPERATOR_KEY = "operator-test-key"
VIEWER_KEY = "viewer-test-key"

# ─────────────────────────── ENVIRONMENT ───────────────────────────

def configure_test_environment():
    """Configure environment variables for testing."""
    os.environ["DB_PATH"] = str(DB_FILE)
    os.environ["FILES_DIR"] = str(FILES_DIR)
    os.environ["API_HOST"] = "http://testserver"
    os.environ["SECRET_HASH_ROUNDS"] = "4"  # Keep bcrypt fast
    os.environ["CRON_ENABLED"] = "0"  # Sweeps are driven explicitly
    os.environ["EVENTS_WEBHOOK_URL"] = ""
    os.environ["FILE_LINK_SECRET"] = "file-link-test-secret"
    os.environ["OOB_API_KEYS"] = ",".join([
        f"{ADMIN_KEY}=admin",
        f"{REGISTRAR_KEY}=registrar",
        f"{OPERATOR_KEY}=operator",
        f"{VIEWER_KEY}=viewer",
    ])
    os.environ.setdefault("LOG_LEVEL", "WARNING")  # Reduce noise, but show warnings
    os.environ["TEST_MODE"] = "1"

configure_test_environment()

# Now we can import app modules
import sys
sys.path.insert(0, str(TEST_ROOT.parent))

from oob import config  # noqa: E402
from oob.auth import create_asset  # noqa: E402
from oob.database import db, init_db  # noqa: E402
from oob.events import EventPublisher, list_events  # noqa: E402
from oob.files import LocalFileStore  # noqa: E402
from oob.identifiers import OperationId  # noqa: E402
from oob.main import app  # noqa: E402
from oob.models import EventIdType, EventSource  # noqa: E402

# ─────────────────────────── DATABASE HELPERS ───────────────────────────

def init_test_db():
    """Initialize the test database schema."""
    init_db()

def get_test_db():
    """Get a database connection for test assertions."""
    conn = sqlite3.connect(DB_FILE)
    conn.row_factory = sqlite3.Row
    return conn

def clear_all_test_data():
    """Clear all test data from database tables, stored files and caches."""
    init_test_db()
    conn = get_test_db()
    for table in ("oob_operations", "oob_assets", "oob_events", "oob_cron_jobs"):
        try:
            conn.execute(f"DELETE FROM {table}")
        except sqlite3.OperationalError:
            pass  # Table may not exist
    conn.commit()
    conn.close()

    shutil.rmtree(FILES_DIR, ignore_errors=True)
    FILES_DIR.mkdir(parents=True, exist_ok=True)
    app.state.token_cache.clear()

# ─────────────────────────── TEST DATA FACTORIES ───────────────────────────

def create_test_asset(asset_id: str = "asset-a", tenant_id: str = TENANT) -> str:
    """Register an asset directly and return its bearer token."""
    conn = db()
    try:
        token = create_asset(conn, tenant_id, asset_id)
        conn.commit()
    finally:
        conn.close()
    return token

def create_test_operation(
    asset_id: str = "asset-a",
    name: str = "RestartServices",
    status: str = "Created",
    tries: int = 0,
    tenant_id: str = TENANT,
    parameters: Optional[Dict[str, Any]] = None,
    upload_token: Optional[str] = None,
    op_id: Optional[OperationId] = None,
) -> str:
    """
    Insert an operation row in any state, bypassing creation policy.

    Pass ``op_id`` (e.g. ``OperationId.from_datetime(...)``) to backdate it.
    Returns the operation id as hex.
    """
    op_id = op_id or OperationId()
    conn = get_test_db()
    conn.execute(
        """
        INSERT INTO oob_operations (id, tenant_id, asset_id, name, status, tries, parameters, upload_token)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            op_id.binary, tenant_id, asset_id, name, status, tries,
            json.dumps(parameters) if parameters is not None else None,
            upload_token,
        ),
    )
    conn.commit()
    conn.close()
    return op_id.hex

def get_operation_row(op_hex: str) -> Optional[sqlite3.Row]:
    conn = get_test_db()
    row = conn.execute(
        "SELECT * FROM oob_operations WHERE id = ?", (OperationId(op_hex).binary,)
    ).fetchone()
    conn.close()
    return row

def get_asset_row(asset_id: str = "asset-a", tenant_id: str = TENANT) -> Optional[sqlite3.Row]:
    conn = get_test_db()
    row = conn.execute(
        "SELECT * FROM oob_assets WHERE tenant_id = ? AND asset_id = ?", (tenant_id, asset_id)
    ).fetchone()
    conn.close()
    return row

def get_events(event_type: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = db()
    try:
        return list_events(conn, event_type=event_type)
    finally:
        conn.close()

def device_headers(token: str, boot_id: Optional[str] = None) -> Dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if boot_id is not None:
        headers["X-OOB"] = f"uuid '{boot_id}';"
    return headers

def management_headers(key: str = ADMIN_KEY, tenant_id: Optional[str] = TENANT) -> Dict[str, str]:
    headers = {"X-Api-Key": key}
    if tenant_id is not None:
        headers["X-Tenant"] = tenant_id
    return headers

# ─────────────────────────── PUBLISHERS ───────────────────────────

class RecordingPublisher(EventPublisher):
    """Keeps published events in memory."""
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def publish(self, event):
        self.events.append(event)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


class FailingPublisher(EventPublisher):
    def publish(self, event):
        raise RuntimeError("event bus unavailable")


DEVICE_SOURCE = EventSource(source_type=EventIdType.ASSET, source_id="asset-a")

# ─────────────────────────── FIXTURES ───────────────────────────

@pytest.fixture
def client():
    """
    Function-scoped test client with clean database state.
    Each test gets a fresh database.
    """
    clear_all_test_data()
    with TestClient(app) as client:
        yield client

@pytest.fixture
def clean_db():
    """Fresh schema and empty tables for tests that do not need HTTP."""
    clear_all_test_data()
    yield

@pytest.fixture
def conn(clean_db):
    connection = db()
    yield connection
    connection.close()

@pytest.fixture
def publisher():
    return RecordingPublisher()

@pytest.fixture
def file_store(tmp_path):
    return LocalFileStore(str(tmp_path / "files"), "unit-test-secret", config.API_HOST)

@pytest.fixture
def asset_token(clean_db):
    """Token of a freshly registered asset-a in tenant-a."""
    return create_test_asset()
