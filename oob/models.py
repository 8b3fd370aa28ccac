"""
Data models and schema definitions for the out-of-band service.

This module defines:
- Operation names and statuses
- Asset and operation records
- Management roles and their permissions
- Table and index DDL
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any

from oob.identifiers import OperationId


# ─────────────────────────── ENUMS ───────────────────────────

class OperationName(str, Enum):
    """Kinds of out-of-band operation a device understands"""
    REBOOT = "Reboot"
    RESTART_SERVICES = "RestartServices"
    SEND_FILES = "SendFiles"


class OperationStatus(str, Enum):
    """Operation lifecycle states"""
    CREATED = "Created"          # Not yet acknowledged by the device
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


IN_PROGRESS_STATUSES = [
    OperationStatus.CREATED,
    OperationStatus.PENDING,
    OperationStatus.IN_PROGRESS,
]

TERMINAL_STATUSES = [
    OperationStatus.SUCCESS,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
]

# Statuses a device may report, and which stored statuses each may overwrite.
DEVICE_UPDATE_ALLOWED_FROM = {
    OperationStatus.PENDING: [OperationStatus.CREATED, OperationStatus.PENDING],
    OperationStatus.IN_PROGRESS: IN_PROGRESS_STATUSES,
    OperationStatus.SUCCESS: IN_PROGRESS_STATUSES,
    OperationStatus.FAILED: IN_PROGRESS_STATUSES,
}


class EventType(str, Enum):
    """Event types published on the event bus"""
    TOKEN_GENERATE = "OobTokenGenerate"
    OPERATION_CREATE = "OobOperationCreate"
    OPERATION_UPDATE = "OobOperationUpdate"
    ASSET_DELETE = "AssetDelete"


class EventIdType(str, Enum):
    ASSET = "Asset"
    USER = "User"
    SERVICE = "Service"
    TENANT = "Tenant"


class ManagementRole(str, Enum):
    """Management API key roles"""
    ADMIN = "admin"            # Everything
    REGISTRAR = "registrar"    # Registers assets on behalf of central
    OPERATOR = "operator"      # Issues and cancels operations
    VIEWER = "viewer"          # Read-only


# ─────────────────────────── PERMISSIONS ───────────────────────────

PERM_REGISTER = "OutOfBand.Register"
PERM_READ = "OutOfBand.Read"
PERM_WRITE = "OutOfBand.Write"
PERM_DOWNLOAD = "OutOfBand.Download"
PERM_DELETE = "OutOfBand.Delete"
PERM_INGEST = "OutOfBand.Ingest"

ROLE_PERMISSIONS = {
    ManagementRole.ADMIN: {
        PERM_REGISTER,
        PERM_READ,
        PERM_WRITE,
        PERM_DOWNLOAD,
        PERM_DELETE,
        PERM_INGEST,
    },
    ManagementRole.REGISTRAR: {
        PERM_REGISTER,
        PERM_READ,
        PERM_DELETE,
        PERM_INGEST,
    },
    ManagementRole.OPERATOR: {
        PERM_READ,
        PERM_WRITE,
        PERM_DOWNLOAD,
    },
    ManagementRole.VIEWER: {
        PERM_READ,
    },
}


def has_permission(role: ManagementRole, permission: str) -> bool:
    """Check if a role has a specific permission."""
    return permission in ROLE_PERMISSIONS.get(role, set())


# ─────────────────────────── DATA CLASSES ───────────────────────────

@dataclass
class Asset:
    """A managed device"""
    tenant_id: str
    asset_id: str
    secret_hash: str
    last_active: Optional[str] = None
    boot_id: Optional[str] = None

    def to_public_dict(self) -> dict:
        data = {"assetId": self.asset_id, "lastActive": self.last_active}
        if self.boot_id is not None:
            data["bootId"] = self.boot_id
        return data


@dataclass
class Progress:
    position: int
    size: Optional[int] = None

    def to_dict(self) -> dict:
        data = {"position": self.position}
        if self.size is not None:
            data["size"] = self.size
        return data


@dataclass
class Operation:
    """A requested action tracked through its lifecycle"""
    tenant_id: str
    asset_id: str
    id: OperationId
    name: str
    status: OperationStatus
    tries: int = 0
    additional_details: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    progress: Optional[Progress] = None
    upload_token: Optional[str] = None

    @property
    def in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES

    @property
    def file_key(self) -> str:
        return f"{self.tenant_id}/{self.id.hex}"

    def to_dict(self) -> dict:
        data = {
            "id": self.id.hex,
            "assetId": self.asset_id,
            "name": self.name,
            "status": self.status.value,
            "tries": self.tries,
        }
        if self.additional_details is not None:
            data["additionalDetails"] = self.additional_details
        if self.parameters is not None:
            data["parameters"] = self.parameters
        if self.progress is not None:
            data["progress"] = self.progress.to_dict()
        return data


@dataclass
class OperationUpdate:
    """A status change applied to an operation"""
    status: OperationStatus
    additional_details: Optional[str] = None
    progress: Optional[Progress] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.additional_details is not None:
            data["additionalDetails"] = self.additional_details
        if self.progress is not None:
            data["progress"] = self.progress.to_dict()
        return data


@dataclass
class OperationQuery:
    """Filters for listing and iterating operations"""
    tenant_id: Optional[str] = None
    asset_id: Optional[str] = None
    ids: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)
    statuses: List[OperationStatus] = field(default_factory=list)
    tries: Optional[int] = None
    after_id: Optional[OperationId] = None
    before_id: Optional[OperationId] = None
    sort_direction: str = "ASC"
    size: Optional[int] = None


@dataclass
class EventSource:
    source_type: EventIdType
    source_id: str


# ─────────────────────────── SCHEMA ───────────────────────────

ASSETS_TABLE = """
CREATE TABLE IF NOT EXISTS oob_assets (
    tenant_id TEXT NOT NULL,
    asset_id TEXT NOT NULL,
    boot_id TEXT,
    last_active TEXT NOT NULL,
    secret_hash TEXT NOT NULL,
    PRIMARY KEY (tenant_id, asset_id)
);
"""

OPERATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS oob_operations (
    id BLOB PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    asset_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    tries INTEGER NOT NULL DEFAULT 0,
    additional_details TEXT,
    parameters TEXT,
    progress TEXT,
    upload_token TEXT,
    FOREIGN KEY (tenant_id, asset_id) REFERENCES oob_assets(tenant_id, asset_id) ON DELETE CASCADE
);
"""

EVENTS_TABLE = """
CREATE TABLE IF NOT EXISTS oob_events (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    type TEXT NOT NULL,
    source_type TEXT,
    source_id TEXT,
    target_type TEXT,
    target_id TEXT,
    data TEXT
);
"""

CRON_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS oob_cron_jobs (
    name TEXT PRIMARY KEY,
    interval_seconds INTEGER NOT NULL,
    timeout_seconds INTEGER NOT NULL,
    next_run_at TEXT NOT NULL,
    locked_until TEXT,
    last_started_at TEXT,
    last_finished_at TEXT,
    last_checkpoint_at TEXT,
    last_error TEXT
);
"""

ALL_TABLES = [
    ASSETS_TABLE,
    OPERATIONS_TABLE,
    EVENTS_TABLE,
    CRON_JOBS_TABLE,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_assets_asset_id ON oob_assets(asset_id);",
    "CREATE INDEX IF NOT EXISTS idx_operations_asset ON oob_operations(tenant_id, asset_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_operations_status ON oob_operations(status, id);",
    "CREATE INDEX IF NOT EXISTS idx_events_target ON oob_events(tenant_id, target_id);",
    "CREATE INDEX IF NOT EXISTS idx_events_created ON oob_events(created_at);",
]
