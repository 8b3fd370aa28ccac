"""
Asset authentication and management access control.

Provides:
- Asset registration (token issue) and bearer-token authentication
- TokenCache: bounded, expiring token -> asset map owned by the app
- FastAPI dependencies for device routes and management routes
"""

import logging
import secrets
import sqlite3
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import BackgroundTasks, Request

from oob import config
from oob.database import (
    db,
    find_assets_by_asset_id,
    get_asset,
    update_asset_activity,
    update_asset_secret_hash,
    upsert_asset,
)
from oob.errors import BadRequestError, ForbiddenError, NotFoundError, UnauthorizedError
from oob.models import Asset, EventIdType, EventSource, ManagementRole, has_permission
from oob.oob_header import BOOT_ID_KEY, OOB_HEADER, parse_oob_header
from oob.tokens import (
    decode_asset_token,
    encode_asset_token,
    generate_secret,
    hash_secret,
    needs_rehash,
    verify_secret,
)

logger = logging.getLogger("oob.auth")


# ─────────────────────────── SESSION CACHE ───────────────────────────

class TokenCache:
    """LRU map of raw bearer token -> (tenant_id, asset_id) with per-entry TTL.

    Only saves the secret verification; callers still load the asset row on
    a hit to see its current boot id.
    """

    def __init__(self, max_entries: int, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max(1, int(max_entries))
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Tuple[float, str, str]]" = OrderedDict()

    def get(self, token: str) -> Optional[Tuple[str, str]]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            expires_at, tenant_id, asset_id = entry
            if expires_at <= now:
                del self._entries[token]
                return None
            self._entries.move_to_end(token)
            return tenant_id, asset_id

    def set(self, token: str, tenant_id: str, asset_id: str) -> None:
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries[token] = (expires_at, tenant_id, asset_id)
            self._entries.move_to_end(token)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)

    def invalidate_asset(self, tenant_id: str, asset_id: str) -> int:
        with self._lock:
            stale = [t for t, (_, ten, aid) in self._entries.items() if ten == tenant_id and aid == asset_id]
            for token in stale:
                del self._entries[token]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def create_token_cache() -> TokenCache:
    return TokenCache(config.TOKEN_CACHE_MAX, config.TOKEN_CACHE_TTL_SECONDS)


# ─────────────────────────── ASSETS ───────────────────────────

def create_asset(
    conn: sqlite3.Connection,
    tenant_id: str,
    asset_id: str,
    cache: Optional[TokenCache] = None,
) -> str:
    """Register (or re-register) an asset and return its new bearer token."""
    secret = generate_secret()
    token = encode_asset_token(asset_id, secret)
    upsert_asset(conn, tenant_id, asset_id, hash_secret(secret))
    if cache is not None:
        cache.invalidate_asset(tenant_id, asset_id)
    logger.info("Issued token for asset %s/%s", tenant_id, asset_id)
    return token


def _rehash_secret(conn: sqlite3.Connection, asset: Asset, secret: str) -> None:
    try:
        new_hash = hash_secret(secret)
        update_asset_secret_hash(conn, asset.tenant_id, asset.asset_id, new_hash)
        conn.commit()
        asset.secret_hash = new_hash
        logger.info("Rehashed secret for asset %s/%s", asset.tenant_id, asset.asset_id)
    except Exception as e:
        logger.warning("Failed to rehash secret for asset %s/%s: %s", asset.tenant_id, asset.asset_id, e)


def authenticate_asset(conn: sqlite3.Connection, token: str) -> Asset:
    decoded = decode_asset_token(token)
    if decoded is None:
        raise BadRequestError("Invalid token format")
    asset_id, secret = decoded

    candidates = find_assets_by_asset_id(conn, asset_id)
    if not candidates:
        raise NotFoundError("Asset not found")

    for asset in candidates:
        if verify_secret(secret, asset.secret_hash):
            if needs_rehash(asset.secret_hash):
                _rehash_secret(conn, asset, secret)
            return asset
    raise UnauthorizedError("Invalid asset token")


def resolve_session(conn: sqlite3.Connection, cache: TokenCache, token: str) -> Asset:
    cached = cache.get(token)
    if cached is not None:
        asset = get_asset(conn, *cached)
        if asset is None:
            cache.invalidate(token)
            raise NotFoundError("Asset not found for session")
        return asset

    asset = authenticate_asset(conn, token)
    cache.set(token, asset.tenant_id, asset.asset_id)
    return asset


def touch_asset_activity(tenant_id: str, asset_id: str) -> None:
    """Refresh last_active; failures are logged and dropped."""
    try:
        conn = db()
        try:
            update_asset_activity(conn, tenant_id, asset_id)
            conn.commit()
        finally:
            conn.close()
    except Exception as e:
        logger.warning("Failed to update asset activity for %s/%s: %s", tenant_id, asset_id, e)


# ─────────────────────────── DEVICE DEPENDENCY ───────────────────────────

@dataclass
class DeviceContext:
    asset: Asset
    event_source: EventSource
    boot_id: Optional[str] = None

    @property
    def tenant_id(self) -> str:
        return self.asset.tenant_id


def _bearer_token(request: Request) -> str:
    auth = request.headers.get("Authorization")
    if auth is None:
        raise BadRequestError("Missing Authorization header")
    parts = auth.strip().split(None, 1)
    if not parts or parts[0].lower() != "bearer":
        raise BadRequestError("Expected Authorization Bearer type")
    token = parts[1].strip() if len(parts) > 1 else ""
    if not token:
        raise BadRequestError("Missing token after bearer")
    return token


def device_from_bearer(request: Request, background_tasks: BackgroundTasks) -> DeviceContext:
    token = _bearer_token(request)
    cache: TokenCache = request.app.state.token_cache

    conn = db()
    try:
        asset = resolve_session(conn, cache, token)
    finally:
        conn.close()

    # Runs after the response is sent.
    background_tasks.add_task(touch_asset_activity, asset.tenant_id, asset.asset_id)

    boot_id = None
    oob_header = request.headers.get(OOB_HEADER)
    if oob_header is not None:
        boot_id = parse_oob_header(oob_header).get(BOOT_ID_KEY) or None

    return DeviceContext(
        asset=asset,
        event_source=EventSource(source_type=EventIdType.ASSET, source_id=asset.asset_id),
        boot_id=boot_id,
    )


# ─────────────────────────── MANAGEMENT DEPENDENCY ───────────────────────────

API_KEY_HEADER = "X-Api-Key"
TENANT_HEADER = "X-Tenant"


@dataclass
class ManagementContext:
    tenant_id: str
    role: ManagementRole
    event_source: EventSource


def load_api_keys(raw: str) -> Dict[str, ManagementRole]:
    """Parse ``key=role,key2=role``; malformed entries are skipped with a warning."""
    keys: Dict[str, ManagementRole] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, role = entry.partition("=")
        key, role = key.strip(), role.strip().lower()
        if not sep or not key:
            logger.warning("Ignoring malformed OOB_API_KEYS entry")
            continue
        try:
            keys[key] = ManagementRole(role)
        except ValueError:
            logger.warning("Ignoring OOB_API_KEYS entry with unknown role %r", role)
    return keys


def _role_for_key(api_keys: Dict[str, ManagementRole], supplied: str) -> Optional[ManagementRole]:
    match = None
    for key, role in api_keys.items():
        if secrets.compare_digest(key.encode("utf-8"), supplied.encode("utf-8")):
            match = role
    return match


def require_management(permission: str):
    """Dependency factory checking the API key's role grants ``permission``."""

    def dependency(request: Request) -> ManagementContext:
        supplied = request.headers.get(API_KEY_HEADER, "")
        if not supplied:
            raise UnauthorizedError("Missing API key")
        role = _role_for_key(request.app.state.api_keys, supplied)
        if role is None:
            raise UnauthorizedError("Invalid API key")
        if not has_permission(role, permission):
            raise ForbiddenError(f"Missing permission {permission}")
        tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
        if not tenant_id:
            raise BadRequestError("Missing X-Tenant header")
        return ManagementContext(
            tenant_id=tenant_id,
            role=role,
            event_source=EventSource(source_type=EventIdType.USER, source_id=role.value),
        )

    return dependency
