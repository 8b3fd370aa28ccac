import base64
import logging
import sqlite3

import pytest

import oob.auth
from oob import config
from oob.auth import (
    TokenCache,
    authenticate_asset,
    create_asset,
    load_api_keys,
    resolve_session,
    touch_asset_activity,
)
from oob.errors import BadRequestError, NotFoundError, UnauthorizedError
from oob.models import ManagementRole
from tests.conftest import (
    TENANT,
    create_test_asset,
    device_headers,
    get_asset_row,
    get_test_db,
)

BASE = "/v1/api/oob"


def _set_asset_column(column, value, asset_id="asset-a", tenant_id=TENANT):
    conn = get_test_db()
    conn.execute(
        f"UPDATE oob_assets SET {column} = ? WHERE tenant_id = ? AND asset_id = ?",
        (value, tenant_id, asset_id),
    )
    conn.commit()
    conn.close()


class TestCreateAndAuthenticate:
    def test_token_resolves_to_registered_asset(self, conn):
        token = create_asset(conn, TENANT, "asset-a")
        conn.commit()

        asset = authenticate_asset(conn, token)
        assert asset.tenant_id == TENANT
        assert asset.asset_id == "asset-a"
        assert asset.secret_hash.startswith("$2b$")
        assert asset.boot_id is None

    def test_secret_is_not_stored_in_clear(self, conn):
        token = create_asset(conn, TENANT, "asset-a")
        conn.commit()
        secret = base64.b64decode(token).decode("utf-8").rpartition(":")[2]
        assert secret not in get_asset_row()["secret_hash"]

    def test_reregistration_invalidates_old_token(self, conn):
        old = create_asset(conn, TENANT, "asset-a")
        conn.commit()
        new = create_asset(conn, TENANT, "asset-a")
        conn.commit()

        with pytest.raises(UnauthorizedError):
            authenticate_asset(conn, old)
        assert authenticate_asset(conn, new).asset_id == "asset-a"

    def test_reregistration_drops_cached_sessions(self, conn):
        cache = TokenCache(10, 60)
        old = create_asset(conn, TENANT, "asset-a", cache)
        conn.commit()
        resolve_session(conn, cache, old)
        assert len(cache) == 1

        create_asset(conn, TENANT, "asset-a", cache)
        conn.commit()
        assert len(cache) == 0
        with pytest.raises(UnauthorizedError):
            resolve_session(conn, cache, old)

    @pytest.mark.parametrize("token", [
        "not base64!",
        base64.b64encode(b"no-separator").decode("ascii"),
        base64.b64encode(b":secret-only").decode("ascii"),
        base64.b64encode(b"asset-a:").decode("ascii"),
    ])
    def test_malformed_token(self, conn, token):
        with pytest.raises(BadRequestError):
            authenticate_asset(conn, token)

    def test_unknown_asset(self, conn):
        token = base64.b64encode(b"ghost:c2VjcmV0").decode("ascii")
        with pytest.raises(NotFoundError):
            authenticate_asset(conn, token)

    def test_wrong_secret(self, conn):
        create_asset(conn, TENANT, "asset-a")
        conn.commit()
        token = base64.b64encode(b"asset-a:d3Jvbmc=").decode("ascii")
        with pytest.raises(UnauthorizedError):
            authenticate_asset(conn, token)


class TestRehash:
    def test_changed_rounds_are_persisted_on_next_login(self, conn, monkeypatch):
        token = create_asset(conn, TENANT, "asset-a")
        conn.commit()
        assert get_asset_row()["secret_hash"].startswith("$2b$04$")

        monkeypatch.setattr(config, "SECRET_HASH_ROUNDS", 5)
        asset = authenticate_asset(conn, token)

        stored = get_asset_row()["secret_hash"]
        assert stored.startswith("$2b$05$")
        assert asset.secret_hash == stored
        # The new hash still verifies, and is left alone from now on.
        assert authenticate_asset(conn, token).secret_hash == stored

    def test_current_hash_is_not_rewritten(self, conn):
        token = create_asset(conn, TENANT, "asset-a")
        conn.commit()
        before = get_asset_row()["secret_hash"]
        authenticate_asset(conn, token)
        assert get_asset_row()["secret_hash"] == before

    def test_failed_rehash_does_not_fail_login(self, conn, monkeypatch, caplog):
        token = create_asset(conn, TENANT, "asset-a")
        conn.commit()
        before = get_asset_row()["secret_hash"]

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(config, "SECRET_HASH_ROUNDS", 5)
        monkeypatch.setattr(oob.auth, "update_asset_secret_hash", locked)
        with caplog.at_level(logging.WARNING, logger="oob.auth"):
            asset = authenticate_asset(conn, token)

        assert asset.asset_id == "asset-a"
        assert asset.secret_hash == before
        assert get_asset_row()["secret_hash"] == before
        assert "Failed to rehash secret" in caplog.text


class TestMultiTenant:
    def test_same_asset_id_in_two_tenants(self, clean_db):
        token_a = create_test_asset("shared", tenant_id="tenant-a")
        token_b = create_test_asset("shared", tenant_id="tenant-b")

        conn = get_test_db()
        try:
            assert authenticate_asset(conn, token_a).tenant_id == "tenant-a"
            assert authenticate_asset(conn, token_b).tenant_id == "tenant-b"
        finally:
            conn.close()

    def test_first_verifying_tenant_wins(self, clean_db):
        token = create_test_asset("shared", tenant_id="tenant-b")
        create_test_asset("shared", tenant_id="tenant-c")
        # Give tenant-a the same secret; tenants are tried in id order.
        create_test_asset("shared", tenant_id="tenant-a")
        _set_asset_column("secret_hash", get_asset_row("shared", "tenant-b")["secret_hash"], "shared", "tenant-a")

        conn = get_test_db()
        try:
            assert authenticate_asset(conn, token).tenant_id == "tenant-a"
        finally:
            conn.close()

    def test_token_for_other_tenant_asset_is_rejected(self, clean_db):
        create_test_asset("shared", tenant_id="tenant-a")
        create_test_asset("shared", tenant_id="tenant-b")
        token = base64.b64encode(b"shared:bm90LWEtc2VjcmV0").decode("ascii")

        conn = get_test_db()
        try:
            with pytest.raises(UnauthorizedError):
                authenticate_asset(conn, token)
        finally:
            conn.close()


class TestResolveSession:
    def test_cache_hit_skips_secret_check(self, conn, asset_token, monkeypatch):
        cache = TokenCache(10, 60)
        first = resolve_session(conn, cache, asset_token)

        def unexpected(*args, **kwargs):
            raise AssertionError("secret verified twice")

        monkeypatch.setattr(oob.auth, "authenticate_asset", unexpected)
        second = resolve_session(conn, cache, asset_token)
        assert (second.tenant_id, second.asset_id) == (first.tenant_id, first.asset_id)

    def test_cache_hit_sees_current_boot_id(self, conn, asset_token):
        cache = TokenCache(10, 60)
        assert resolve_session(conn, cache, asset_token).boot_id is None

        _set_asset_column("boot_id", "8a0b3c4d-0000-4000-8000-000000000001")
        assert resolve_session(conn, cache, asset_token).boot_id == "8a0b3c4d-0000-4000-8000-000000000001"

    def test_deleted_asset_drops_session(self, conn, asset_token):
        cache = TokenCache(10, 60)
        resolve_session(conn, cache, asset_token)

        conn.execute("DELETE FROM oob_assets WHERE tenant_id = ? AND asset_id = ?", (TENANT, "asset-a"))
        conn.commit()
        with pytest.raises(NotFoundError):
            resolve_session(conn, cache, asset_token)
        assert len(cache) == 0

    def test_failed_authentication_is_not_cached(self, conn, asset_token):
        cache = TokenCache(10, 60)
        bad = base64.b64encode(b"asset-a:d3Jvbmc=").decode("ascii")
        with pytest.raises(UnauthorizedError):
            resolve_session(conn, cache, bad)
        assert len(cache) == 0


class TestActivity:
    def test_touch_updates_last_active(self, asset_token):
        _set_asset_column("last_active", "2020-01-01T00:00:00Z")
        touch_asset_activity(TENANT, "asset-a")
        assert get_asset_row()["last_active"] > "2020-01-01T00:00:00Z"

    def test_touch_failure_is_logged_not_raised(self, asset_token, monkeypatch, caplog):
        _set_asset_column("last_active", "2020-01-01T00:00:00Z")

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(oob.auth, "update_asset_activity", locked)
        with caplog.at_level(logging.WARNING, logger="oob.auth"):
            touch_asset_activity(TENANT, "asset-a")

        assert get_asset_row()["last_active"] == "2020-01-01T00:00:00Z"
        assert "Failed to update asset activity" in caplog.text

    def test_poll_succeeds_when_activity_update_fails(self, client, monkeypatch):
        token = create_test_asset()

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(oob.auth, "update_asset_activity", locked)
        resp = client.get(f"{BASE}/edge/operations", headers=device_headers(token))
        assert resp.status_code == 200
        assert resp.json() == []

    def test_poll_refreshes_last_active(self, client):
        token = create_test_asset()
        _set_asset_column("last_active", "2020-01-01T00:00:00Z")
        assert client.get(f"{BASE}/edge/operations", headers=device_headers(token)).status_code == 200
        assert get_asset_row()["last_active"] > "2020-01-01T00:00:00Z"


class TestApiKeys:
    def test_parses_roles(self):
        keys = load_api_keys("k1=admin, k2 = Viewer ,k3=operator")
        assert keys == {
            "k1": ManagementRole.ADMIN,
            "k2": ManagementRole.VIEWER,
            "k3": ManagementRole.OPERATOR,
        }

    def test_skips_bad_entries(self, caplog):
        with caplog.at_level(logging.WARNING, logger="oob.auth"):
            keys = load_api_keys("good=registrar,,no-role,=admin,k=root")
        assert keys == {"good": ManagementRole.REGISTRAR}
        assert "unknown role" in caplog.text
