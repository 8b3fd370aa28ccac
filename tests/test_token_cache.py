from oob.auth import TokenCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_get_and_set():
    cache = TokenCache(10, 60)
    assert cache.get("t1") is None
    cache.set("t1", "tenant-a", "asset-a")
    assert cache.get("t1") == ("tenant-a", "asset-a")
    assert len(cache) == 1


def test_entries_expire():
    clock = FakeClock()
    cache = TokenCache(10, 60, clock=clock)
    cache.set("t1", "tenant-a", "asset-a")
    clock.now += 59
    assert cache.get("t1") is not None
    clock.now += 2
    assert cache.get("t1") is None
    assert len(cache) == 0


def test_least_recently_used_evicted():
    cache = TokenCache(2, 60)
    cache.set("t1", "tenant-a", "asset-1")
    cache.set("t2", "tenant-a", "asset-2")
    # Touch t1 so t2 becomes the oldest.
    assert cache.get("t1") is not None
    cache.set("t3", "tenant-a", "asset-3")
    assert cache.get("t2") is None
    assert cache.get("t1") == ("tenant-a", "asset-1")
    assert cache.get("t3") == ("tenant-a", "asset-3")


def test_invalidate_asset_removes_all_its_tokens():
    cache = TokenCache(10, 60)
    cache.set("old", "tenant-a", "asset-a")
    cache.set("new", "tenant-a", "asset-a")
    cache.set("other-tenant", "tenant-b", "asset-a")
    assert cache.invalidate_asset("tenant-a", "asset-a") == 2
    assert cache.get("old") is None
    assert cache.get("new") is None
    assert cache.get("other-tenant") == ("tenant-b", "asset-a")


def test_clear():
    cache = TokenCache(10, 60)
    cache.set("t1", "tenant-a", "asset-a")
    cache.clear()
    assert len(cache) == 0
