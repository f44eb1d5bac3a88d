"""Tests for the cache service: invalidation rules and refresh."""

from __future__ import annotations

import json

import pytest
from conftest import KJV_CONF, corpus_json

from capsulekit.cache import CacheService, Mutation, affected_caches
from capsulekit.cache.metadata import SNAPSHOT_NAME
from capsulekit.core.errors import CapsuleNotFoundError
from capsulekit.core.events import get_event_bus
from capsulekit.core.settings import CacheTTLs


@pytest.fixture
def cache(store, tmp_path):
    service = CacheService(store, sword_dir=tmp_path / "sword", max_workers=4)
    yield service
    service.close()


class TestAffectedCaches:
    def test_every_mutation_touches_listing(self):
        for mutation in Mutation:
            names = affected_caches(mutation)
            assert {"capsules", "metadata", "bibles", "manageable"} <= names

    def test_install_keeps_corpora(self):
        assert "corpus" not in affected_caches(Mutation.INSTALL)
        assert "corpus" in affected_caches(Mutation.DELETE)


class TestReads:
    def test_listing_is_cached(self, cache, make_capsule):
        make_capsule("kjv.tar.gz", {"a": "a"})
        assert [c.name for c in cache.list_capsules()] == ["kjv.tar.gz"]

        make_capsule("web.tar.gz", {"a": "a"})
        assert [c.name for c in cache.list_capsules()] == ["kjv.tar.gz"]

        cache.invalidate(Mutation.INSTALL, "web.tar.gz")
        assert [c.name for c in cache.list_capsules()] == ["kjv.tar.gz", "web.tar.gz"]

    def test_find_capsule(self, cache, make_capsule):
        make_capsule("KJV.tar.gz", {"a": "a"})
        assert cache.find_capsule("kjv").name == "KJV.tar.gz"
        with pytest.raises(CapsuleNotFoundError):
            cache.find_capsule("web")

    def test_corpus_cached_per_id(self, cache, make_capsule, store):
        make_capsule("web.tar.gz", {"web.ir.json": corpus_json("web", "World English Bible")})
        first = cache.get_corpus("WEB")
        passes = store.archive_passes
        assert cache.get_corpus("web") is first
        assert store.archive_passes == passes

    def test_bibles_and_categories(self, cache, make_capsule):
        make_capsule("web.tar.gz", {"web.ir.json": corpus_json("web", "World English Bible")})
        make_capsule("raw.tar.gz", {"a": "a"})

        assert [b.id for b in cache.list_bibles()] == ["web"]
        installed, installable = cache.manageable_bibles()
        assert [e.id for e in installed] == ["web"]
        assert [e.id for e in installable] == ["raw"]
        cats = cache.categories()
        assert [c.name for c in cats.with_ir] == ["web.tar.gz"]
        assert [c.name for c in cats.without_ir] == ["raw.tar.gz"]

    def test_manageable_includes_sword_modules(self, cache, make_capsule, tmp_path):
        mods = tmp_path / "sword" / "mods.d"
        mods.mkdir(parents=True)
        (mods / "kjv.conf").write_text(KJV_CONF)
        make_capsule("raw.tar.gz", {"a": "a"})

        installed, installable = cache.manageable_bibles()
        assert installed == []
        assert [(e.id, e.source) for e in installable] == [("KJV", "sword"), ("raw", "capsule")]

        make_capsule("kjv.tar.gz", {"kjv.ir.json": corpus_json("kjv", "King James Version")})
        cache.invalidate(Mutation.INSTALL, "kjv.tar.gz")

        installed, installable = cache.manageable_bibles()
        assert [e.id for e in installed] == ["kjv"]
        assert [e.id for e in installable] == ["raw"]


class TestInvalidation:
    def test_generate_ir_drops_capsule_state(self, cache, make_capsule):
        make_capsule("kjv.tar.gz", {"a": "a"})
        assert cache.list_bibles() == []

        # Rewrite the capsule the way a commit would.
        make_capsule("kjv.tar.gz", {"kjv.ir.json": corpus_json("kjv", "King James Version")})
        cache.invalidate(Mutation.GENERATE_IR, "kjv.tar.gz")

        assert [b.title for b in cache.list_bibles()] == ["King James Version"]

    def test_delete_drops_corpus(self, cache, make_capsule, store):
        make_capsule("web.tar.gz", {"web.ir.json": corpus_json("web", "World English Bible")})
        cache.get_corpus("web")
        store.delete("web.tar.gz")
        cache.invalidate(Mutation.DELETE, "web.tar.gz")

        with pytest.raises(CapsuleNotFoundError):
            cache.get_corpus("web")
        assert cache.list_bibles() == []

    def test_corpus_map_does_not_grow(self, cache, make_capsule, store):
        make_capsule("web.tar.gz", {"web.ir.json": corpus_json("web", "World English Bible")})
        cache.get_corpus("web")
        for i in range(100):
            with pytest.raises(CapsuleNotFoundError):
                cache.get_corpus(f"nope{i}")
        assert cache.corpus.keys() == ["web"]

        store.delete("web.tar.gz")
        cache.invalidate(Mutation.DELETE, "web.tar.gz")
        assert cache.corpus.keys() == []

    def test_invalidate_all_includes_sword_modules(self, cache, make_capsule, tmp_path):
        assert cache.list_sword_modules() == []
        assert cache.list_capsules() == []

        mods = tmp_path / "sword" / "mods.d"
        mods.mkdir(parents=True)
        (mods / "kjv.conf").write_text(KJV_CONF)
        make_capsule("web.tar.gz", {"a": "a"})
        assert cache.list_sword_modules() == []

        cache.invalidate_all()

        assert [m.id for m in cache.list_sword_modules()] == ["KJV"]
        assert [c.name for c in cache.list_capsules()] == ["web.tar.gz"]

    def test_invalidate_emits_event(self, cache):
        seen: list[dict] = []
        get_event_bus().subscribe("cache.invalidate", seen.append)
        cache.invalidate(Mutation.CONVERT, "kjv.tar.gz")
        assert seen[0]["data"]["mutation"] == "convert"
        assert "corpus" in seen[0]["data"]["caches"]


class TestRefresh:
    def test_refresh_interval(self, store, tmp_path):
        service = CacheService(
            store,
            sword_dir=tmp_path,
            ttls=CacheTTLs(capsules=100, bibles=50, manageable=200),
            refresh_fraction=0.5,
        )
        assert service.refresh_interval() == 25
        quick = CacheService(store, sword_dir=tmp_path, ttls=CacheTTLs(capsules=1, bibles=1, manageable=1))
        assert quick.refresh_interval() == 1.0

    def test_refresh_stale_rebuilds_warm_collections(self, store, make_capsule, tmp_path):
        now = [0.0]
        service = CacheService(store, sword_dir=tmp_path, clock=lambda: now[0])
        make_capsule("kjv.tar.gz", {"a": "a"})
        service.list_capsules()

        assert service.refresh_stale() == []
        now[0] = 250.0
        assert service.refresh_stale() == ["capsules"]

    def test_background_thread_stops_on_close(self, store, tmp_path):
        service = CacheService(store, sword_dir=tmp_path)
        thread = service.start_background_refresh(interval=0.01)
        assert service.start_background_refresh() is thread
        service.close()
        assert not thread.is_alive()


def test_prewarm_writes_snapshot(cache, make_capsule, capsules_dir):
    make_capsule("kjv.tar.gz", {"kjv.ir.json": corpus_json("kjv", "King James Version")})

    cache.prewarm()

    data = json.loads((capsules_dir / SNAPSHOT_NAME).read_text())
    assert data["capsules"]["kjv.tar.gz"]["has_ir"] is True
    assert cache.bibles.populated
