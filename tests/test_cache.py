import json
import time

from spotube.core.cache import TTL_SECONDS, SearchCache


class TestSearchCache:
    def test_get_set_case_insensitive(self):
        cache = SearchCache()
        cache.set("Song", "Artist", "v1")

        assert cache.get("song ", "ARTIST") == "v1"
        assert cache.get("Song", "Other") is None
        assert len(cache) == 1

    def test_persists(self, tmp_path):
        path = tmp_path / "cache.json"
        cache = SearchCache(path)
        cache.set("Song", "Artist", "v1")
        cache.save()

        assert SearchCache(path).get("Song", "Artist") == "v1"
        assert not list(tmp_path.glob(".cache_*.tmp"))

    def test_expired_entries_pruned_on_load(self, tmp_path):
        path = tmp_path / "cache.json"
        stale = time.time() - TTL_SECONDS - 60
        path.write_text(json.dumps({
            "old\x00artist": {"track_id": "v0", "cached_at": stale},
            "new\x00artist": {"track_id": "v1", "cached_at": time.time()},
        }))

        cache = SearchCache(path)

        assert cache.get("old", "artist") is None
        assert cache.get("new", "artist") == "v1"

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("not json")

        assert len(SearchCache(path)) == 0

    def test_save_without_changes_writes_nothing(self, tmp_path):
        path = tmp_path / "cache.json"
        SearchCache(path).save()
        assert not path.exists()

    def test_entries_expire_by_clock(self):
        now = [1000.0]
        cache = SearchCache(ttl_seconds=60, clock=lambda: now[0])
        cache.set("Song", "Artist", "v1")

        now[0] += 61
        assert cache.get("Song", "Artist") is None
        assert len(cache) == 0

    def test_prune_counts_removed(self):
        now = [1000.0]
        cache = SearchCache(ttl_seconds=60, clock=lambda: now[0])
        cache.set("A", "x", "v1")
        now[0] += 30
        cache.set("B", "x", "v2")
        now[0] += 40

        assert cache.prune() == 1
        assert cache.get("B", "x") == "v2"
