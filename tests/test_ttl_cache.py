from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import TestCase
from unittest.mock import Mock

from pharmacy_assistant.integrations.cache import InMemoryBackend, SqliteBackend, TTLCache, build_cache


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TTLCacheTests(TestCase):
    def test_entries_expire_lazily(self) -> None:
        clock = _Clock()
        cache = TTLCache(name="rxnorm", ttl_seconds=60, time_func=clock)

        cache.set("Paracetamol", {"mapped_name": "acetaminophen"})
        clock.now += 59
        self.assertEqual(cache.get("paracetamol"), {"mapped_name": "acetaminophen"})

        clock.now += 2
        self.assertIsNone(cache.get("paracetamol"))

    def test_stale_generation_does_not_overwrite_newer_entry(self) -> None:
        cache = TTLCache(name="openfda", ttl_seconds=60, time_func=_Clock())
        slow = cache.next_generation()
        fast = cache.next_generation()

        self.assertTrue(cache.set("losartan", "fresh", generation=fast))
        self.assertFalse(cache.set("losartan", "stale", generation=slow))
        self.assertEqual(cache.get("losartan"), "fresh")

    def test_get_or_load_caches_values_but_not_none(self) -> None:
        cache = TTLCache(name="openfda", ttl_seconds=60, time_func=_Clock())
        loader = Mock(return_value=[{"id": 1}])
        missing = Mock(return_value=None)

        self.assertEqual(cache.get_or_load("amoxicillin", loader), [{"id": 1}])
        self.assertEqual(cache.get_or_load("amoxicillin", loader), [{"id": 1}])
        self.assertIsNone(cache.get_or_load("unknown", missing))
        self.assertIsNone(cache.get_or_load("unknown", missing))

        loader.assert_called_once()
        self.assertEqual(missing.call_count, 2)

    def test_invalidate_removes_single_key(self) -> None:
        cache = TTLCache(ttl_seconds=60)
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("A")

        self.assertIsNone(cache.get("a"))
        self.assertEqual(cache.get("b"), 2)

    def test_memory_backend_evicts_least_recently_used(self) -> None:
        cache = TTLCache(ttl_seconds=60, backend=InMemoryBackend(maxsize=2))
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        self.assertEqual(cache.get("a"), 1)
        self.assertIsNone(cache.get("b"))


class SqliteBackendTests(TestCase):
    def test_values_survive_a_new_cache_instance(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "cache.sqlite3"
            first_backend = SqliteBackend(path)
            first = TTLCache(name="rxnorm", ttl_seconds=3600, backend=first_backend)
            first.set("paracetamol", {"mapped_name": "acetaminophen", "confidence": 0.9})
            first_backend.close()

            second_backend = SqliteBackend(path)
            second = TTLCache(name="rxnorm", ttl_seconds=3600, backend=second_backend)
            value = second.get("Paracetamol")
            second_backend.close()

        self.assertEqual(value, {"mapped_name": "acetaminophen", "confidence": 0.9})

    def test_build_cache_uses_sqlite_under_data_dir(self) -> None:
        with TemporaryDirectory() as temp_dir:
            cache = build_cache(name="openfda", backend_name="sqlite", ttl_seconds=60, data_dir=temp_dir)
            cache.set("key", ["value"])

            self.assertTrue((Path(temp_dir) / "cache" / "openfda.sqlite3").exists())
            self.assertEqual(cache.get("key"), ["value"])
            cache._backend.close()
