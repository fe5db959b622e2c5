import json
import unittest
from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from attempt_engine.common.storage import create_backend
from attempt_engine.common.storage.entry import StoreEntry
from attempt_engine.common.storage.key_builder import KeyBuilder
from attempt_engine.common.storage.memory import MemoryStoreBackend
from attempt_engine.common.storage.redis import RedisStoreBackend
from attempt_engine.config import StorageConfig


class ManualTime:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestStoreEntry(unittest.TestCase):
    """Test the StoreEntry class."""

    def test_init(self):
        clock = ManualTime()
        entry = StoreEntry({"a": 1}, time_func=clock)
        self.assertEqual(entry.value, {"a": 1})
        self.assertIsNone(entry.expires_at)
        self.assertEqual(entry.access_count, 0)

        entry = StoreEntry("x", ttl=10, time_func=clock)
        self.assertEqual(entry.expires_at, 1010.0)

    def test_zero_ttl_never_expires(self):
        clock = ManualTime()
        entry = StoreEntry("x", ttl=0, time_func=clock)
        clock.now += 10 ** 6
        self.assertFalse(entry.is_expired())
        self.assertIsNone(entry.get_ttl())

    def test_expiry_and_remaining_ttl(self):
        clock = ManualTime()
        entry = StoreEntry("x", ttl=5, time_func=clock)
        clock.now += 3
        self.assertFalse(entry.is_expired())
        self.assertEqual(entry.get_ttl(), 2.0)
        clock.now += 2
        self.assertTrue(entry.is_expired())
        self.assertEqual(entry.get_ttl(), 0.0)

    def test_access(self):
        clock = ManualTime()
        entry = StoreEntry("x", time_func=clock)
        clock.now += 1
        entry.access()
        self.assertEqual(entry.access_count, 1)
        self.assertEqual(entry.last_accessed, 1001.0)


class TestMemoryStoreBackend(unittest.TestCase):
    """Test the MemoryStoreBackend class."""

    def setUp(self):
        self.clock = ManualTime()
        self.store = MemoryStoreBackend(max_size=3, time_func=self.clock)

    def test_set_and_get(self):
        result = self.store.set("k", {"v": 1})
        self.assertTrue(result.success)

        result = self.store.get("k")
        self.assertTrue(result.success)
        self.assertTrue(result.hit)
        self.assertEqual(result.value, {"v": 1})
        self.assertEqual(result.source, "memory")

    def test_get_missing(self):
        result = self.store.get("missing")
        self.assertFalse(result.success)
        self.assertFalse(result.hit)
        self.assertEqual(result.error, "Key not found")

    def test_overwrite(self):
        self.store.set("k", 1)
        self.store.set("k", 2)
        self.assertEqual(self.store.get("k").value, 2)
        self.assertEqual(len(self.store), 1)

    def test_ttl_expiry(self):
        self.store.set("k", "v", ttl=60)
        self.clock.now += 59
        self.assertTrue(self.store.has("k"))
        self.clock.now += 1
        self.assertFalse(self.store.has("k"))
        result = self.store.get("k")
        self.assertFalse(result.success)
        self.assertEqual(self.store.get_stats()["expirations"], 1)

    def test_expired_entry_reported_on_get(self):
        self.store.set("k", "v", ttl=1)
        self.clock.now += 2
        result = self.store.get("k")
        self.assertEqual(result.error, "Entry expired")

    def test_purge_expired(self):
        self.store.set("a", 1, ttl=1)
        self.store.set("b", 2, ttl=100)
        self.clock.now += 5
        self.assertEqual(self.store.purge_expired(), 1)
        self.assertEqual(len(self.store), 1)

    def test_lru_eviction(self):
        self.store.set("a", 1)
        self.store.set("b", 2)
        self.store.set("c", 3)
        self.store.get("a")  # a becomes most recently used
        self.store.set("d", 4)

        self.assertTrue(self.store.has("a"))
        self.assertFalse(self.store.has("b"))
        self.assertEqual(self.store.get_stats()["evictions"], 1)

    def test_delete_and_clear(self):
        self.store.set("a", 1)
        self.assertTrue(self.store.delete("a"))
        self.assertFalse(self.store.delete("a"))

        self.store.set("b", 2)
        self.assertTrue(self.store.clear())
        self.assertEqual(len(self.store), 0)

    def test_stats(self):
        self.store.set("a", 1)
        self.store.get("a")
        self.store.get("missing")
        stats = self.store.get_stats()
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["hit_rate"], 0.5)


class TestRedisStoreBackend(unittest.TestCase):
    """Test the RedisStoreBackend class against a mocked client."""

    def setUp(self):
        self.redis = MagicMock()
        self.pipeline = MagicMock()
        self.redis.pipeline.return_value = self.pipeline
        self.store = RedisStoreBackend(redis_client=self.redis, key_prefix="test:")

    def test_set_with_ttl(self):
        result = self.store.set("k", {"a": 1}, ttl=21600)
        self.assertTrue(result.success)
        self.redis.set.assert_called_once_with("test:k", json.dumps({"a": 1}).encode("utf-8"), ex=21600)

    def test_set_rounds_fractional_ttl_up(self):
        self.store.set("k", 1, ttl=0.5)
        self.assertEqual(self.redis.set.call_args.kwargs["ex"], 1)

    def test_set_without_ttl(self):
        self.store.set("k", "v")
        self.redis.set.assert_called_once_with("test:k", b'"v"')

    def test_set_failure(self):
        self.redis.set.side_effect = RedisConnectionError("down")
        result = self.store.set("k", "v")
        self.assertFalse(result.success)
        self.assertIn("down", result.error)

    def test_set_unserializable(self):
        result = self.store.set("k", object())
        self.assertFalse(result.success)
        self.redis.set.assert_not_called()

    def test_get_hit(self):
        self.pipeline.execute.return_value = [b'{"a": 1}', 120]
        result = self.store.get("k")
        self.pipeline.get.assert_called_once_with("test:k")
        self.assertTrue(result.success)
        self.assertEqual(result.value, {"a": 1})
        self.assertEqual(result.ttl, 120)

    def test_get_miss(self):
        self.pipeline.execute.return_value = [None, -2]
        result = self.store.get("k")
        self.assertFalse(result.success)
        self.assertEqual(self.store.get_stats()["misses"], 1)

    def test_get_corrupt(self):
        self.pipeline.execute.return_value = [b"{not json", 10]
        result = self.store.get("k")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Deserialization failed")

    def test_get_connection_error(self):
        self.pipeline.execute.side_effect = RedisConnectionError("down")
        result = self.store.get("k")
        self.assertFalse(result.success)

    def test_delete(self):
        self.redis.delete.return_value = 1
        self.assertTrue(self.store.delete("k"))
        self.redis.delete.assert_called_once_with("test:k")

        self.redis.delete.side_effect = RedisConnectionError("down")
        self.assertFalse(self.store.delete("k"))

    def test_clear_uses_prefix(self):
        self.redis.scan_iter.return_value = iter([b"test:a", b"test:b"])
        self.assertTrue(self.store.clear())
        self.redis.scan_iter.assert_called_once_with(match="test:*")
        self.redis.delete.assert_called_once_with(b"test:a", b"test:b")


class TestKeyBuilder(unittest.TestCase):
    """Test the KeyBuilder class."""

    def test_build(self):
        self.assertEqual(KeyBuilder.build("a", 1, None), "a:1:null")
        self.assertEqual(KeyBuilder.build("a", namespace="ns", version="2"), "ns:a:v2")

    def test_attempt_key(self):
        self.assertEqual(KeyBuilder.attempt_key("quiz", 5, 42), "quiz-attempt:5:42")
        self.assertEqual(KeyBuilder.attempt_key("skill_test", 5, 42), "skill-test-attempt:5:42")

    def test_attempt_keys_differ_per_user_and_assessment(self):
        keys = {
            KeyBuilder.attempt_key("quiz", 1, 1),
            KeyBuilder.attempt_key("quiz", 1, 2),
            KeyBuilder.attempt_key("quiz", 2, 1),
            KeyBuilder.attempt_key("skill_test", 1, 1),
        }
        self.assertEqual(len(keys), 4)


class TestCreateBackend(unittest.TestCase):

    def test_memory_backend(self):
        backend = create_backend(StorageConfig(memory_max_size=5))
        self.assertIsInstance(backend, MemoryStoreBackend)
        self.assertEqual(backend.get_stats()["max_size"], 5)

    def test_memory_records_do_not_outlive_the_backend(self):
        first = create_backend(StorageConfig())
        first.set("quiz-attempt:5:42", {"assessmentId": 42})

        restarted = create_backend(StorageConfig())
        self.assertFalse(restarted.has("quiz-attempt:5:42"))
