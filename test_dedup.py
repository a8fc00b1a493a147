#!/usr/bin/env python3
"""
Tests for global leak deduplication: the bounded fingerprint cache and the
writer that records each secret at most once.

    pytest test_dedup.py -v
"""

import sqlite3
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from leakradar.dedup import DedupCache, LeakWriter
from leakradar.detection import fingerprint
from leakradar.models import LeakCandidate
from leakradar.store import LeakDatabase

SECRET = "sk-proj-abcdefghijklmnopqrstuvwxyz1234567890"


def candidate(secret=SECRET, provider="openai", repo="octo/app", path=".env", **kwargs):
    return LeakCandidate(
        provider=provider,
        secret=secret,
        repo_full_name=repo,
        file_path=path,
        commit_sha="a" * 40,
        **kwargs
    )


# ===================================================================
# CACHE TESTS
# ===================================================================

class TestDedupCache(unittest.TestCase):

    def test_oldest_fifth_is_evicted_when_full(self):
        cache = DedupCache(capacity=10)
        for i in range(10):
            cache.add(str(i))
        self.assertEqual(len(cache), 10)

        cache.add("10")

        self.assertEqual(len(cache), 9)
        self.assertNotIn("0", cache)
        self.assertNotIn("1", cache)
        self.assertIn("2", cache)
        self.assertIn("10", cache)

    def test_size_never_exceeds_capacity(self):
        cache = DedupCache(capacity=100)
        for i in range(1000):
            cache.add(f"key-{i}")
            self.assertLessEqual(len(cache), 100)

    def test_re_adding_does_not_refresh_position(self):
        cache = DedupCache(capacity=2, evict_fraction=0.5)
        cache.add("a")
        cache.add("b")
        cache.add("a")
        cache.add("c")
        self.assertNotIn("a", cache)
        self.assertIn("b", cache)

    def test_invalid_capacity(self):
        with self.assertRaises(ValueError):
            DedupCache(capacity=0)


# ===================================================================
# WRITER TESTS
# ===================================================================

class TestLeakWriter(unittest.TestCase):

    def setUp(self):
        self.db = LeakDatabase(":memory:")
        self.writer = LeakWriter(self.db, "test-salt")

    def tearDown(self):
        self.db.close()

    def test_same_secret_is_stored_once_globally(self):
        self.assertTrue(self.writer.store(candidate()))
        self.assertFalse(self.writer.store(candidate(provider="deepseek", repo="other/repo", path="b.py")))
        self.assertEqual(self.db.count_findings(), 1)

    def test_conflict_from_another_worker_counts_as_dedup(self):
        other = LeakWriter(self.db, "test-salt")
        self.assertTrue(other.store(candidate()))

        self.assertFalse(self.writer.store(candidate()))
        self.assertIn(fingerprint(SECRET, "test-salt"), self.writer.cache)

    def test_cache_short_circuits_database(self):
        with patch.object(self.db, "insert_finding", wraps=self.db.insert_finding) as insert:
            self.writer.store(candidate())
            self.writer.store(candidate(repo="other/repo"))
        self.assertEqual(insert.call_count, 1)

    def test_evicted_fingerprint_falls_back_to_database(self):
        writer = LeakWriter(self.db, "test-salt", DedupCache(capacity=2))
        writer.store(candidate("sk-proj-AAAAbbbbCCCCddddEEEEffff1111"))
        writer.store(candidate("sk-proj-GGGGhhhhIIIIjjjjKKKKllll2222"))
        writer.store(candidate("sk-proj-MMMMnnnnOOOOppppQQQQrrrr3333"))

        with patch.object(self.db, "insert_finding", wraps=self.db.insert_finding) as insert:
            self.assertFalse(writer.store(candidate("sk-proj-AAAAbbbbCCCCddddEEEEffff1111")))
        self.assertEqual(insert.call_count, 1)
        self.assertEqual(self.db.count_findings(), 3)

    def test_finding_fields(self):
        added = datetime(2024, 5, 1, tzinfo=timezone.utc)
        self.writer.store(candidate(actor_login="octocat", added_at=added))

        row = self.db.get_finding(fingerprint(SECRET, "test-salt"))
        self.assertEqual(row["redacted_key"], "sk-p***890")
        self.assertEqual((row["repo_owner"], row["repo_name"]), ("octo", "app"))
        self.assertEqual(row["source_url"], "https://github.com/octo/app/commit/" + "a" * 40)
        self.assertTrue(row["added_at"].startswith("2024-05-01"))
        self.assertNotIn(SECRET, row.values())
        self.assertEqual(self.db.leaderboard(), {"octocat": 1})
        self.assertEqual(sum(self.db.daily_activity().values()), 1)

    def test_explicit_source_url_is_kept(self):
        url = "https://github.com/octo/app/blob/main/.env"
        self.writer.store(candidate(source_url=url))
        self.assertEqual(self.db.get_finding(fingerprint(SECRET, "test-salt"))["source_url"], url)

    def test_rollup_failure_does_not_fail_insert(self):
        db = MagicMock()
        db.insert_finding.return_value = True
        db.bump_daily_activity.side_effect = sqlite3.OperationalError("database is locked")
        db.bump_actor.side_effect = sqlite3.OperationalError("database is locked")
        writer = LeakWriter(db, "test-salt")

        with self.assertLogs("leakradar.dedup", level="WARNING") as logs:
            self.assertTrue(writer.store(candidate(actor_login="octocat")))
        self.assertEqual(len(logs.output), 2)

    def test_no_actor_skips_leaderboard(self):
        db = MagicMock()
        db.insert_finding.return_value = True
        LeakWriter(db, "test-salt").store(candidate())
        db.bump_actor.assert_not_called()


if __name__ == '__main__':
    unittest.main(verbosity=2)
