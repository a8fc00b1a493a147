#!/usr/bin/env python3
"""
===================================================================
GITHUB CLIENT TESTS
===================================================================

Rate-limit handling, retries, response parsing and the token preflight.
HTTP is replaced by a fake aiohttp session; sleeps and the clock are
injected so no test waits in real time.

USAGE EXAMPLES:

    pytest test_github_client.py -v
    pytest test_github_client.py -k "rate_limit" -v
"""

import asyncio
import base64
import unittest
from unittest.mock import MagicMock, patch

from github import BadCredentialsException

from leakradar import github_client
from leakradar.github_client import (
    ACCEPT_COMMIT_SEARCH,
    Endpoint,
    FetchResult,
    GitHubClient,
    PushCommit,
)

NOW = 1_700_000_000.0


class FakeResponse:
    def __init__(self, status=200, payload=None, headers=None, url="https://api.github.com/events"):
        self.status = status
        self._payload = payload
        self.headers = headers or {}
        self.url = url

    async def json(self, content_type=None):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, headers=None):
        self.calls.append((url, headers))
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def rate_headers(remaining, limit=60, reset=None):
    headers = {
        "x-ratelimit-remaining": str(remaining),
        "x-ratelimit-limit": str(limit),
    }
    if reset is not None:
        headers["x-ratelimit-reset"] = str(int(reset))
    return headers


def make_client(responses):
    session = FakeSession(responses)
    sleep = SleepRecorder()
    client = GitHubClient("ghp_test", session=session, sleep=sleep, clock=lambda: NOW)
    return client, session, sleep


PUSH_EVENTS = [
    {
        "type": "PushEvent",
        "repo": {"name": "octo/app"},
        "actor": {"login": "octocat"},
        "payload": {"commits": [{"sha": "a" * 40}, {"sha": "b" * 40}]},
    },
    {
        "type": "PushEvent",
        "repo": {"name": "octo/lib"},
        "actor": {"login": "hubot"},
        "payload": {"head": "c" * 40},
    },
    {"type": "WatchEvent", "repo": {"name": "octo/other"}},
]


# ===================================================================
# RATE LIMIT TESTS
# ===================================================================

class TestRateLimitHandling(unittest.TestCase):
    """Reset computation, in-place retry and preemptive throttling."""

    def test_reset_after_includes_safety_margin(self):
        client, _, _ = make_client([])
        self.assertEqual(client.compute_reset_after_ms(int(NOW) + 30), 31000)
        self.assertEqual(client.compute_reset_after_ms(int(NOW) - 30), 1000)

    def test_forbidden_waits_for_reset_and_retries_once(self):
        client, session, sleep = make_client([
            FakeResponse(403, headers=rate_headers(0, reset=NOW + 10)),
            FakeResponse(200, payload=PUSH_EVENTS, headers=rate_headers(59)),
        ])

        result = asyncio.run(client.fetch_push_events(pages=1))

        self.assertTrue(result.ok)
        self.assertEqual(len(session.calls), 2)
        self.assertEqual(sleep.calls, [11.0])
        self.assertIsNone(result.reset_after_ms)

    def test_retry_budget_exhausted_returns_failure(self):
        client, session, sleep = make_client([
            FakeResponse(429, headers=rate_headers(0, reset=NOW + 10)),
            FakeResponse(429, headers=rate_headers(0, reset=NOW + 20)),
        ])

        result = asyncio.run(client.fetch_push_events(pages=1))

        self.assertFalse(result.ok)
        self.assertTrue(result.rate_limited)
        self.assertEqual(result.reset_after_ms, 21000)
        self.assertEqual(len(session.calls), 2)
        self.assertEqual(sleep.calls, [11.0])

    def test_no_retry_when_budget_is_zero(self):
        session = FakeSession([FakeResponse(403, headers=rate_headers(0, reset=NOW + 5))])
        sleep = SleepRecorder()
        client = GitHubClient("t", session=session, max_retries=0, sleep=sleep, clock=lambda: NOW)

        result = asyncio.run(client.fetch_commit("octo/app", "a" * 40))

        self.assertFalse(result.ok)
        self.assertEqual(result.reset_after_ms, 6000)
        self.assertEqual(sleep.calls, [])

    def test_secondary_limit_uses_retry_after(self):
        client, _, sleep = make_client([
            FakeResponse(403, headers={"retry-after": "7"}),
            FakeResponse(200, payload={"files": []}, headers=rate_headers(40)),
        ])

        result = asyncio.run(client.fetch_commit("octo/app", "a" * 40))

        self.assertTrue(result.ok)
        self.assertEqual(sleep.calls, [8.0])

    def test_exhausted_success_is_handed_to_caller(self):
        client, _, sleep = make_client([
            FakeResponse(200, payload=PUSH_EVENTS, headers=rate_headers(0, reset=NOW + 30)),
        ])

        result = asyncio.run(client.fetch_push_events(pages=2))

        self.assertTrue(result.ok)
        self.assertTrue(result.rate_limited)
        self.assertEqual(result.reset_after_ms, 31000)
        # The second page is not requested once the window is exhausted
        self.assertEqual(sleep.calls, [])

    def test_low_remaining_triggers_preemptive_sleep(self):
        for remaining, expected in ((3, [3.0]), (5, [5.0]), (6, []), (1, [1.0])):
            with self.subTest(remaining=remaining):
                client, _, sleep = make_client([
                    FakeResponse(200, payload={"files": []}, headers=rate_headers(remaining)),
                ])
                asyncio.run(client.fetch_commit("octo/app", "a" * 40))
                self.assertEqual(sleep.calls, expected)

    def test_http_error_is_not_rate_limited(self):
        client, _, sleep = make_client([FakeResponse(404, headers=rate_headers(50))])

        result = asyncio.run(client.fetch_commit("octo/app", "a" * 40))

        self.assertFalse(result.ok)
        self.assertFalse(result.rate_limited)
        self.assertIsNone(result.data)
        self.assertEqual(sleep.calls, [])

    def test_snapshots_are_kept_per_category(self):
        client, _, _ = make_client([
            FakeResponse(200, payload={"items": []}, headers=rate_headers(9, limit=10)),
            FakeResponse(200, payload={"items": []}, headers=rate_headers(29, limit=30)),
        ])

        asyncio.run(client.search_code("sk-proj- in:file"))
        asyncio.run(client.search_commits("sk-proj-"))
        status = client.rate_limit_status()

        self.assertEqual(status["codeRemaining"], 9)
        self.assertEqual(status["codeLimit"], 10)
        self.assertEqual(status["commitRemaining"], 29)
        self.assertIsNone(status["eventsRemaining"])
        self.assertIsNotNone(status["updatedAt"])
        self.assertEqual(client.rate_limits["commits"].limit, 30)


# ===================================================================
# CAPABILITY TESTS
# ===================================================================

class TestCapabilities(unittest.TestCase):

    def test_push_events_are_flattened(self):
        commits = github_client.parse_push_events(PUSH_EVENTS)
        self.assertEqual(commits, [
            PushCommit("octo/app", "a" * 40, "octocat"),
            PushCommit("octo/app", "b" * 40, "octocat"),
            PushCommit("octo/lib", "c" * 40, "hubot"),
        ])

    def test_events_pages_are_paused(self):
        client, session, sleep = make_client([
            FakeResponse(200, payload=PUSH_EVENTS[:1], headers=rate_headers(50)),
            FakeResponse(200, payload=PUSH_EVENTS[1:], headers=rate_headers(49)),
        ])

        result = asyncio.run(client.fetch_push_events(pages=2))

        self.assertEqual(len(result.data), 3)
        self.assertIn("page=1", session.calls[0][0])
        self.assertIn("page=2", session.calls[1][0])
        self.assertEqual(sleep.calls, [0.5])

    def test_failed_second_page_keeps_first(self):
        client, _, _ = make_client([
            FakeResponse(200, payload=PUSH_EVENTS[:1], headers=rate_headers(50)),
            FakeResponse(500),
        ])

        result = asyncio.run(client.fetch_push_events(pages=2))

        self.assertTrue(result.ok)
        self.assertEqual(len(result.data), 2)

    def test_commit_details(self):
        payload = {
            "author": {"login": "octocat"},
            "commit": {"author": {"date": "2024-05-01T10:00:00Z"}},
            "files": [{"filename": ".env", "patch": "+KEY=1"}, {"filename": "logo.png"}],
        }
        client, _, _ = make_client([FakeResponse(200, payload=payload, headers=rate_headers(50))])

        result = asyncio.run(client.fetch(Endpoint.COMMIT, repo_full_name="octo/app", commit_sha="a" * 40))

        self.assertEqual(result.data.author_login, "octocat")
        self.assertEqual(result.data.committed_at, "2024-05-01T10:00:00Z")
        self.assertEqual([f.filename for f in result.data.files], [".env", "logo.png"])
        self.assertIsNone(result.data.files[1].patch)

    def test_commit_search_uses_preview_accept_and_skips_forks(self):
        payload = {
            "total_count": 2,
            "items": [
                {"sha": "d" * 40, "repository": {"full_name": "octo/app", "fork": False},
                 "author": {"login": "octocat"}},
                {"sha": "e" * 40, "repository": {"full_name": "fork/app", "fork": True}},
            ],
        }
        client, session, _ = make_client([FakeResponse(200, payload=payload, headers=rate_headers(29))])

        result = asyncio.run(client.search_commits("sk-proj- in:file"))

        url, headers = session.calls[0]
        self.assertIn("q=sk-proj-+in%3Afile", url)
        self.assertEqual(headers["Accept"], ACCEPT_COMMIT_SEARCH)
        self.assertEqual(headers["Authorization"], "Bearer ghp_test")
        self.assertEqual(result.data, [PushCommit("octo/app", "d" * 40, "octocat")])

    def test_code_search_takes_default_branch(self):
        payload = {
            "items": [
                {"path": "config/.env", "html_url": "https://github.com/octo/app/blob/abc123/config/.env",
                 "repository": {"full_name": "octo/app", "default_branch": "main"}},
                {"path": "x.env", "html_url": "https://github.com/octo/lib/blob/dev/x.env",
                 "repository": {"full_name": "octo/lib"}},
                {"path": ".env", "repository": {"full_name": "fork/app", "fork": True}},
            ],
        }
        client, _, _ = make_client([FakeResponse(200, payload=payload, headers=rate_headers(9))])

        result = asyncio.run(client.search_code("OPENAI_API_KEY in:file"))

        self.assertEqual([(h.repo_full_name, h.ref) for h in result.data],
                         [("octo/app", "main"), ("octo/lib", "dev")])

    def test_file_content_decoding(self):
        text = "OPENAI_API_KEY=value\n"
        encoded = base64.b64encode(text.encode()).decode()
        # GitHub splits base64 content over several lines
        wrapped = "\n".join(encoded[i:i + 10] for i in range(0, len(encoded), 10))

        self.assertEqual(
            github_client.decode_file_content(
                {"type": "file", "size": 21, "encoding": "base64", "content": wrapped}, 1000),
            text,
        )
        self.assertIsNone(github_client.decode_file_content({"type": "dir"}, 1000))
        self.assertIsNone(github_client.decode_file_content(
            {"type": "file", "size": 5000, "encoding": "base64", "content": encoded}, 1000))
        self.assertIsNone(github_client.decode_file_content(
            {"type": "file", "size": 21, "encoding": "none", "content": ""}, 1000))

    def test_file_content_path_is_encoded(self):
        payload = {"type": "file", "size": 3, "encoding": "base64", "content": base64.b64encode(b"abc").decode()}
        client, session, _ = make_client([FakeResponse(200, payload=payload, headers=rate_headers(40))])

        result = asyncio.run(client.fetch_file_content("octo/app", "my dir/.env", "feature/x", 100))

        self.assertEqual(result.data, "abc")
        self.assertIn("/contents/my%20dir/.env?ref=feature%2Fx", session.calls[0][0])

    def test_owned_session_is_not_closed_when_injected(self):
        client, session, _ = make_client([])
        asyncio.run(client.close())
        self.assertFalse(session.closed)


# ===================================================================
# PREFLIGHT TESTS
# ===================================================================

class TestPreflight(unittest.TestCase):

    @patch("leakradar.github_client.Github")
    def test_preflight_reports_login_and_budget(self, mock_github):
        instance = mock_github.return_value
        instance.get_user.return_value = MagicMock(login="octocat")
        instance.rate_limiting = (4999, 5000)
        instance.rate_limiting_resettime = int(NOW)

        info = github_client.preflight_token("ghp_test")

        self.assertEqual(info["login"], "octocat")
        self.assertEqual(info["remaining"], 4999)
        instance.close.assert_called_once()

    @patch("leakradar.github_client.Github")
    def test_bad_credentials_are_not_fatal(self, mock_github):
        instance = mock_github.return_value
        instance.get_user.side_effect = BadCredentialsException(401, {"message": "Bad credentials"}, {})

        with self.assertLogs("leakradar.github_client", level="ERROR"):
            self.assertIsNone(github_client.preflight_token("bad"))


class TestFetchResult(unittest.TestCase):

    def test_rate_limited_flag(self):
        self.assertFalse(FetchResult(ok=True).rate_limited)
        self.assertFalse(FetchResult(ok=False, reset_after_ms=0).rate_limited)
        self.assertTrue(FetchResult(ok=False, reset_after_ms=1000).rate_limited)


if __name__ == '__main__':
    unittest.main(verbosity=2)
