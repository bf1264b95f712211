#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for repository enumeration across hosting API dialects.

This script validates:
- Listing endpoints, query parameters and auth headers per dialect
- Clone URL field precedence and the constructed fallback
- Recency pruning, client-side ordering and the page cap
- Error handling for non-2xx answers and malformed bodies
- Bounded retry on rate limiting and transient server errors
"""

import sys
import datetime
from pathlib import Path

import httpx
import pytest

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

from sleep_schedule import (
    APIStatistics,
    CloneLocation,
    EnumerationError,
    GITEA_LISTING,
    GITHUB_LISTING,
    GITLAB_LISTING,
    HostDialect,
    PAGE_SIZE,
    RepositoryEnumerator,
    RunSettings,
    map_listing_entry,
    parse_listing,
)

CUTOFF = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)


def make_settings(**overrides):
    values = {"cutoff": CUTOFF, "retry_attempts": 3, "retry_backoff": 0.0}
    values.update(overrides)
    return RunSettings(**values)


def make_enumerator(handler, settings=None, stats=None):
    return RepositoryEnumerator(
        settings or make_settings(),
        stats or APIStatistics(),
        transport=httpx.MockTransport(handler),
    )


def test_url_field_precedence():
    """HTTP clone URL, then clone URL, then SSH URL, then constructed."""
    print("Testing clone URL precedence...")

    entry = {
        "http_url_to_repo": "https://gitlab.com/alice/a.git",
        "ssh_url_to_repo": "git@gitlab.com:alice/a.git",
        "path": "a",
    }
    location = map_listing_entry(entry, GITLAB_LISTING, "gitlab.com", "alice")
    assert location == CloneLocation("https://gitlab.com/alice/a.git", "alice")

    entry = {"http_url_to_repo": None, "ssh_url_to_repo": "git@gitlab.com:alice/a.git"}
    location = map_listing_entry(entry, GITLAB_LISTING, "gitlab.com", "alice")
    assert location.url == "git@gitlab.com:alice/a.git"

    entry = {"clone_url": "", "ssh_url": "", "name": "notes"}
    location = map_listing_entry(entry, GITEA_LISTING, "codeberg.org", "alice")
    assert location.url == "https://codeberg.org/alice/notes.git"

    assert map_listing_entry({"id": 7}, GITHUB_LISTING, "github.com", "alice") is None

    print("  ✅ Clone URL precedence correct")


def test_parse_listing_rejects_malformed_payloads():
    with pytest.raises(EnumerationError):
        parse_listing({"message": "Not Found"}, GITHUB_LISTING, "github.com", "alice")
    with pytest.raises(EnumerationError):
        parse_listing(["a", "b"], GITHUB_LISTING, "github.com", "alice")


def test_parse_listing_prunes_and_caps():
    """Stale repositories are dropped and the result never exceeds the cap."""
    print("Testing recency pruning and page cap...")

    payload = [
        {"clone_url": "https://github.com/alice/new.git", "pushed_at": "2025-03-01T00:00:00Z"},
        {"clone_url": "https://github.com/alice/old.git", "pushed_at": "2024-06-01T00:00:00Z"},
        {"clone_url": "https://github.com/alice/unknown.git", "pushed_at": None},
        {"clone_url": "https://github.com/alice/garbled.git", "pushed_at": "yesterday"},
    ]
    locations = parse_listing(payload, GITHUB_LISTING, "github.com", "alice", CUTOFF)
    assert [l.url.rsplit("/", 1)[1] for l in locations] == [
        "new.git",
        "unknown.git",
        "garbled.git",
    ]

    big = [{"clone_url": f"https://github.com/alice/r{i}.git"} for i in range(250)]
    locations = parse_listing(big, GITHUB_LISTING, "github.com", "alice", CUTOFF)
    assert len(locations) == PAGE_SIZE
    assert locations[0].url.endswith("/r0.git")

    print("  ✅ Pruning and cap correct")


def test_gitea_listing_sorted_client_side():
    payload = [
        {"clone_url": "https://codeberg.org/a/older.git", "updated_at": "2025-02-01T00:00:00+00:00"},
        {"clone_url": "https://codeberg.org/a/undated.git"},
        {"clone_url": "https://codeberg.org/a/newest.git", "updated_at": "2025-05-01T10:00:00+02:00"},
    ]
    locations = parse_listing(payload, GITEA_LISTING, "codeberg.org", "a", CUTOFF)
    assert [l.url.rsplit("/", 1)[1] for l in locations] == [
        "newest.git",
        "older.git",
        "undated.git",
    ]


def test_github_listing_request():
    """GitHub listing hits api.github.com with sort parameters and token."""
    print("Testing GitHub listing request...")

    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(
            200,
            json=[
                {"name": "a", "clone_url": "https://github.com/alice/a.git", "ssh_url": "git@github.com:alice/a.git"},
                {"name": "b", "ssh_url": "git@github.com:alice/b.git"},
                {"name": "c"},
            ],
        )

    stats = APIStatistics()
    settings = make_settings(tokens={"github": "secret"})
    enumerator = make_enumerator(handler, settings, stats)
    locations = enumerator.enumerate(HostDialect.GITHUB, "github.com", "alice")

    assert [l.url for l in locations] == [
        "https://github.com/alice/a.git",
        "git@github.com:alice/b.git",
        "https://github.com/alice/c.git",
    ]
    assert all(l.account == "alice" for l in locations)

    request = requests[0]
    assert request.url.host == "api.github.com"
    assert request.url.path == "/users/alice/repos"
    assert request.url.params["sort"] == "pushed"
    assert request.url.params["direction"] == "desc"
    assert request.url.params["per_page"] == str(PAGE_SIZE)
    assert request.headers["Authorization"] == "Bearer secret"
    assert stats.stats["github"]["success"] == 1

    print("  ✅ GitHub listing request correct")


def test_github_enterprise_uses_api_v3():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=[])

    enumerator = make_enumerator(handler)
    assert enumerator.enumerate(HostDialect.GITHUB, "ghe.corp.example", "alice") == []
    assert str(requests[0].url).startswith("https://ghe.corp.example/api/v3/users/alice/repos")
    assert "Authorization" not in requests[0].headers, "No token means no auth header"


def test_gitlab_listing_and_group_fallback():
    """GitLab uses PRIVATE-TOKEN and retries 404 users as groups."""
    print("Testing GitLab listing...")

    requests = []

    def handler(request):
        requests.append(request)
        if "/users/" in request.url.path:
            return httpx.Response(404, json={"message": "404 User Not Found"})
        return httpx.Response(
            200,
            json=[{"path": "infra", "http_url_to_repo": "https://gitlab.example.org/team/infra.git"}],
        )

    stats = APIStatistics()
    settings = make_settings(tokens={"gitlab": "glpat"})
    enumerator = make_enumerator(handler, settings, stats)
    locations = enumerator.enumerate(HostDialect.GITLAB, "gitlab.example.org", "team")

    assert [l.url for l in locations] == ["https://gitlab.example.org/team/infra.git"]
    assert requests[0].url.path == "/api/v4/users/team/projects"
    assert requests[1].url.path == "/api/v4/groups/team/projects"
    assert requests[0].url.params["order_by"] == "last_activity_at"
    assert requests[0].headers["PRIVATE-TOKEN"] == "glpat"
    assert stats.stats["gitlab"]["errors"][404] == 1
    assert stats.stats["gitlab"]["success"] == 1

    print("  ✅ GitLab listing correct")


def test_gitea_listing_request():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=[{"name": "x", "clone_url": "https://codeberg.org/bob/x.git"}])

    settings = make_settings(tokens={"gitea": "tea"})
    locations = make_enumerator(handler, settings).enumerate(
        HostDialect.GITEA, "codeberg.org", "bob"
    )
    assert locations == [CloneLocation("https://codeberg.org/bob/x.git", "bob")]
    assert requests[0].url.path == "/api/v1/users/bob/repos"
    assert requests[0].url.params["limit"] == str(PAGE_SIZE)
    assert requests[0].headers["Authorization"] == "token tea"


def test_enumeration_errors():
    """Non-2xx answers, bad JSON and unknown dialects raise EnumerationError."""
    print("Testing enumeration errors...")

    enumerator = make_enumerator(lambda request: httpx.Response(401, text="Bad credentials"))
    with pytest.raises(EnumerationError) as excinfo:
        enumerator.enumerate(HostDialect.GITHUB, "github.com", "alice")
    assert "401" in str(excinfo.value)

    enumerator = make_enumerator(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(EnumerationError):
        enumerator.enumerate(HostDialect.GITEA, "codeberg.org", "alice")

    enumerator = make_enumerator(lambda request: httpx.Response(200, json={"repos": []}))
    with pytest.raises(EnumerationError):
        enumerator.enumerate(HostDialect.GITHUB, "github.com", "alice")

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    stats = APIStatistics()
    enumerator = make_enumerator(refuse, stats=stats)
    with pytest.raises(EnumerationError):
        enumerator.enumerate(HostDialect.GITHUB, "github.com", "alice")
    assert stats.stats["github"]["errors"]["ConnectError"] == 1

    with pytest.raises(EnumerationError):
        make_enumerator(lambda request: httpx.Response(200, json=[])).enumerate(
            HostDialect.UNKNOWN, "example.org", "alice"
        )

    print("  ✅ Enumeration errors surfaced correctly")


def test_retry_on_transient_errors():
    """429 and 5xx answers are retried a bounded number of times."""
    print("Testing bounded retry...")

    answers = [httpx.Response(503), httpx.Response(429, headers={"Retry-After": "0"})]

    def handler(request):
        if answers:
            return answers.pop(0)
        return httpx.Response(200, json=[{"clone_url": "https://github.com/alice/a.git"}])

    stats = APIStatistics()
    enumerator = make_enumerator(handler, stats=stats)
    locations = enumerator.enumerate(HostDialect.GITHUB, "github.com", "alice")
    assert len(locations) == 1
    assert stats.stats["github"]["errors"] == {503: 1, 429: 1}

    calls = []

    def always_failing(request):
        calls.append(request)
        return httpx.Response(502)

    enumerator = make_enumerator(always_failing, make_settings(retry_attempts=2))
    with pytest.raises(EnumerationError):
        enumerator.enumerate(HostDialect.GITHUB, "github.com", "alice")
    assert len(calls) == 2

    print("  ✅ Bounded retry works correctly")


def test_enumerator_never_exceeds_page_cap():
    payload = [{"name": f"r{i}", "clone_url": f"https://github.com/alice/r{i}.git"} for i in range(150)]
    enumerator = make_enumerator(lambda request: httpx.Response(200, json=payload))
    assert len(enumerator.enumerate(HostDialect.GITHUB, "github.com", "alice")) == PAGE_SIZE


def run_all_tests():
    """Run all repository enumeration tests."""
    print("🧪 Running Repository Enumeration Tests")
    print("-" * 60)

    tests = [
        test_url_field_precedence,
        test_parse_listing_rejects_malformed_payloads,
        test_parse_listing_prunes_and_caps,
        test_gitea_listing_sorted_client_side,
        test_github_listing_request,
        test_github_enterprise_uses_api_v3,
        test_gitlab_listing_and_group_fallback,
        test_gitea_listing_request,
        test_enumeration_errors,
        test_retry_on_transient_errors,
        test_enumerator_never_exceeds_page_cap,
    ]

    failed = 0
    for test_func in tests:
        try:
            test_func()
        except Exception as e:
            print(f"  ❌ {test_func.__name__} failed: {e}")
            failed += 1

    print("-" * 60)
    print("🎉 All tests passed!" if not failed else f"❌ {failed} test(s) failed")
    return failed == 0


if __name__ == "__main__":
    sys.exit(0 if run_all_tests() else 1)
