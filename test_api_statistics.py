#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for API statistics tracking.

This script tests the APIStatistics class to ensure proper tracking and reporting
of GitHub, GitLab and Gitea API calls, host probes and metadata clones.
"""

import sys
import os

# Add parent directory to path to import sleep_schedule
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sleep_schedule import APIStatistics


def test_api_statistics():
    """Test API statistics tracking."""
    print("🧪 Testing API Statistics Tracker\n")

    stats = APIStatistics()

    # Test 1: Initial state
    print("Test 1: Initial state")
    assert stats.get_total_calls("github") == 0
    assert stats.get_total_errors("github") == 0
    assert not stats.has_errors()
    print("✅ Initial state is correct\n")

    # Test 2: Record GitHub success
    print("Test 2: Recording GitHub successes")
    stats.record_success("github")
    stats.record_success("github")
    stats.record_success("github")
    assert stats.get_total_calls("github") == 3
    assert stats.stats["github"]["success"] == 3
    assert stats.get_total_errors("github") == 0
    print("✅ GitHub successes recorded correctly\n")

    # Test 3: Record GitHub errors
    print("Test 3: Recording GitHub errors")
    stats.record_error("github", 403)
    stats.record_error("github", 429)
    stats.record_error("github", 429)
    assert stats.get_total_errors("github") == 3
    assert stats.stats["github"]["errors"][403] == 1
    assert stats.stats["github"]["errors"][429] == 2
    assert stats.get_total_calls("github") == 6  # 3 success + 3 errors
    print("✅ GitHub errors recorded correctly\n")

    # Test 4: Record GitLab and Gitea operations
    print("Test 4: Recording GitLab and Gitea operations")
    stats.record_success("gitlab")
    stats.record_error("gitlab", 404)
    stats.record_success("gitea")
    stats.record_exception("gitea", "ConnectTimeout")
    assert stats.get_total_calls("gitlab") == 2
    assert stats.stats["gitlab"]["errors"][404] == 1
    assert stats.get_total_calls("gitea") == 2
    assert stats.stats["gitea"]["errors"]["ConnectTimeout"] == 1
    print("✅ GitLab and Gitea operations recorded correctly\n")

    # Test 5: Unknown API types are ignored
    print("Test 5: Ignoring unknown API types")
    stats.record_success("bitbucket")
    assert stats.get_total_calls("bitbucket") == 0
    print("✅ Unknown API types ignored\n")

    # Test 6: Probes and clones
    print("Test 6: Recording probes and clones")
    stats.record_probe(False)
    stats.record_probe(True)
    stats.record_clone(True)
    stats.record_clone(False)
    assert stats.stats["probes"] == {"attempted": 2, "matched": 1}
    assert stats.stats["clones"] == {"success": 1, "failed": 1}
    print("✅ Probes and clones recorded correctly\n")

    # Test 7: has_errors detection
    print("Test 7: Testing error detection")
    assert stats.has_errors()
    stats_clean = APIStatistics()
    stats_clean.record_success("github")
    stats_clean.record_clone(True)
    assert not stats_clean.has_errors()
    stats_clone_failure = APIStatistics()
    stats_clone_failure.record_clone(False)
    assert stats_clone_failure.has_errors()
    print("✅ Error detection working correctly\n")

    # Test 8: Console output formatting
    print("Test 8: Testing console output formatting")
    output = stats.format_console_output()
    assert "Github API Statistics" in output
    assert "Successful calls: 3" in output
    assert "Failed calls: 3" in output
    assert "Error 403: 1" in output
    assert "Error 429: 2" in output
    assert "Gitlab API Statistics" in output
    assert "Gitea API Statistics" in output
    assert "Host Probes" in output
    assert "Metadata Clones" in output
    print("✅ Console output formatted correctly\n")

    # Test 9: Empty statistics
    print("Test 9: Testing empty statistics")
    assert APIStatistics().format_console_output() == ""
    print("✅ Empty statistics handled correctly\n")

    print("=" * 60)
    print("Sample Console Output:")
    print("=" * 60)
    print(stats.format_console_output())
    print("=" * 60)

    print("\n🎉 All tests passed!")


if __name__ == "__main__":
    try:
        test_api_statistics()
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        sys.exit(1)
