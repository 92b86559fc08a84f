"""
Tests for core/sync_planner.py
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../../src")))

from core import sync_planner
from utils.archive_errors import ProtocolError


class TestParseSearchResponse:
    def test_parses_space_separated_uids(self):
        assert sync_planner.parse_search_response([b"3 1 2"]) == [1, 2, 3]

    def test_empty_mailbox(self):
        assert sync_planner.parse_search_response([b""]) == []
        assert sync_planner.parse_search_response([None]) == []
        assert sync_planner.parse_search_response([]) == []

    def test_duplicates_collapse(self):
        assert sync_planner.parse_search_response([b"5 5 6", b"6"]) == [5, 6]

    @pytest.mark.parametrize("data", [[b"1 two 3"], [b"0"], [b"-4"]])
    def test_invalid_tokens_raise(self, data):
        with pytest.raises(ProtocolError):
            sync_planner.parse_search_response(data)


class TestPlanSync:
    def test_pending_is_remote_minus_local(self):
        assert sync_planner.plan_sync([1, 2, 3, 4], {2, 4}) == [1, 3]

    def test_local_only_uids_are_ignored(self):
        # Messages deleted on the server stay archived and are not re-planned.
        assert sync_planner.plan_sync([1, 2], {1, 2, 99}) == []

    def test_result_is_sorted_and_unique(self):
        assert sync_planner.plan_sync([9, 3, 3, 7], set()) == [3, 7, 9]

    def test_empty_remote(self):
        assert sync_planner.plan_sync([], {1}) == []


class TestBuildPlan:
    def test_counts(self):
        plan = sync_planner.build_plan([3, 1, 2], {1, 50})
        assert plan.remote == [1, 2, 3]
        assert plan.local_count == 2
        assert plan.pending == [2, 3]
        assert plan.skipped == 1
        assert not plan.up_to_date

    def test_up_to_date(self):
        plan = sync_planner.build_plan([1, 2, 3], {1, 2, 3})
        assert plan.up_to_date
        assert plan.skipped == 3
