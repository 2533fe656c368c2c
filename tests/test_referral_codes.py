"""
tests/test_referral_codes.py — Code Generation & Referral State Machine
=========================================================================
Pure tests for nuvia.engine.codes and nuvia.engine.referral.
"""

from __future__ import annotations

import itertools
import re

import pytest

from nuvia.engine.codes import generate_code, generate_unique_code
from nuvia.engine.referral import Criteria, can_transition, evaluate_criteria
from nuvia.errors import CodeGenerationError

CODE_RE = re.compile(r"^NUV-[A-Z0-9]{6}$")


class TestGenerateCode:
    def test_format(self):
        for _ in range(20):
            assert CODE_RE.match(generate_code())

    def test_retries_until_free(self):
        seen = []

        def taken(code):
            seen.append(code)
            return len(seen) < 3

        letters = itertools.cycle("ABC")
        code = generate_unique_code(taken, choice=lambda alphabet: next(letters))
        assert len(seen) == 3
        assert code == seen[-1]

    def test_exhausted_budget_raises(self):
        calls = []

        def always_taken(code):
            calls.append(code)
            return True

        with pytest.raises(CodeGenerationError):
            generate_unique_code(always_taken, max_attempts=4)
        assert len(calls) == 4


class _Queries:
    """Scripted ReferralQueries that counts how often each is asked."""

    def __init__(self, logged_in=False, onchain=False, xp=0):
        self.logged_in = logged_in
        self.onchain = onchain
        self.xp = xp
        self.asked: list[str] = []

    def has_logged_in(self, user_id):
        self.asked.append("login")
        return self.logged_in

    def has_onchain_action(self, user_id):
        self.asked.append("onchain")
        return self.onchain

    def current_xp(self, user_id):
        self.asked.append("xp")
        return self.xp


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            ("pending", "verified", True),
            ("pending", "rejected", True),
            ("pending", "rewarded", False),
            ("verified", "rewarded", True),
            ("verified", "rejected", True),
            ("verified", "pending", False),
            ("rewarded", "rejected", False),
            ("rejected", "verified", False),
        ],
    )
    def test_can_transition(self, current, target, allowed):
        assert can_transition(current, target) is allowed


class TestEvaluateCriteria:
    def test_all_met(self):
        result = evaluate_criteria(Criteria(), 7, 100, _Queries(True, True, 100))
        assert result.all_met

    def test_threshold_not_reached(self):
        result = evaluate_criteria(Criteria(), 7, 100, _Queries(True, True, 99))
        assert not result.all_met
        assert result.first_login and result.first_onchain_action
        assert not result.min_xp_reached

    def test_flags_are_sticky(self):
        previous = Criteria(first_login=True, first_onchain_action=True, min_xp_reached=True)
        queries = _Queries(False, False, 0)
        result = evaluate_criteria(previous, 7, 100, queries)
        assert result.all_met
        assert queries.asked == []
