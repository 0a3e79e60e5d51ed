"""Tests for cinder.quota: sliding-window admission control."""

from types import MappingProxyType

import pytest

from cinder.models import ModelQuotaConfig, get_model
from cinder.quota import QuotaCheck, QuotaTracker


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _model(
    context=1000,
    requests=(2, 100, 1000),
    tokens=(10_000, 100_000, 1_000_000),
):
    return ModelQuotaConfig(
        name="test-model",
        max_context_tokens=context,
        request_limits=MappingProxyType(dict(zip(("minute", "hour", "day"), requests))),
        token_limits=MappingProxyType(dict(zip(("minute", "hour", "day"), tokens))),
    )


def _tracker(**kwargs):
    clock = FakeClock()
    return QuotaTracker(_model(**kwargs), clock=clock), clock


# ---------------------------------------------------------------------------
# Context limit
# ---------------------------------------------------------------------------


class TestContextLimit:
    def test_equal_to_limit_allowed(self):
        tracker, _ = _tracker(context=1000)
        assert tracker.can_make_request(1000).allowed

    def test_one_over_limit_denied(self):
        tracker, _ = _tracker(context=1000)
        check = tracker.can_make_request(1001)
        assert not check.allowed
        assert check.reason == (
            "Request exceeds model max context length (1000). Estimated: 1001 tokens."
        )

    def test_context_check_runs_before_request_counts(self):
        tracker, _ = _tracker(context=1000, requests=(1, 100, 1000))
        tracker.record_request(1)
        check = tracker.can_make_request(5000)
        assert "max context length" in check.reason


# ---------------------------------------------------------------------------
# Request quotas
# ---------------------------------------------------------------------------


class TestRequestQuota:
    def test_minute_limit(self):
        tracker, _ = _tracker(requests=(2, 100, 1000))
        tracker.record_request(100)
        tracker.record_request(100)
        check = tracker.can_make_request(50)
        assert not check.allowed
        assert "minute" in check.reason
        assert "2/2" in check.reason
        assert check.reason == (
            "Request quota exceeded for minute (2/2 requests). "
            "Please wait before making another request."
        )

    def test_minute_window_expires(self):
        tracker, clock = _tracker(requests=(2, 100, 1000))
        tracker.record_request(1)
        tracker.record_request(1)
        clock.advance(60)
        assert tracker.can_make_request(0).allowed

    def test_hour_limit_after_minute_expires(self):
        tracker, clock = _tracker(requests=(5, 2, 1000))
        tracker.record_request(1)
        tracker.record_request(1)
        clock.advance(61)
        check = tracker.can_make_request(0)
        assert "for hour (2/2 requests)" in check.reason

    def test_day_limit(self):
        tracker, clock = _tracker(requests=(5, 5, 1))
        tracker.record_request(1)
        clock.advance(3601)
        check = tracker.can_make_request(0)
        assert "for day (1/1 requests)" in check.reason
        clock.advance(86400)
        assert tracker.can_make_request(0).allowed


# ---------------------------------------------------------------------------
# Token quotas
# ---------------------------------------------------------------------------


class TestTokenQuota:
    def test_tokens_over_minute_limit(self):
        tracker, _ = _tracker(tokens=(100, 1000, 10_000))
        tracker.record_request(80)
        check = tracker.can_make_request(30)
        assert not check.allowed
        assert check.reason == (
            "Token quota exceeded for minute (80/100 tokens used). "
            "Estimated request: 30 tokens. Please wait or reduce request size."
        )

    def test_tokens_exactly_at_limit_allowed(self):
        tracker, _ = _tracker(tokens=(100, 1000, 10_000))
        tracker.record_request(70)
        assert tracker.can_make_request(30).allowed

    def test_request_check_precedes_token_check(self):
        tracker, _ = _tracker(requests=(1, 100, 1000), tokens=(10, 1000, 10_000))
        tracker.record_request(50)
        assert "Request quota" in tracker.can_make_request(100).reason

    def test_hour_tokens(self):
        tracker, clock = _tracker(tokens=(100, 150, 10_000))
        tracker.record_request(100)
        clock.advance(61)
        check = tracker.can_make_request(60)
        assert "Token quota exceeded for hour (100/150 tokens used)" in check.reason


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


class TestBookkeeping:
    def test_can_make_request_does_not_record(self):
        tracker, _ = _tracker()
        before = tracker.usage()
        tracker.can_make_request(10)
        tracker.can_make_request(10)
        assert tracker.usage() == before

    def test_window_lists_stay_parallel(self):
        tracker, clock = _tracker(requests=(100, 1000, 10_000))
        for i in range(5):
            tracker.record_request(i)
            clock.advance(20)
        tracker.can_make_request(0)
        for window in tracker.windows.values():
            assert len(window.requests) == len(window.tokens)
        assert len(tracker.windows["minute"].requests) == 2
        assert tracker.windows["minute"].tokens == [3, 4]
        assert len(tracker.windows["day"].requests) == 5

    def test_usage(self):
        tracker, _ = _tracker()
        tracker.record_request(10)
        tracker.record_request(5)
        usage = tracker.usage()
        assert usage["requests"] == {"minute": 2, "hour": 2, "day": 2}
        assert usage["tokens"] == {"minute": 15, "hour": 15, "day": 15}
        assert usage["limits"]["requests"]["minute"] == 2

    def test_reset(self):
        tracker, _ = _tracker()
        tracker.record_request(10)
        tracker.reset()
        assert tracker.usage()["requests"] == {"minute": 0, "hour": 0, "day": 0}

    def test_quota_check_truthiness(self):
        assert QuotaCheck(True)
        assert not QuotaCheck(False, "no")


class TestCatalogModel:
    def test_default_model_limits(self):
        tracker = QuotaTracker(get_model("qwen-3-235b-a22b-instruct-2507"))
        assert tracker.can_make_request(64000).allowed
        check = tracker.can_make_request(65537)
        assert "max context length (65536)" in check.reason

    def test_missing_horizon_rejected(self):
        with pytest.raises(ValueError):
            ModelQuotaConfig(
                name="broken",
                max_context_tokens=10,
                request_limits=MappingProxyType({"minute": 1}),
                token_limits=MappingProxyType({"minute": 1, "hour": 1, "day": 1}),
            )
