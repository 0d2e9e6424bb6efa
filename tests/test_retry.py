"""Tests for the retry policy."""

import pytest

from gamelab.errors import AiError, MalformedAiResponse, NoApiKeyAvailable
from gamelab.retry import MALFORMED_OUTPUT_RETRY, TRANSLATION_RETRY, RetryPolicy


class Flaky:
    """Fails with the queued errors, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# ── construction ──────────────────────────────────────────────


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": 0},
    {"initial_backoff": -1},
    {"backoff_multiplier": 0.5},
    {"jitter": -0.1},
    {"jitter": 1.5},
    {"initial_backoff": 10.0, "max_backoff": 5.0},
])
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


# ── should_retry / backoff ────────────────────────────────────


def test_malformed_output_retried_once():
    err = MalformedAiResponse("not json")
    assert MALFORMED_OUTPUT_RETRY.should_retry(err, 1)
    assert not MALFORMED_OUTPUT_RETRY.should_retry(err, 2)


def test_generic_error_not_retried_by_default():
    assert not MALFORMED_OUTPUT_RETRY.should_retry(AiError("connection reset"), 1)
    assert not MALFORMED_OUTPUT_RETRY.should_retry(AiError("invalid_api_key"), 1)


def test_translation_policy_retries_generic_errors():
    assert TRANSLATION_RETRY.should_retry(AiError("connection reset"), 1)
    assert TRANSLATION_RETRY.should_retry(AiError("connection reset"), 2)
    assert not TRANSLATION_RETRY.should_retry(AiError("connection reset"), 3)
    assert not TRANSLATION_RETRY.should_retry(NoApiKeyAvailable("none"), 1)


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(initial_backoff=1.0, backoff_multiplier=2.0, max_backoff=5.0)
    assert [policy.delay_after(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_backoff_jitter_stays_in_range():
    policy = RetryPolicy(initial_backoff=10.0, jitter=0.1)
    assert policy.delay_after(1, roll=lambda: 0.0) == pytest.approx(9.0)
    assert policy.delay_after(1, roll=lambda: 1.0) == pytest.approx(11.0)


def test_backoff_attempt_must_be_positive():
    with pytest.raises(ValueError):
        RetryPolicy().delay_after(0)


# ── run ───────────────────────────────────────────────────────


async def test_run_returns_first_success():
    op = Flaky()
    assert await MALFORMED_OUTPUT_RETRY.run(op) == "ok"
    assert op.calls == 1


async def test_run_retries_malformed_then_succeeds():
    op = Flaky(MalformedAiResponse("bad"))
    assert await MALFORMED_OUTPUT_RETRY.run(op) == "ok"
    assert op.calls == 2


async def test_run_gives_up_and_reraises_last_error():
    second = MalformedAiResponse("still bad")
    op = Flaky(MalformedAiResponse("bad"), second)
    with pytest.raises(MalformedAiResponse) as exc_info:
        await MALFORMED_OUTPUT_RETRY.run(op)
    assert exc_info.value is second
    assert op.calls == 2


async def test_run_does_not_retry_other_errors():
    op = Flaky(AiError("invalid_api_key"))
    with pytest.raises(AiError):
        await MALFORMED_OUTPUT_RETRY.run(op)
    assert op.calls == 1


async def test_run_sleeps_between_attempts():
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    policy = RetryPolicy(max_attempts=3, retry_on=TRANSLATION_RETRY.retry_on,
                         initial_backoff=1.0, backoff_multiplier=3.0)
    op = Flaky(AiError("timeout"), AiError("timeout"))
    assert await policy.run(op, sleep=fake_sleep) == "ok"
    assert slept == [1.0, 3.0]
