import asyncio

import pytest

from letterboxd_crawl.errors import (
    NavigationStatusError,
    NavigationTimeoutError,
    RetriesExhaustedError,
)
from letterboxd_crawl.navigation import RetryPolicy, delay, navigate_till_trigger


class Response:
    def __init__(self, status):
        self.status = status


class Recorder:
    """Fake sleep that records requested durations without waiting."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def step(log, name, pause=0.0, result=None, error=None):
    async def _step():
        log.append(f"{name}:start")
        await asyncio.sleep(pause)
        if error is not None:
            raise error
        log.append(f"{name}:end")
        return result
    return _step


@pytest.mark.asyncio
async def test_returns_transition_result_after_triggers_in_order():
    log = []
    result = await navigate_till_trigger(
        step(log, "nav", result="page"),
        step(log, "t1", pause=0.01),
        step(log, "t2"),
    )

    assert result == "page"
    # Triggers run strictly one after another
    assert log.index("t1:end") < log.index("t2:start")
    assert "nav:end" in log


@pytest.mark.asyncio
async def test_waits_for_slow_trigger():
    log = []
    await navigate_till_trigger(step(log, "nav"), step(log, "slow", pause=0.05))
    assert log[-1] == "slow:end"


@pytest.mark.asyncio
async def test_zero_triggers_is_transition_alone():
    log = []
    assert await navigate_till_trigger(step(log, "nav", result=42)) == 42
    assert log == ["nav:start", "nav:end"]


@pytest.mark.asyncio
async def test_transition_error_cancels_triggers():
    log = []
    with pytest.raises(ValueError, match="boom"):
        await navigate_till_trigger(
            step(log, "nav", error=ValueError("boom")),
            step(log, "never", pause=10),
        )
    assert "never:end" not in log


@pytest.mark.asyncio
async def test_trigger_error_cancels_transition():
    log = []
    with pytest.raises(RuntimeError, match="selector"):
        await navigate_till_trigger(
            step(log, "nav", pause=10),
            step(log, "t1", error=RuntimeError("selector never visible")),
        )
    assert "nav:end" not in log


@pytest.mark.asyncio
async def test_caller_cancellation_propagates_promptly():
    log = []
    started = asyncio.Event()

    async def slow_trigger():
        started.set()
        await asyncio.sleep(10)
        log.append("trigger:end")

    task = asyncio.create_task(navigate_till_trigger(step(log, "nav", pause=10), slow_trigger))
    await started.wait()

    loop = asyncio.get_running_loop()
    begin = loop.time()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert loop.time() - begin < 1.0
    assert "trigger:end" not in log
    assert "nav:end" not in log


@pytest.mark.asyncio
async def test_deadline_raises_navigation_timeout():
    log = []
    with pytest.raises(NavigationTimeoutError):
        await navigate_till_trigger(step(log, "nav"), step(log, "stuck", pause=10), timeout=0.05)


def test_delay_rejects_deviation_above_base():
    with pytest.raises(ValueError):
        delay(0.1, 0.2)


@pytest.mark.asyncio
async def test_delay_sleeps_within_bounds(monkeypatch):
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    monkeypatch.setattr("letterboxd_crawl.navigation.asyncio.sleep", fake_sleep)
    trigger = delay(2.0, 0.3)
    for _ in range(20):
        await trigger()

    assert all(1.7 <= s <= 2.3 for s in slept)


@pytest.mark.asyncio
async def test_retry_returns_first_success():
    sleep = Recorder()
    statuses = iter([200])

    async def transition():
        return Response(next(statuses))

    policy = RetryPolicy(3, sleep=sleep)
    response = await policy.run(transition, "https://letterboxd.com/film/x/")

    assert response.status == 200
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_retry_transient_status_with_increasing_backoff():
    sleep = Recorder()
    attempts = []
    statuses = iter([503, 502, 200])

    async def transition():
        attempts.append(1)
        return Response(next(statuses))

    policy = RetryPolicy(3, base_cooldown=30.0, cooldown_step=10.0, sleep=sleep)
    response = await policy.run(transition, "url")

    assert response.status == 200
    assert len(attempts) == 3
    assert sleep.calls == [40.0, 50.0]


@pytest.mark.asyncio
async def test_retry_503_exhausts_budget():
    sleep = Recorder()
    attempts = []

    async def transition():
        attempts.append(1)
        return Response(503)

    policy = RetryPolicy(4, sleep=sleep)
    with pytest.raises(RetriesExhaustedError) as exc_info:
        await policy.run(transition, "url")

    assert len(attempts) == 4
    assert exc_info.value.last_status == 503
    assert exc_info.value.attempts == 4
    # No sleep after the last attempt, and every wait is longer than the one before
    assert len(sleep.calls) == 3
    assert all(a < b for a, b in zip(sleep.calls, sleep.calls[1:]))


@pytest.mark.asyncio
async def test_retry_404_is_never_retried():
    sleep = Recorder()
    attempts = []

    async def transition():
        attempts.append(1)
        return Response(404)

    with pytest.raises(NavigationStatusError) as exc_info:
        await RetryPolicy(5, sleep=sleep).run(transition, "url")

    assert exc_info.value.status == 404
    assert len(attempts) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_retry_transport_error_propagates():
    sleep = Recorder()

    async def transition():
        raise ConnectionError("reset")

    with pytest.raises(ConnectionError):
        await RetryPolicy(3, sleep=sleep).run(transition, "url")
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_retry_treats_missing_response_as_loaded():
    async def transition():
        return None

    assert await RetryPolicy(2, sleep=Recorder()).run(transition, "url") is None


@pytest.mark.asyncio
async def test_retry_cancelled_during_backoff_stops():
    attempts = []

    async def transition():
        attempts.append(1)
        return Response(500)

    policy = RetryPolicy(5, base_cooldown=10.0, cooldown_step=1.0)
    task = asyncio.create_task(policy.run(transition, "url"))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(attempts) == 1


def test_retry_policy_requires_an_attempt():
    with pytest.raises(ValueError):
        RetryPolicy(0)


@pytest.mark.asyncio
async def test_error_status_skips_triggers():
    log = []
    response = await navigate_till_trigger(
        step(log, "nav", result=Response(503)),
        step(log, "visible", error=RuntimeError("never visible on an error page")),
    )
    assert response.status == 503


@pytest.mark.asyncio
async def test_retried_navigation_reruns_triggers_on_each_page():
    log = []
    statuses = iter([503, 200])
    current = {}

    async def load():
        log.append("nav")
        current["status"] = next(statuses)
        return Response(current["status"])

    async def visible():
        await asyncio.sleep(0)
        log.append(f"visible:{current['status']}")

    async def attempt():
        return await navigate_till_trigger(load, visible, timeout=1.0)

    response = await RetryPolicy(3, sleep=Recorder()).run(attempt, "url")

    assert response.status == 200
    assert log.count("nav") == 2
    # The trigger that certified the navigation ran against the second load
    assert log[-1] == "visible:200"


@pytest.mark.asyncio
async def test_deadline_applies_per_attempt():
    attempts = []

    async def load():
        attempts.append(1)
        return Response(503)

    async def attempt():
        return await navigate_till_trigger(load, timeout=0.05)

    # Backoffs add up to longer than one deadline
    policy = RetryPolicy(3, base_cooldown=0.06, cooldown_step=0.0)
    with pytest.raises(RetriesExhaustedError):
        await policy.run(attempt, "url")
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_stuck_trigger_times_out_one_attempt():
    log = []

    async def attempt():
        return await navigate_till_trigger(
            step(log, "nav", result=Response(200)), step(log, "stuck", pause=10), timeout=0.05,
        )

    with pytest.raises(NavigationTimeoutError):
        await RetryPolicy(3, sleep=Recorder()).run(attempt, "url")
    assert log.count("nav:start") == 1
