from threading import Event

import pytest

from cdr.errors import TransientError, backoff_delay, retry_call
from cdr.runtime import QueueFull, RuntimeState, WorkQueue


def test_duplicate_keys_are_queued_once():
    q = WorkQueue()
    assert q.put("Deployment/default/web") is True
    assert q.put("Deployment/default/web") is False
    assert len(q) == 1
    assert q.get_batch(timeout=0) == ["Deployment/default/web"]


def test_in_flight_key_gets_one_follow_up():
    q = WorkQueue()
    q.put("a")
    batch = q.get_batch(timeout=0)
    assert q.in_flight() == {"a"}

    # Events arriving while "a" is reconciled collapse into one follow-up.
    assert q.put("a") is False
    assert q.put("a") is False
    assert len(q) == 0

    q.done(batch)
    assert q.in_flight() == set()
    assert q.get_batch(timeout=0) == ["a"]
    q.done(["a"])
    assert q.get_batch(timeout=0) == []


def test_queue_is_bounded():
    q = WorkQueue(maxsize=2)
    q.put("a")
    q.put("b")
    with pytest.raises(QueueFull):
        q.put("c")


def test_closed_queue_releases_waiters():
    q = WorkQueue()
    q.close()
    assert q.get_batch(timeout=5) == []
    assert q.put("a") is False
    assert q.closed


def test_runtime_state_snapshot():
    rt = RuntimeState()
    rt.set_state("running")
    rt.mark_event()
    rt.record_cycle({"timestamp": "2024-01-01T00:00:00Z", "drift_count": 0})
    snap = rt.snapshot()
    assert snap["state"] == "running"
    assert snap["events"] == 1
    assert snap["cycles"] == 1
    assert rt.last_report()["drift_count"] == 0

    rt.halt("token revoked")
    assert rt.snapshot()["state"] == "halted"
    assert rt.snapshot()["fatal"] == "token revoked"


def test_retry_call_retries_transient_only():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientError("blip")
        return "ok"

    assert retry_call(flaky, attempts=3, base_delay_s=0) == "ok"
    assert len(calls) == 3

    def broken():
        raise ValueError("no")

    with pytest.raises(ValueError):
        retry_call(broken, attempts=3, base_delay_s=0)


def test_retry_call_raises_last_transient_error():
    calls = []

    def down():
        calls.append(1)
        raise TransientError(f"attempt {len(calls)}")

    with pytest.raises(TransientError, match="attempt 3"):
        retry_call(down, attempts=3, base_delay_s=0)
    assert len(calls) == 3

    calls.clear()
    with pytest.raises(TransientError, match="attempt 1"):
        retry_call(down, attempts=0, base_delay_s=0)


def test_retry_call_stops_waiting_when_asked():
    calls = []
    stop = Event()
    stop.set()

    def down():
        calls.append(1)
        raise TransientError("blip")

    with pytest.raises(TransientError):
        retry_call(down, attempts=5, base_delay_s=10, stop=stop)
    assert len(calls) == 1


def test_backoff_is_capped():
    assert backoff_delay(0, 1, 30) == 1
    assert backoff_delay(3, 1, 30) == 8
    assert backoff_delay(10, 1, 30) == 30
