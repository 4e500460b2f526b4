"""
Tests for the periodic task scheduler.
"""
import threading
import time

import pytest

from runner.scheduler import PeriodicTask


def test_run_once_counts_success_and_failure():
    calls = []

    def work(stop_event):
        calls.append(stop_event)
        if len(calls) == 2:
            raise RuntimeError("boom")

    task = PeriodicTask("unit", work, interval_seconds=60)
    assert task.run_once() is True
    assert task.run_once() is False
    assert task.runs == 2
    assert task.failures == 1
    assert calls[0] is task.stop_event


def test_invalid_interval():
    with pytest.raises(ValueError):
        PeriodicTask("bad", lambda e: None, interval_seconds=0)


def test_jitter_is_capped():
    task = PeriodicTask("jitter", lambda e: None, interval_seconds=10, jitter_pct=90)
    assert task.jitter_pct == 20.0
    assert 8.0 <= task._next_sleep(2.0) <= 10.0


def test_failure_does_not_stop_schedule():
    ran = threading.Event()
    attempts = []

    def flaky(stop_event):
        attempts.append(1)
        if len(attempts) >= 3:
            ran.set()
        raise ValueError("upstream down")

    task = PeriodicTask("flaky", flaky, interval_seconds=0.01)
    task.start()
    assert ran.wait(5)
    task.stop(timeout=5)

    assert not task.is_running()
    assert task.failures >= 3


def test_stop_interrupts_wait():
    task = PeriodicTask("slow", lambda e: None, interval_seconds=3600)
    task.start()
    started = time.monotonic()
    task.stop(timeout=5)
    assert not task.is_running()
    assert time.monotonic() - started < 5


def test_stop_event_reaches_running_job():
    inside = threading.Event()
    saw_stop = threading.Event()

    def long_job(stop_event):
        inside.set()
        if stop_event.wait(5):
            saw_stop.set()

    task = PeriodicTask("long", long_job, interval_seconds=60)
    task.start()
    assert inside.wait(5)
    task.stop(timeout=5)
    assert saw_stop.is_set()
