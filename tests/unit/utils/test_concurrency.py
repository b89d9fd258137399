"""
Unit tests for the keyed mutex and single-flight guards.
"""

from __future__ import annotations

import threading
import time

import pytest

from villa_ledger.utils.concurrency import KeyedMutex, SingleFlight


@pytest.mark.unit
def test_keyed_mutex_serializes_same_key() -> None:
    """Test that two holders of the same key never overlap."""
    mutex = KeyedMutex()
    inside = 0
    overlaps = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal inside, overlaps
        with mutex.hold("pms:291"):
            with guard:
                inside += 1
                if inside > 1:
                    overlaps += 1
            time.sleep(0.01)
            with guard:
                inside -= 1

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == 0
    assert mutex.active_keys() == 0


@pytest.mark.unit
def test_keyed_mutex_does_not_block_other_keys() -> None:
    """Test that holding one key leaves other keys free."""
    mutex = KeyedMutex()
    acquired = threading.Event()

    def other() -> None:
        with mutex.hold("pms:2"):
            acquired.set()

    with mutex.hold("pms:1"):
        thread = threading.Thread(target=other)
        thread.start()
        assert acquired.wait(timeout=2)
        thread.join()


@pytest.mark.unit
def test_keyed_mutex_releases_on_error() -> None:
    """Test that an exception inside the block releases the key."""
    mutex = KeyedMutex()

    with pytest.raises(RuntimeError):
        with mutex.hold("pms:1"):
            raise RuntimeError("boom")

    assert mutex.active_keys() == 0
    with mutex.hold("pms:1"):
        pass


@pytest.mark.unit
def test_single_flight_coalesces_concurrent_calls() -> None:
    """Test that callers arriving during a run share its result."""
    flight: SingleFlight[int] = SingleFlight()
    started = threading.Event()
    release = threading.Event()
    calls = 0
    results: list[tuple[int, bool]] = []

    def slow() -> int:
        nonlocal calls
        calls += 1
        started.set()
        release.wait(timeout=2)
        return 42

    leader = threading.Thread(target=lambda: results.append(flight.do("rates", slow)))
    leader.start()
    assert started.wait(timeout=2)
    assert flight.in_flight("rates")

    follower = threading.Thread(target=lambda: results.append(flight.do("rates", slow)))
    follower.start()
    # Give the follower time to attach to the running call
    time.sleep(0.05)
    release.set()
    leader.join()
    follower.join()

    assert calls == 1
    assert sorted(results) == [(42, False), (42, True)]
    assert not flight.in_flight("rates")


@pytest.mark.unit
def test_single_flight_runs_again_after_completion() -> None:
    """Test that sequential calls each execute."""
    flight: SingleFlight[int] = SingleFlight()
    counter = iter(range(10))

    assert flight.do("k", lambda: next(counter)) == (0, False)
    assert flight.do("k", lambda: next(counter)) == (1, False)


@pytest.mark.unit
def test_single_flight_propagates_errors() -> None:
    """Test that the leader's exception reaches the caller and clears the key."""
    flight: SingleFlight[int] = SingleFlight()

    def fail() -> int:
        raise ValueError("provider down")

    with pytest.raises(ValueError):
        flight.do("rates", fail)

    assert not flight.in_flight("rates")
