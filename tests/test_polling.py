"""Unit tests for core/polling.py -- driven entirely by FakeClock, no real sleeps."""

import pytest

from core.polling import poll_until


class _Timeout(Exception):
    pass


class _Transient(Exception):
    pass


def _sequence(*values):
    """Probe that returns (or raises) each value in turn, repeating the last."""
    items = list(values)

    def check():
        value = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(value, BaseException):
            raise value
        return value

    return check


def _poll(check, clock, **kwargs):
    kwargs.setdefault("interval", 2)
    kwargs.setdefault("timeout", 300)
    return poll_until(
        check,
        timeout_error=_Timeout,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def test_returns_first_non_none_value(clock):
    assert _poll(_sequence(None, None, "done"), clock) == "done"
    assert clock.sleeps == [2, 2]


def test_immediate_success_never_sleeps(clock):
    assert _poll(_sequence(True), clock) is True
    assert clock.sleeps == []


def test_false_is_a_result_not_a_retry(clock):
    assert _poll(_sequence(False), clock) is False


def test_times_out_exactly_at_deadline(clock):
    """A task that never finishes gives up at 300s, not 302s."""
    with pytest.raises(_Timeout, match="300s") as exc_info:
        _poll(_sequence(None), clock)
    assert clock.now == 300
    assert "150 polls" in str(exc_info.value)


def test_last_sleep_is_clamped_to_remaining_time(clock):
    with pytest.raises(_Timeout):
        _poll(_sequence(None), clock, interval=3, timeout=10)
    assert clock.sleeps == [3, 3, 3, 1]
    assert clock.now == 10


def test_transient_error_is_retried_after_retry_delay(clock):
    check = _sequence(_Transient("boom"), None, "ok")
    assert _poll(check, clock, transient=(_Transient,), retry_delay=5) == "ok"
    assert clock.sleeps == [5, 2]


def test_terminal_error_propagates_immediately(clock):
    check = _sequence(None, ValueError("task failed"))
    with pytest.raises(ValueError, match="task failed"):
        _poll(check, clock, transient=(_Transient,))
    assert clock.sleeps == [2]


def test_transient_errors_until_deadline_time_out(clock):
    with pytest.raises(_Timeout):
        _poll(_sequence(_Transient("down")), clock, transient=(_Transient,), timeout=12, retry_delay=5)
    assert clock.now == 12


def test_description_in_timeout_message(clock):
    with pytest.raises(_Timeout, match="container 105 start"):
        _poll(_sequence(None), clock, timeout=6, description="container 105 start")
