from __future__ import annotations

import pytest
from conftest import FakeClock, client_error

from skyfleet.retry import any_of, not_unrecoverable, on_error_code, on_not_found, retry_until

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def _flaky(*errors):
    """A call that raises each of ``errors`` in turn, then returns "ok"."""
    remaining = list(errors)
    attempts = []

    def call():
        attempts.append(1)
        if remaining:
            raise remaining.pop(0)
        return "ok"

    call.attempts = attempts
    return call


class TestRetryUntil:
    def test_retries_matching_errors(self):
        clock = FakeClock()
        call = _flaky(client_error("InvalidInstanceID.NotFound"), client_error("InvalidInstanceID.NotFound"))

        result = retry_until(call, clock=clock, deadline=clock.now() + 60, interval=5, on=on_not_found)

        assert result == "ok"
        assert len(call.attempts) == 3
        assert clock.sleeps == [(5, True), (5, True)]

    def test_other_errors_raise_immediately(self):
        clock = FakeClock()
        call = _flaky(client_error("AuthFailure"))

        with pytest.raises(Exception) as exc_info:
            retry_until(call, clock=clock, deadline=clock.now() + 60, interval=5, on=on_not_found)

        assert exc_info.value.response["Error"]["Code"] == "AuthFailure"
        assert clock.sleeps == []

    def test_deadline_reraises_last_error(self):
        clock = FakeClock()
        call = _flaky(*[client_error("Throttling") for _ in range(100)])

        with pytest.raises(Exception) as exc_info:
            retry_until(call, clock=clock, deadline=clock.now() + 20, interval=5, on=not_unrecoverable)

        assert exc_info.value.response["Error"]["Code"] == "Throttling"
        assert len(call.attempts) == 5

    def test_past_deadline_still_tries_once(self):
        clock = FakeClock()
        call = _flaky()

        assert retry_until(call, clock=clock, deadline=clock.now() - 1, interval=5, on=on_not_found) == "ok"

    def test_non_cancellable_sleeps(self):
        clock = FakeClock(cancel_after=1)
        call = _flaky(client_error("Throttling"))

        retry_until(call, clock=clock, deadline=clock.now() + 60, interval=1, on=not_unrecoverable, cancellable=False)

        assert clock.sleeps == [(1, False)]


class TestPredicates:
    def test_on_error_code(self):
        predicate = on_error_code("InvalidLaunchTemplateName.NotFoundException")
        assert predicate(client_error("InvalidLaunchTemplateName.NotFoundException"))
        assert not predicate(client_error("ValidationError"))
        assert not predicate(RuntimeError())

    def test_any_of(self):
        predicate = any_of(not_unrecoverable, on_error_code("ValidationError"))
        assert predicate(client_error("Throttling"))
        assert predicate(client_error("ValidationError"))
        assert not predicate(client_error("AuthFailure"))
