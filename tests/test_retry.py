import errno
import socket

import pytest

from dualpath_bridge.common import Cancelled, ConfigError, FatalNetworkError, StopToken
from dualpath_bridge.retry import RetryPolicy, always_transient, is_transient


class Flaky:
    """Fails with ``errors`` in order, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.parametrize(
    "code",
    [errno.ECONNREFUSED, errno.ETIMEDOUT, errno.ENETUNREACH, errno.EADDRINUSE, errno.EINTR],
)
def test_transient_errnos(code):
    assert is_transient(OSError(code, "x"))


def test_timeout_is_transient_and_other_errors_are_not():
    assert is_transient(socket.timeout("timed out"))
    assert not is_transient(OSError(errno.EADDRNOTAVAIL, "x"))
    assert not is_transient(OSError(errno.EMFILE, "x"))
    assert not is_transient(ValueError("x"))


def test_retries_transient_failures_until_success():
    op = Flaky([OSError(errno.ECONNREFUSED, "refused")] * 5 + [OSError(errno.ENETUNREACH, "unreachable")])
    policy = RetryPolicy(delay=0)
    assert policy.attempt(op, "connect") == "ok"
    assert op.calls == 7


def test_fatal_failure_surfaces_without_retry():
    op = Flaky([OSError(errno.EADDRNOTAVAIL, "cannot assign")])
    with pytest.raises(FatalNetworkError) as excinfo:
        RetryPolicy(delay=0).attempt(op, "bind")
    assert op.calls == 1
    assert excinfo.value.__cause__.errno == errno.EADDRNOTAVAIL


def test_config_error_is_never_retried():
    op = Flaky([ConfigError("bad address")])
    with pytest.raises(ConfigError):
        RetryPolicy(delay=0).attempt(op, "connect")
    assert op.calls == 1


def test_delay_is_constant(monkeypatch):
    waits = []
    token = StopToken()
    monkeypatch.setattr(token, "sleep", waits.append)
    op = Flaky([OSError(errno.ECONNREFUSED, "refused")] * 4)
    RetryPolicy(delay=1.5, stop=token).attempt(op, "connect")
    assert waits == [1.5] * 4


def test_stop_token_ends_the_retry_loop():
    token = StopToken()

    def refuse_then_stop():
        token.set()
        raise OSError(errno.ECONNREFUSED, "refused")

    with pytest.raises(Cancelled):
        RetryPolicy(delay=30, stop=token).attempt(refuse_then_stop, "connect")


def test_already_stopped_policy_does_not_run_operation():
    token = StopToken()
    token.set()
    op = Flaky([])
    with pytest.raises(Cancelled):
        RetryPolicy(delay=0, stop=token).attempt(op, "connect")
    assert op.calls == 0


def test_classifier_can_widen_what_is_retried():
    op = Flaky([OSError(errno.EADDRNOTAVAIL, "cannot assign"), OSError(errno.EACCES, "denied")])
    assert RetryPolicy(delay=0).attempt(op, "listen", always_transient) == "ok"
    assert op.calls == 3


def test_widened_classifier_still_passes_harness_errors_through():
    op = Flaky([ConfigError("bad address")])
    with pytest.raises(ConfigError):
        RetryPolicy(delay=0).attempt(op, "listen", always_transient)
    assert op.calls == 1
