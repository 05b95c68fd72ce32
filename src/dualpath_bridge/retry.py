from __future__ import annotations

import errno
import logging
import socket
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from dualpath_bridge.common import FatalNetworkError, HarnessError, StopToken

log = logging.getLogger(__name__)

T = TypeVar("T")

# Peer not up yet, route flapping, port still held by a previous run.
TRANSIENT_ERRNOS = frozenset(
    {
        errno.ECONNREFUSED,
        errno.ETIMEDOUT,
        errno.ENETUNREACH,
        errno.EHOSTUNREACH,
        errno.EADDRINUSE,
        errno.EINTR,
        errno.EAGAIN,
    }
)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, socket.timeout):
        return True
    return isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS


def always_transient(exc: BaseException) -> bool:
    # Listeners wait for their address to appear instead of giving up.
    return isinstance(exc, OSError)


@dataclass
class RetryPolicy:
    """Retry forever at a fixed delay on transient errors, give up at once on anything else.

    There is no attempt cap and the delay never grows. The only way out of a
    transient streak is success or the stop token.
    """

    delay: float = 1.0
    stop: StopToken = field(default_factory=StopToken)

    def attempt(
        self,
        operation: Callable[[], T],
        what: str,
        transient: Callable[[BaseException], bool] = is_transient,
    ) -> T:
        """Run ``operation`` until it succeeds.

        ``operation`` owns whatever it creates and must release it before
        raising. ``OSError``s that ``transient`` accepts are logged and
        retried after ``delay``; other ``OSError``s become
        :class:`FatalNetworkError`. Harness errors (config, cancellation)
        pass straight through.
        """
        attempt_no = 0
        while True:
            self.stop.check()
            attempt_no += 1
            try:
                return operation()
            except HarnessError:
                raise
            except OSError as exc:
                if not transient(exc):
                    log.error("%s failed: %s", what, exc)
                    raise FatalNetworkError(f"{what} failed: {exc}") from exc
                log.warning("%s failed: %s (attempt %d, retrying...)", what, exc, attempt_no)
            self.stop.sleep(self.delay)
