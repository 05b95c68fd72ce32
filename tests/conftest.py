from __future__ import annotations

import logging
import socket
import threading

import pytest

from dualpath_bridge.common import StopToken

# Two "segments" on loopback: Linux routes all of 127/8 to lo without setup.
SEGMENT_A_SERVER = "127.0.100.1"
SEGMENT_A_CLIENT = "127.0.100.2"
SEGMENT_B_SERVER = "127.0.200.1"
SEGMENT_B_CLIENT = "127.0.200.2"


def free_port(host: str = "127.0.0.1", kind: int = socket.SOCK_STREAM) -> int:
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@pytest.fixture(autouse=True)
def _reset_harness_logger():
    yield
    logger = logging.getLogger("dualpath_bridge")
    logger.handlers[:] = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def stop():
    token = StopToken()
    yield token
    token.set()


@pytest.fixture
def run_in_thread(stop):
    """Run a callable in a daemon thread; returns (thread, result dict)."""
    threads = []

    def _start(target, *args, **kwargs):
        result = {}

        def _wrapper():
            try:
                result["value"] = target(*args, **kwargs)
            except BaseException as exc:  # surfaced to the test through ``result``
                result["error"] = exc

        thread = threading.Thread(target=_wrapper, daemon=True)
        thread.start()
        threads.append(thread)
        return thread, result

    yield _start
    stop.set()
    for thread in threads:
        thread.join(timeout=5)


@pytest.fixture(scope="session")
def loopback_segments():
    for host in (SEGMENT_A_SERVER, SEGMENT_A_CLIENT, SEGMENT_B_SERVER, SEGMENT_B_CLIENT):
        try:
            free_port(host)
        except OSError:
            pytest.skip(f"cannot bind loopback alias {host}")
    return {
        "a_server": SEGMENT_A_SERVER,
        "a_client": SEGMENT_A_CLIENT,
        "b_server": SEGMENT_B_SERVER,
        "b_client": SEGMENT_B_CLIENT,
    }


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    event = threading.Event()
    waited = 0.0
    while waited < timeout:
        if predicate():
            return True
        event.wait(interval)
        waited += interval
    return predicate()
