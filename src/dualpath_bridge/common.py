from __future__ import annotations

import ipaddress
import threading
from dataclasses import dataclass


class HarnessError(Exception):
    """Base class for every error raised by the harness."""


class ConfigError(HarnessError, ValueError):
    """A literal address, port or option could not be used."""


class FatalNetworkError(HarnessError):
    """A socket error that retrying cannot fix."""


class SocketCreationError(FatalNetworkError):
    """The OS refused to hand out a socket at all."""


class Cancelled(HarnessError):
    """The stop token was set while waiting on the network."""


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class PathSpec:
    """One directional leg: where we bind locally and who is on the other end."""

    local_bind: Endpoint
    remote: Endpoint


@dataclass(frozen=True)
class ResolvedPath:
    local: tuple[str, int]
    remote: tuple[str, int]


def _check_ipv4(host: str) -> str:
    try:
        return str(ipaddress.IPv4Address(host))
    except (ipaddress.AddressValueError, ValueError) as exc:
        raise ConfigError(f"invalid IPv4 address: {host!r}") from exc


def _check_port(port: int) -> int:
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 0xFFFF:
        raise ConfigError(f"invalid port: {port!r}")
    return port


def resolve_endpoint(endpoint: Endpoint) -> tuple[str, int]:
    return _check_ipv4(endpoint.host), _check_port(endpoint.port)


def resolve_path(path: PathSpec) -> ResolvedPath:
    """Turn a PathSpec into socket addresses, validating both literals."""
    return ResolvedPath(local=resolve_endpoint(path.local_bind), remote=resolve_endpoint(path.remote))


def parse_endpoint(text: str, default_port: int | None = None) -> Endpoint:
    """Parse ``host:port`` (or a bare host when ``default_port`` is given)."""
    host, sep, port_text = text.strip().rpartition(":")
    if not sep:
        if default_port is None:
            raise ConfigError(f"missing port in address: {text!r}")
        host, port = text.strip(), default_port
    else:
        try:
            port = int(port_text)
        except ValueError as exc:
            raise ConfigError(f"invalid port in address: {text!r}") from exc
    endpoint = Endpoint(host, port)
    resolve_endpoint(endpoint)
    return endpoint


class StopToken:
    """Cooperative cancellation shared by every blocking loop in a process."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled("stop requested")

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless stopped first, in which case raise Cancelled."""
        if self._event.wait(seconds):
            raise Cancelled("stop requested")
