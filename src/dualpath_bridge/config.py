from __future__ import annotations

import dataclasses
import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from dualpath_bridge.common import ConfigError, Endpoint, PathSpec, parse_endpoint, resolve_endpoint

ANY_PEER = Endpoint("0.0.0.0", 0)


@dataclass(frozen=True)
class HarnessConfig:
    """Startup configuration for one TCP role. Read-only for the life of the process."""

    listen_addr: Endpoint
    peer_addr: Endpoint = ANY_PEER
    source_addr: str = "0.0.0.0"
    retry_delay: float = 1.0
    cycle_interval: float = 1.0
    buffer_size: int = 1024
    backlog: int = 5
    poll_interval: float = 0.5
    connect_timeout: float = 3.0
    host_name: str = "ABOS"
    language: str = "Python"

    def __post_init__(self) -> None:
        resolve_endpoint(self.listen_addr)
        resolve_endpoint(self.peer_addr)
        resolve_endpoint(Endpoint(self.source_addr, 0))
        for name in ("retry_delay", "cycle_interval", "poll_interval", "connect_timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
                raise ConfigError(f"{name} must be a non-negative number, got {value!r}")
        if self.poll_interval == 0 or self.connect_timeout == 0:
            raise ConfigError("poll_interval and connect_timeout must be greater than zero")
        if isinstance(self.buffer_size, bool) or not isinstance(self.buffer_size, int) or self.buffer_size < 2:
            raise ConfigError(f"buffer_size must be an integer >= 2, got {self.buffer_size!r}")
        if isinstance(self.backlog, bool) or not isinstance(self.backlog, int) or self.backlog < 1:
            raise ConfigError(f"backlog must be a positive integer, got {self.backlog!r}")

    def outbound_path(self) -> PathSpec:
        """The leg on which this process connects out (port 0: kernel picks the source port)."""
        return PathSpec(local_bind=Endpoint(self.source_addr, 0), remote=self.peer_addr)

    def inbound_path(self) -> PathSpec:
        return PathSpec(local_bind=self.listen_addr, remote=ANY_PEER)


@dataclass(frozen=True)
class MulticastConfig:
    group: Endpoint
    interface: str
    buffer_size: int = 1024
    poll_interval: float = 0.5

    def __post_init__(self) -> None:
        resolve_endpoint(self.group)
        resolve_endpoint(Endpoint(self.interface, 0))
        if isinstance(self.buffer_size, bool) or not isinstance(self.buffer_size, int) or self.buffer_size < 1:
            raise ConfigError(f"buffer_size must be a positive integer, got {self.buffer_size!r}")


# Lab topology:
#   ABOS2 192.168.100.2 -> ABOS1 192.168.100.1:8000   (outbound leg)
#   ABOS1 192.168.200.1 -> ABOS2 192.168.200.2:8000   (response leg)
PRESETS: dict[str, HarnessConfig] = {
    "client": HarnessConfig(
        listen_addr=Endpoint("192.168.200.2", 8000),
        peer_addr=Endpoint("192.168.100.1", 8000),
        source_addr="192.168.100.2",
        host_name="ABOS2",
    ),
    "bridge": HarnessConfig(
        listen_addr=Endpoint("192.168.100.1", 8000),
        peer_addr=Endpoint("192.168.200.2", 8000),
        source_addr="192.168.200.1",
        host_name="ABOS1",
    ),
    "receiver": HarnessConfig(
        listen_addr=Endpoint("192.168.100.1", 8000),
        host_name="ABOS1",
    ),
}

MULTICAST_PRESET = MulticastConfig(group=Endpoint("239.64.0.3", 52000), interface="192.168.100.1")

def _whole_number(value: Any) -> int:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if not isinstance(value, int):
        raise ValueError(f"{value!r} is not a whole number")
    return value


# Config file key -> (config field, converter)
_FILE_KEYS: dict[str, tuple[str, Any]] = {
    "listenAddr": ("listen_addr", parse_endpoint),
    "peerAddr": ("peer_addr", parse_endpoint),
    "sourceAddr": ("source_addr", str),
    "retryDelaySeconds": ("retry_delay", float),
    "cycleIntervalSeconds": ("cycle_interval", float),
    "bufferSize": ("buffer_size", _whole_number),
    "hostName": ("host_name", str),
    "language": ("language", str),
    "groupAddr": ("group", parse_endpoint),
    "interfaceAddr": ("interface", str),
}


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read a JSON config file into HarnessConfig/MulticastConfig field overrides."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read config file {str(path)!r}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"config file {str(path)!r} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"config file {str(path)!r} must contain a JSON object")

    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in _FILE_KEYS:
            raise ConfigError(f"unknown config key {key!r} in {str(path)!r}")
        field_name, convert = _FILE_KEYS[key]
        if isinstance(value, bool) or value is None:
            raise ConfigError(f"invalid value for {key!r}: {value!r}")
        try:
            overrides[field_name] = convert(value)
        except ConfigError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid value for {key!r}: {value!r}") from exc
    return overrides


def build_config(role: str, *layers: Mapping[str, Any]) -> HarnessConfig:
    """Start from the role preset and apply override layers in order; ``None`` values are skipped.

    Keys that belong to the multicast role (``group``, ``interface``) are
    ignored so one file can serve every role.
    """
    try:
        config = PRESETS[role]
    except KeyError:
        raise ConfigError(f"unknown role {role!r}") from None
    return dataclasses.replace(config, **_merge(HarnessConfig, layers))


def build_multicast_config(*layers: Mapping[str, Any]) -> MulticastConfig:
    return dataclasses.replace(MULTICAST_PRESET, **_merge(MulticastConfig, layers))


def _merge(cls: type, layers: tuple[Mapping[str, Any], ...]) -> dict[str, Any]:
    names = {f.name for f in dataclasses.fields(cls)}
    merged: dict[str, Any] = {}
    for layer in layers:
        merged.update({k: v for k, v in layer.items() if v is not None and k in names})
    return merged
