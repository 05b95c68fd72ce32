from __future__ import annotations

import errno
import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from typing import Callable

from dualpath_bridge.common import (
    Cancelled,
    ConfigError,
    FatalNetworkError,
    SocketCreationError,
    StopToken,
    resolve_endpoint,
)
from dualpath_bridge.config import MulticastConfig
from dualpath_bridge.display import hex_rows, printable

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Datagram:
    number: int
    sender: tuple[str, int]
    payload: bytes


def membership_request(group: str, interface: str) -> bytes:
    """``struct ip_mreq`` for joining ``group`` on the interface that owns ``interface``."""
    return struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton(interface))


def report_datagram(datagram: Datagram) -> None:
    host, port = datagram.sender
    log.info("======================================== [#%d]", datagram.number, extra={"tag": "RECV"})
    log.info("From: %s:%d", host, port, extra={"tag": "RECV"})
    log.info("Size: %d bytes", len(datagram.payload), extra={"tag": "RECV"})
    for row in hex_rows(datagram.payload):
        log.info("%s", row, extra={"tag": "HEX"})
    log.info("%s", printable(datagram.payload), extra={"tag": "ASCII"})


class MulticastReceiver:
    """Join a group on one interface and report every datagram until stopped.

    Datagrams longer than ``buffer_size`` are truncated by the kernel and
    reported at the truncated length.
    """

    def __init__(self, config: MulticastConfig, stop: StopToken | None = None) -> None:
        group_host, self.port = resolve_endpoint(config.group)
        if not ipaddress.IPv4Address(group_host).is_multicast:
            raise ConfigError(f"{group_host} is not a multicast group address")
        self.group = group_host
        self.interface = config.interface
        self.buffer_size = config.buffer_size
        self.poll_interval = config.poll_interval
        self.stop = stop or StopToken()
        self.received = 0

    def open(self) -> socket.socket:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            raise SocketCreationError(f"failed to create UDP socket: {exc}") from exc
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("0.0.0.0", self.port))
            log.info("UDP socket bound to 0.0.0.0:%d", self.port)
            sock.setsockopt(
                socket.IPPROTO_IP,
                socket.IP_ADD_MEMBERSHIP,
                membership_request(self.group, self.interface),
            )
        except OSError as exc:
            sock.close()
            raise FatalNetworkError(f"multicast setup for {self.group}:{self.port} failed: {exc}") from exc
        log.info("Joined multicast group %s using interface %s", self.group, self.interface)
        sock.settimeout(self.poll_interval)
        return sock

    def leave(self, sock: socket.socket) -> None:
        try:
            sock.setsockopt(
                socket.IPPROTO_IP,
                socket.IP_DROP_MEMBERSHIP,
                membership_request(self.group, self.interface),
            )
        except OSError as exc:
            log.warning("Failed to leave multicast group %s: %s", self.group, exc)

    def run(self, on_datagram: Callable[[Datagram], None] | None = None) -> int:
        """Receive until stopped. Returns the number of datagrams reported."""
        sock = self.open()
        log.info("Ready to receive packets on %s:%d", self.group, self.port)
        try:
            while True:
                self.stop.check()
                try:
                    payload, sender = sock.recvfrom(self.buffer_size)
                except socket.timeout:
                    continue
                except OSError as exc:
                    if exc.errno != errno.EINTR:
                        log.error("recvfrom failed: %s", exc)
                    continue
                self.received += 1
                datagram = Datagram(self.received, sender, payload)
                report_datagram(datagram)
                if on_datagram is not None:
                    on_datagram(datagram)
        except Cancelled:
            log.info("Multicast receiver stopped after %d packet(s)", self.received)
        finally:
            self.leave(sock)
            sock.close()
        return self.received
