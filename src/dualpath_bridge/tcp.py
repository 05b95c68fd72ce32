from __future__ import annotations

import errno
import logging
import socket
from dataclasses import dataclass
from typing import Callable

from dualpath_bridge.common import (
    PathSpec,
    SocketCreationError,
    StopToken,
    resolve_endpoint,
    resolve_path,
)
from dualpath_bridge.display import printable
from dualpath_bridge.retry import RetryPolicy, always_transient

log = logging.getLogger(__name__)

Peer = tuple[str, int]
MessageHandler = Callable[[bytes, Peer], None]


def _stream_socket() -> socket.socket:
    try:
        return socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as exc:
        raise SocketCreationError(f"socket creation failed: {exc}") from exc


@dataclass
class OutboundConnector:
    """Client side of a leg: pin the source address, connect, send one message, close."""

    retry: RetryPolicy
    connect_timeout: float = 3.0

    def _connect(self, local: Peer, remote: Peer) -> socket.socket:
        sock = _stream_socket()
        try:
            # Source-IP pinning: the kernel would otherwise pick the default route's interface.
            sock.bind(local)
            log.info("Attempting to connect to %s:%d from %s", remote[0], remote[1], local[0])
            sock.settimeout(self.connect_timeout)
            sock.connect(remote)
        except BaseException:
            sock.close()
            raise
        return sock

    def send_once(self, path: PathSpec, message: bytes) -> bool:
        """Deliver ``message`` on ``path``.

        Connecting is retried until the peer accepts. A failed send is not
        retried; it is logged and reported as ``False``.
        """
        resolved = resolve_path(path)
        sock = self.retry.attempt(
            lambda: self._connect(resolved.local, resolved.remote),
            f"connect to {path.remote}",
        )
        with sock:
            log.info("Outbound connection established")
            try:
                sock.sendall(message)
            except OSError as exc:
                log.error("Send to %s failed: %s", path.remote, exc)
                return False
            log.info(
                "Message sent via %s: %s",
                path.local_bind.host,
                printable(message),
                extra={"tag": "SEND"},
            )
        log.info("Outbound connection closed")
        return True


@dataclass
class InboundListener:
    """Server side of a leg: one message per accepted connection.

    Blocking calls poll with ``poll_interval`` so the stop token is observed
    while waiting for a peer.
    """

    retry: RetryPolicy
    buffer_size: int = 1024
    backlog: int = 5
    poll_interval: float = 0.5

    @property
    def stop(self) -> StopToken:
        return self.retry.stop

    def open(self, path: PathSpec) -> socket.socket:
        local = resolve_endpoint(path.local_bind)

        def _listen() -> socket.socket:
            sock = _stream_socket()
            try:
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                except OSError as exc:
                    log.warning("Failed to set SO_REUSEADDR: %s", exc)
                sock.bind(local)
                sock.listen(self.backlog)
            except BaseException:
                sock.close()
                raise
            sock.settimeout(self.poll_interval)
            return sock

        server = self.retry.attempt(_listen, f"listen on {path.local_bind}", always_transient)
        log.info("Listening on %s", path.local_bind)
        return server

    def _accept(self, server: socket.socket) -> tuple[socket.socket, Peer]:
        while True:
            self.stop.check()
            try:
                return server.accept()
            except socket.timeout:
                continue

    def read_message(self, conn: socket.socket) -> bytes:
        """Read until the peer closes or ``buffer_size - 1`` bytes have arrived."""
        limit = self.buffer_size - 1
        chunks: list[bytes] = []
        received = 0
        conn.settimeout(self.poll_interval)
        while received < limit:
            self.stop.check()
            try:
                data = conn.recv(limit - received)
            except socket.timeout:
                continue
            if not data:
                break
            chunks.append(data)
            received += len(data)
        return b"".join(chunks)

    def _handle(self, conn: socket.socket, peer: Peer) -> bytes | None:
        log.info("Connection accepted from %s:%d", peer[0], peer[1])
        try:
            data = self.read_message(conn)
        except OSError as exc:
            log.error("Receive from %s:%d failed: %s", peer[0], peer[1], exc)
            return None
        if not data:
            log.info("%s:%d closed the connection without sending", peer[0], peer[1])
            return data
        local = conn.getsockname()
        log.info(
            "Message from %s:%d via %s:%d: %s",
            peer[0],
            peer[1],
            local[0],
            local[1],
            printable(data),
            extra={"tag": "RECV"},
        )
        return data

    def receive_once(self, path: PathSpec) -> bytes | None:
        """Listen, accept a single peer, read its message.

        The listening socket is closed right after the accept. Returns the
        message (``b""`` if the peer sent nothing) or ``None`` if the accept or
        the read failed.
        """
        server = self.open(path)
        try:
            conn, peer = self._accept(server)
        except OSError as exc:
            log.error("Accept failed for inbound connection: %s", exc)
            return None
        finally:
            server.close()
        with conn:
            return self._handle(conn, peer)

    def serve_forever(self, path: PathSpec, on_message: MessageHandler) -> None:
        """Accept connections until stopped, calling ``on_message`` for every non-empty message.

        A bad accept or a failed read never ends the loop. Only the stop token
        (:class:`~dualpath_bridge.common.Cancelled`) or a fatal error raised by
        ``on_message`` gets out.
        """
        server = self.open(path)
        with server:
            while True:
                try:
                    conn, peer = self._accept(server)
                except OSError as exc:
                    if exc.errno not in (errno.EINTR, errno.EAGAIN):
                        log.error("Accept failed: %s", exc)
                        self.stop.sleep(self.retry.delay)
                    continue
                with conn:
                    data = self._handle(conn, peer)
                    if data:
                        on_message(data, peer)
