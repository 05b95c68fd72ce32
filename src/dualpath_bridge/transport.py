from __future__ import annotations

from typing import Protocol

from dualpath_bridge.common import PathSpec, StopToken
from dualpath_bridge.config import HarnessConfig
from dualpath_bridge.retry import RetryPolicy
from dualpath_bridge.tcp import InboundListener, MessageHandler, OutboundConnector


class MessageTransport(Protocol):
    """How one message travels on one leg.

    The cycles only talk to this, so a framed or persistent transport can be
    dropped in as long as the peer speaks it too.
    """

    def send(self, path: PathSpec, message: bytes) -> bool: ...

    def receive(self, path: PathSpec) -> bytes | None: ...

    def serve(self, path: PathSpec, on_message: MessageHandler) -> None: ...


class OneShotTcpTransport:
    """One TCP connection per message; the message ends when the sender closes."""

    def __init__(self, connector: OutboundConnector, listener: InboundListener) -> None:
        self.connector = connector
        self.listener = listener

    @classmethod
    def from_config(cls, config: HarnessConfig, stop: StopToken) -> OneShotTcpTransport:
        retry = RetryPolicy(delay=config.retry_delay, stop=stop)
        return cls(
            OutboundConnector(retry, connect_timeout=config.connect_timeout),
            InboundListener(
                retry,
                buffer_size=config.buffer_size,
                backlog=config.backlog,
                poll_interval=config.poll_interval,
            ),
        )

    def send(self, path: PathSpec, message: bytes) -> bool:
        return self.connector.send_once(path, message)

    def receive(self, path: PathSpec) -> bytes | None:
        return self.listener.receive_once(path)

    def serve(self, path: PathSpec, on_message: MessageHandler) -> None:
        self.listener.serve_forever(path, on_message)
