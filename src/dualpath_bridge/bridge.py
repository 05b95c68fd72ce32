from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable

from dualpath_bridge.common import Cancelled, FatalNetworkError, PathSpec, SocketCreationError, StopToken
from dualpath_bridge.display import printable
from dualpath_bridge.tcp import Peer
from dualpath_bridge.transport import MessageTransport

log = logging.getLogger(__name__)


class CycleState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    WAITING_FOR_RESPONSE = "waiting_for_response"
    LISTENING = "listening"


def generate_message(host_name: str, language: str) -> bytes:
    return f"Hello from {host_name} written by {language}".encode("utf-8")


def generate_response(host_name: str, language: str, via: str, received: bytes, limit: int) -> bytes:
    """Build the reply to ``received``, cut to ``limit`` bytes like a fixed reply buffer would."""
    text = (
        f"Response from {host_name} written by {language} via {via} "
        f"--- Received: {received.decode('utf-8', errors='replace')}"
    )
    return text.encode("utf-8")[:limit]


@dataclass
class Session:
    """One outbound attempt paired with one inbound attempt."""

    number: int
    sent: bool = False
    response: bytes | None = None


class _StateMachine:
    def __init__(self, stop: StopToken) -> None:
        self.stop = stop
        self.state = CycleState.IDLE

    def _enter(self, state: CycleState, number: int) -> None:
        log.debug("#%d %s -> %s", number, self.state.value, state.value)
        self.state = state


class BridgeCycle(_StateMachine):
    """Initiator loop: send on the outbound leg, then wait for the reply on the inbound leg.

    Idle -> Sending -> WaitingForResponse -> Idle, forever or until the stop
    token is set. A failure in one cycle is logged and never carries into the
    next; only a socket that cannot be created at all ends the loop.
    """

    def __init__(
        self,
        transport: MessageTransport,
        outbound: PathSpec,
        inbound: PathSpec,
        make_message: Callable[[int], bytes],
        interval: float,
        stop: StopToken,
    ) -> None:
        super().__init__(stop)
        self.transport = transport
        self.outbound = outbound
        self.inbound = inbound
        self.make_message = make_message
        self.interval = interval

    def run_once(self, number: int) -> Session:
        session = Session(number)

        self._enter(CycleState.SENDING, number)
        try:
            session.sent = self.transport.send(self.outbound, self.make_message(number))
        except SocketCreationError:
            raise
        except FatalNetworkError as exc:
            log.error("Cycle #%d: outbound leg failed: %s", number, exc)

        self._enter(CycleState.WAITING_FOR_RESPONSE, number)
        log.info("Cycle #%d: starting inbound server to wait for response", number)
        try:
            session.response = self.transport.receive(self.inbound)
        except SocketCreationError:
            raise
        except FatalNetworkError as exc:
            log.error("Cycle #%d: inbound leg failed: %s", number, exc)

        self._enter(CycleState.IDLE, number)
        return session

    def run(self, max_cycles: int | None = None) -> int:
        """Run cycles until stopped (or ``max_cycles`` have run). Returns the number of cycles started."""
        number = 0
        try:
            while max_cycles is None or number < max_cycles:
                number += 1
                self.run_once(number)
                if max_cycles is not None and number >= max_cycles:
                    break
                log.info("Waiting %g seconds before next cycle", self.interval)
                self.stop.sleep(self.interval)
        except Cancelled:
            log.info("Stopped during cycle #%d", number)
        finally:
            self.state = CycleState.IDLE
        return number


class BridgeResponder(_StateMachine):
    """Responder loop: accept on the inbound leg and answer every message on the outbound leg.

    Listening -> Sending -> Listening. The listening socket stays open for
    the life of the loop.
    """

    def __init__(
        self,
        transport: MessageTransport,
        inbound: PathSpec,
        outbound: PathSpec,
        make_response: Callable[[bytes], bytes],
        stop: StopToken,
    ) -> None:
        super().__init__(stop)
        self.transport = transport
        self.inbound = inbound
        self.outbound = outbound
        self.make_response = make_response
        self.handled = 0

    def _on_message(self, message: bytes, peer: Peer) -> None:
        self.handled += 1
        number = self.handled
        self._enter(CycleState.SENDING, number)
        log.info("Message #%d from %s:%d, attempting response connection to %s", number, peer[0], peer[1], self.outbound.remote)
        try:
            self.transport.send(self.outbound, self.make_response(message))
        except FatalNetworkError as exc:
            # Includes SocketCreationError: the bridge keeps serving later messages.
            log.error("Message #%d: response leg failed: %s", number, exc)
        self._enter(CycleState.LISTENING, number)

    def run(self) -> int:
        """Serve until stopped. Returns the number of messages handled."""
        self._enter(CycleState.LISTENING, self.handled)
        try:
            self.transport.serve(self.inbound, self._on_message)
        except Cancelled:
            log.info("Responder stopped after %d message(s)", self.handled)
        finally:
            self.state = CycleState.IDLE
        return self.handled


class ReceiverLoop(_StateMachine):
    """Always-on receiver: Listening -> Idle only when stopped."""

    def __init__(
        self,
        transport: MessageTransport,
        inbound: PathSpec,
        stop: StopToken,
        on_message: Callable[[bytes, Peer], None] | None = None,
    ) -> None:
        super().__init__(stop)
        self.transport = transport
        self.inbound = inbound
        self.on_message = on_message
        self.received = 0

    def _on_message(self, message: bytes, peer: Peer) -> None:
        self.received += 1
        log.debug("Message #%d (%d bytes) from %s:%d: %s", self.received, len(message), peer[0], peer[1], printable(message))
        if self.on_message is not None:
            self.on_message(message, peer)

    def run(self) -> int:
        self._enter(CycleState.LISTENING, self.received)
        try:
            self.transport.serve(self.inbound, self._on_message)
        except Cancelled:
            log.info("Receiver stopped after %d message(s)", self.received)
        finally:
            self.state = CycleState.IDLE
        return self.received
