from __future__ import annotations

import argparse
import signal
import sys
from typing import Any

from dualpath_bridge.bridge import BridgeCycle, BridgeResponder, ReceiverLoop, generate_message, generate_response
from dualpath_bridge.common import ConfigError, Endpoint, FatalNetworkError, StopToken, parse_endpoint
from dualpath_bridge.config import (
    MULTICAST_PRESET,
    HarnessConfig,
    MulticastConfig,
    build_config,
    build_multicast_config,
    load_config_file,
)
from dualpath_bridge.logs import setup_logging
from dualpath_bridge.multicast import MulticastReceiver
from dualpath_bridge.transport import OneShotTcpTransport


def _endpoint(text: str) -> Endpoint:
    try:
        return parse_endpoint(text)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="JSON file with listenAddr/peerAddr/retryDelaySeconds/... keys")
    parser.add_argument("--listen", type=_endpoint, dest="listen_addr", help="Local address to listen on (ip:port)")
    parser.add_argument("--retry-delay", type=float, dest="retry_delay", help="Seconds between retries (default: 1)")
    parser.add_argument("--buffer-size", type=int, dest="buffer_size", help="Receive buffer size in bytes (default: 1024)")
    parser.add_argument("--host-name", dest="host_name", help="Name this host reports in its messages")
    parser.add_argument("--language", help="Language this host reports in its messages (default: Python)")


def _add_outbound(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--peer", type=_endpoint, dest="peer_addr", help="Remote address to connect to (ip:port)")
    parser.add_argument("--source", dest="source_addr", help="Local source IP to pin outbound connections to")


def _add_roles(sub: argparse._SubParsersAction) -> None:
    client = sub.add_parser("client", help="Send a message, then wait for the response on the other path (ABOS2)")
    _add_common(client)
    _add_outbound(client)
    client.add_argument("--cycle-interval", type=float, dest="cycle_interval", help="Seconds between cycles (default: 1)")
    client.add_argument("--cycles", type=int, default=None, help="Stop after this many cycles (default: run forever)")

    bridge = sub.add_parser("bridge", help="Receive messages and answer each one on the other path (ABOS1)")
    _add_common(bridge)
    _add_outbound(bridge)

    receiver = sub.add_parser("receiver", help="Accept connections and print every message")
    _add_common(receiver)

    mcast = sub.add_parser("multicast-receiver", help="Join a multicast group and dump every datagram")
    mcast.add_argument("--config", help="JSON file with groupAddr/interfaceAddr/bufferSize keys")
    mcast.add_argument("--group", type=_endpoint, help=f"Group address (ip:port, default: {MULTICAST_PRESET.group})")
    mcast.add_argument("--interface", help=f"Local interface IP to join on (default: {MULTICAST_PRESET.interface})")
    mcast.add_argument("--buffer-size", type=int, dest="buffer_size", help="Receive buffer size in bytes (default: 1024)")


def _banner(*lines: str) -> None:
    print("=" * 60)
    for line in lines:
        print(f"  {line}")
    print("=" * 60)


def _install_stop_handlers(stop: StopToken) -> dict[int, Any]:
    previous = {}

    def _handler(signum, _frame) -> None:
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            # not the main thread; rely on the caller to set the token
            pass
    return previous


def _config_from_args(args: argparse.Namespace) -> HarnessConfig:
    file_layer = load_config_file(args.config) if args.config else {}
    cli_layer = {
        name: getattr(args, name, None)
        for name in (
            "listen_addr",
            "peer_addr",
            "source_addr",
            "retry_delay",
            "cycle_interval",
            "buffer_size",
            "host_name",
            "language",
        )
    }
    return build_config(args.cmd, file_layer, cli_layer)


def _multicast_config_from_args(args: argparse.Namespace) -> MulticastConfig:
    file_layer = load_config_file(args.config) if args.config else {}
    cli_layer = {"group": args.group, "interface": args.interface, "buffer_size": args.buffer_size}
    return build_multicast_config(file_layer, cli_layer)


def _run_client(config: HarnessConfig, stop: StopToken, cycles: int | None) -> int:
    _banner(f"Client/Server ({config.host_name}, {config.language}) Starting")
    message = generate_message(config.host_name, config.language)
    cycle = BridgeCycle(
        OneShotTcpTransport.from_config(config, stop),
        outbound=config.outbound_path(),
        inbound=config.inbound_path(),
        make_message=lambda _number: message,
        interval=config.cycle_interval,
        stop=stop,
    )
    cycle.run(cycles)
    return 0


def _run_bridge(config: HarnessConfig, stop: StopToken) -> int:
    _banner(f"Bridge Server/Client ({config.host_name}, {config.language}) Starting")
    limit = config.buffer_size - 1
    responder = BridgeResponder(
        OneShotTcpTransport.from_config(config, stop),
        inbound=config.inbound_path(),
        outbound=config.outbound_path(),
        make_response=lambda received: generate_response(
            config.host_name, config.language, config.source_addr, received, limit
        ),
        stop=stop,
    )
    responder.run()
    return 0


def _run_receiver(config: HarnessConfig, stop: StopToken) -> int:
    _banner(f"TCP Receiver ({config.host_name}, {config.language})", f"Listening on {config.listen_addr}")
    ReceiverLoop(OneShotTcpTransport.from_config(config, stop), config.inbound_path(), stop).run()
    return 0


def _run_multicast(config: MulticastConfig, stop: StopToken) -> int:
    _banner(
        "Multicast UDP Receiver",
        f"Multicast Group: {config.group}",
        f"Local Interface: {config.interface}",
    )
    MulticastReceiver(config, stop).run()
    return 0


def main(argv: list[str] | None = None, stop: StopToken | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="dualpath",
        description=(
            "Point-to-point test harness for dual-homed hosts: messages go out on one "
            "network path and the answer comes back on another."
        ),
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log state transitions")
    parser.add_argument("--no-color", action="store_true", help="Disable colored console output")
    sub = parser.add_subparsers(dest="cmd", required=True)
    _add_roles(sub)

    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, color=False if args.no_color else None)

    stop = stop or StopToken()
    previous = _install_stop_handlers(stop)
    try:
        if args.cmd == "multicast-receiver":
            return _run_multicast(_multicast_config_from_args(args), stop)

        config = _config_from_args(args)
        if args.cmd == "client":
            return _run_client(config, stop, args.cycles)
        if args.cmd == "bridge":
            return _run_bridge(config, stop)
        if args.cmd == "receiver":
            return _run_receiver(config, stop)
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except FatalNetworkError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    print(f"Unknown command: {args.cmd}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
