"""Command line entry point: ``agentrelay [COMMAND [ARGS...]]``."""

import argparse
import asyncio
import errno
import socket
import sys
from urllib.parse import urlencode

import structlog
import uvicorn

from agentrelay.config import get_settings, override_settings
from agentrelay.console import LocalConsole
from agentrelay.errors import StartupError
from agentrelay.log_config import configure_logging
from agentrelay.main import build_hub, create_app

logger = structlog.get_logger()

_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def lan_address() -> str:
    """Best guess at this machine's LAN IPv4 address."""
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect only picks a route; nothing is sent.
        probe.connect(("10.255.255.255", 1))
        return probe.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        probe.close()


def connection_url(host: str, port: int, token: str) -> str:
    """The address a remote client scans or pastes."""
    return f"ws://{host}:{port}?{urlencode({'token': token})}"


def bind_socket(host: str, port: int) -> socket.socket:
    """Open the listening socket before anything else starts.

    Raises:
        StartupError: Port already bound, or address unusable.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as exc:
        sock.close()
        if exc.errno == errno.EADDRINUSE:
            msg = f"Port {port} is already in use. Try a different port with --port."
        else:
            msg = f"Cannot listen on {host}:{port}: {exc.strerror or exc}"
        raise StartupError(msg) from exc
    sock.listen(128)
    sock.set_inheritable(True)
    return sock


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Relay an interactive CLI agent to remote clients.",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: 3456)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Interface to bind (default: all)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Log verbosity (default: info)",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Agent command and its arguments (default: claude)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    update: dict[str, object] = {}
    if args.command:
        update["command"] = args.command[0]
        update["command_args"] = args.command[1:]
    if args.port is not None:
        update["port"] = args.port
    if args.host is not None:
        update["host"] = args.host
    if args.log_level is not None:
        update["log_level"] = args.log_level
    settings = get_settings().model_copy(update=update)
    override_settings(settings)

    log_path = configure_logging(settings)

    try:
        sock = bind_socket(settings.host, settings.port)
    except StartupError as exc:
        logger.error("startup_failed", error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    server: uvicorn.Server | None = None

    def _interrupt() -> None:
        if server is not None:
            server.should_exit = True

    console = LocalConsole(on_interrupt=_interrupt)
    hub = build_hub(settings, console)
    app = create_app(hub=hub, console=console)
    server = uvicorn.Server(
        uvicorn.Config(app, log_level="warning", access_log=False),
    )

    public_host = (
        lan_address() if settings.host in _WILDCARD_HOSTS else settings.host
    )
    print(f"\nagentrelay {settings.app_version}")
    print(f"Command:    {' '.join([settings.command, *settings.command_args])}")
    print(f"Connect to: {connection_url(public_host, settings.port, hub.token)}")
    print(f"Token:      {hub.token}")
    if log_path is not None:
        print(f"Logs:       {log_path}")
    print("Waiting for a remote client; the command starts on first connect.\n")

    try:
        asyncio.run(server.serve(sockets=[sock]))
    finally:
        sock.close()


if __name__ == "__main__":
    main()
