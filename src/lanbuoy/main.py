"""Command line entry point.

Brief:
  `lanbuoy register` advertises one service until interrupted or timed out
  and withdraws it with a goodbye; `lanbuoy browse` prints discovered
  services as JSON lines.
"""

from __future__ import annotations

import argparse
import json
import logging
import queue
import signal
import sys
from typing import List, Optional

from .config import init_logging, load_config
from .errors import MdnsError
from .resolver import Resolver
from .responder import register
from .scope import Scope

logger = logging.getLogger("lanbuoy.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lanbuoy", description="Advertise and discover services over mDNS"
    )
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value, e.g. resolver.max_entries=50",
    )
    parser.add_argument(
        "--log-level", default=None, help="debug, info, warn, error or crit"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    reg = sub.add_parser("register", help="Advertise a service until interrupted")
    reg.add_argument("--name", required=True, help="Instance name")
    reg.add_argument("--service", required=True, help="e.g. _http._tcp or _http._tcp,_sub")
    reg.add_argument("--domain", default="local.")
    reg.add_argument("--port", type=int, required=True)
    reg.add_argument("--txt", action="append", default=[], help="TXT string (repeatable)")
    reg.add_argument("--interface", action="append", default=None, help="Interface name")
    reg.add_argument("--timeout", type=float, default=None, help="Seconds to stay registered")

    browse = sub.add_parser("browse", help="Print discovered services as JSON lines")
    browse.add_argument("--service", required=True)
    browse.add_argument("--domain", default="local.")
    browse.add_argument("--instance", default=None, help="Look up one instance only")
    browse.add_argument("--timeout", type=float, default=None, help="Seconds to browse")
    return parser


def _install_signal_handlers(scope: Scope) -> None:
    def _handler(signum, _frame):  # type: ignore[no-untyped-def]
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        scope.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except (ValueError, OSError):  # pragma: no cover - not the main thread
            logger.warning("Could not install %s handler", sig)


def _run_register(args, settings, scope: Scope) -> int:  # type: ignore[no-untyped-def]
    server = register(
        args.name,
        args.service,
        args.domain,
        args.port,
        args.txt,
        args.interface,
        config=settings.responder,
    )
    logger.info("Registered %s as %r", server.service_instance_name(), server.instance)
    while not scope.wait(0.5):
        pass
    server.shutdown()
    return 0


def _run_browse(args, settings, scope: Scope) -> int:  # type: ignore[no-untyped-def]
    entries: "queue.Queue" = queue.Queue()
    with Resolver(settings.resolver) as resolver:
        if args.instance:
            resolver.lookup(scope, args.instance, args.service, args.domain, entries)
        else:
            resolver.browse(scope, args.service, args.domain, entries)
        while not scope.cancelled:
            try:
                entry = entries.get(timeout=0.5)
            except queue.Empty:
                continue
            print(json.dumps(entry.to_dict()), flush=True)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Brief: Command line entry point.

    Inputs:
      - argv: Argument list (defaults to sys.argv[1:]).

    Outputs:
      - int: Exit code (0 ok, 1 setup failure).

    Example use:
        CLI:
            lanbuoy register --name "Box" --service _http._tcp --port 8080 --txt path=/
            lanbuoy browse --service _http._tcp --timeout 5
    """

    args = build_parser().parse_args(argv)
    try:
        settings = load_config(args.config, overrides=args.overrides)
    except MdnsError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    log_cfg = dict(settings.logging)
    if args.log_level:
        log_cfg["level"] = args.log_level
    init_logging(log_cfg)

    scope = Scope(timeout=args.timeout)
    _install_signal_handlers(scope)
    try:
        if args.command == "register":
            return _run_register(args, settings, scope)
        return _run_browse(args, settings, scope)
    except MdnsError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        scope.cancel()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
