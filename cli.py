from __future__ import annotations

import argparse
import json
import logging
import os
import sys

import requests

from unsealer import __version__
from unsealer.settings import ConfigError, SettingsStore, load_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def setup_logging(level: str, path: str | None = None, quiet: bool = False) -> None:
    handlers: list[logging.Handler] = []
    if path:
        handlers.append(logging.FileHandler(path))
    if not quiet:
        handlers.append(logging.StreamHandler(sys.stdout))
    if not handlers:
        handlers.append(logging.NullHandler())
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)


def _run(args: argparse.Namespace) -> int:
    from unsealer.daemon import Daemon

    setup_logging(args.log_level or "info", args.log_path, args.quiet)
    try:
        st = load_settings(args.config)
    except ConfigError as e:
        logging.getLogger("unsealer").error("error reading config: %s", e)
        return 1
    if args.log_level is None:
        logging.getLogger().setLevel(st.log_level.upper())

    Daemon(SettingsStore(st, path=args.config)).run_forever()
    return 0


def _check_config(args: argparse.Namespace) -> int:
    setup_logging("warning")
    try:
        st = load_settings(args.config)
    except ConfigError as e:
        print(f"invalid config: {e}", file=sys.stderr)
        return 1
    _print(st.redacted())
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Keep Vault nodes unsealed")
    p.add_argument("-v", "--version", action="version", version=f"vault-unsealer {__version__}")
    p.add_argument("--api", default="http://localhost:8080", help="status API base URL (status/events)")
    p.add_argument(
        "-c",
        "--config",
        default=os.getenv("CONFIG_PATH"),
        help="path to YAML configuration file (env: CONFIG_PATH)",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Run the unseal daemon")
    s_run.add_argument("--log-level", choices=["debug", "info", "warning", "error"], default=None)
    s_run.add_argument("--log-path", default=os.getenv("LOG_PATH"), help="also log to this file")
    s_run.add_argument("--quiet", action="store_true", help="disable logging to stdout")

    sub.add_parser("check-config", help="Validate configuration and print it (secrets redacted)")

    sub.add_parser("status", help="Show daemon health and workers")

    s_ev = sub.add_parser("events", help="Show journaled events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--address", default=None)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "run":
        return _run(args)

    if args.cmd == "check-config":
        return _check_config(args)

    if args.cmd == "status":
        health = requests.get(f"{base}/health", timeout=10)
        workers = requests.get(f"{base}/workers", timeout=10)
        _print({"health": health.json(), "workers": workers.json()})
        return 0 if health.ok and workers.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.address:
            params["address"] = args.address
        r = requests.get(f"{base}/events", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
