# ccsdsrouter/cli.py
import argparse
import json
import time
from pathlib import Path

from .config import EndpointConfig, RouteConfig, dump_config, load_config
from .errors import ConfigError, TransportError
from .pipeline import start_route
from .utils import log, setup

DEFAULT_CONFIG = "ccsds_router.yaml"


def template_config() -> RouteConfig:
    return RouteConfig(
        source=EndpointConfig(kind="file", path="input.bin"),
        sink=EndpointConfig(kind="udp", host="127.0.0.1", port=8000),
    )


def main(argv=None):
    p = argparse.ArgumentParser(prog="ccsdsrouter",
                                description="Move CCSDS packets from an input to an output")
    p.add_argument("config", nargs="?", default=DEFAULT_CONFIG,
                   help=f"route configuration (.yaml or .json), default {DEFAULT_CONFIG}")
    p.add_argument("--log-dir", default="logs", help="directory for rotated log files")
    p.add_argument("--no-log-file", dest="log_file", action="store_false",
                   help="log to the console only")
    p.add_argument("--no-console", dest="console", action="store_false",
                   help="do not log to stderr")
    p.add_argument("--level", default="INFO", help="DEBUG/INFO/WARNING/ERROR")
    p.add_argument("--stats-every", type=float, default=0.0,
                   help="log running statistics every N seconds (0 = only at the end)")
    p.add_argument("--write-template", metavar="PATH",
                   help="write a starter configuration to PATH and exit")
    p.add_argument("--print-stats", action="store_true",
                   help="print final statistics as JSON on stdout")

    args = p.parse_args(argv)

    if args.write_template:
        dump_config(template_config(), args.write_template)
        print(f"[OK] wrote {args.write_template}")
        return

    setup(log_dir=args.log_dir if args.log_file else None, level=args.level, console=args.console)

    cfg_path = Path(args.config)
    if not cfg_path.exists():
        raise SystemExit(f"Configuration {cfg_path} not found. Use --write-template to create one.")

    try:
        config = load_config(cfg_path)
    except ConfigError as e:
        for problem in e.problems:
            log.error(f"[CONFIG] {problem}")
        raise SystemExit(f"Invalid configuration {cfg_path}: {e}")

    log.info(f"Configuration used: {cfg_path}")

    try:
        rc = _run_with_stats(config, args)
    except TransportError as e:
        raise SystemExit(f"Cannot open route endpoints: {e}")
    raise SystemExit(rc)


def _run_with_stats(config: RouteConfig, args) -> int:
    handle = start_route(config)
    last = time.monotonic()
    try:
        while not handle.wait(0.5):
            if args.stats_every and time.monotonic() - last >= args.stats_every:
                last = time.monotonic()
                log.info(f"[STATS] {handle.stats.summary()}")
    except KeyboardInterrupt:
        log.warning("Interrupted by user, stopping route...")
        handle.stop()

    if args.print_stats:
        print(json.dumps(handle.stats.snapshot(), indent=2))

    if handle.error is not None:
        log.error(f"[FAIL] route stopped on error: {handle.error}")
        return 1
    return 0


if __name__ == "__main__":
    main()
