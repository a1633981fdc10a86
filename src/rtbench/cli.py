"""Command line entry point.

Usage::

    rtbench run --protocol websocket --clients 100 --messages 1000 \\
        --repetitions 10 --output results/websocket.json
    rtbench protocols

Exit codes: 0 on success, 1 on a failed run, 2 on invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rtbench import __version__
from rtbench.adapters import available_protocols
from rtbench.config import HarnessSettings, load_configuration
from rtbench.error import ConfigurationError, HarnessError
from rtbench.runner import TestRunner
from rtbench.types import AggregateResult

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_BAD_CONFIGURATION = 2

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtbench",
        description="Performance test harness for real-time messaging protocols",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run one test configuration")
    run.add_argument("--protocol", required=True, help="Protocol under test")
    run.add_argument("--clients", type=int, required=True, help="Concurrent clients (N)")
    run.add_argument("--messages", type=int, required=True, help="Messages per run (M)")
    run.add_argument("--payload-size", type=int, default=64, help="Payload bytes per message")
    run.add_argument("--repetitions", type=int, default=1, help="Independent runs (R)")
    run.add_argument("--output", type=Path, required=True, help="Result JSON path")
    run.add_argument("--settings", type=Path, help="Harness settings JSON file")
    run.add_argument("--servers-dir", type=Path, help="Directory holding <protocol>/docker-compose.yml")
    run.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="Record failed repetitions and keep going",
    )
    run.add_argument(
        "--include-incomplete",
        action="store_true",
        help="Include incomplete runs in the statistics",
    )

    commands.add_parser("protocols", help="List available protocols")
    return parser


def load_settings(args: argparse.Namespace) -> HarnessSettings:
    settings = HarnessSettings.from_file(args.settings) if args.settings else HarnessSettings()
    overrides = {}
    if args.servers_dir is not None:
        overrides["servers_dir"] = args.servers_dir
    if args.continue_on_failure:
        overrides["continue_on_failure"] = True
    if args.include_incomplete:
        overrides["include_incomplete"] = True
    return settings.model_copy(update=overrides)


def format_summary(result: AggregateResult) -> str:
    config = result.config
    lines = [
        f"{config.protocol}: N={config.clients} M={config.messages} "
        f"payload={config.payload_size}B R={config.repetitions}",
        f"  runs: {len(result.runs)} ({result.incomplete_runs} incomplete), "
        f"failures: {len(result.failures)}",
    ]
    for name, summary in result.metrics.items():
        lines.append(f"  {name:<26} mean={summary.mean:.3f} var={summary.variance:.3f} n={summary.count}")
    return "\n".join(lines)


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    config = load_configuration(
        protocol=args.protocol,
        clients=args.clients,
        messages=args.messages,
        payload_size=args.payload_size,
        repetitions=args.repetitions,
        output_path=args.output,
    )
    async with TestRunner(settings) as runner:
        result = await runner.run_configuration(config)
    print(format_summary(result))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    if args.command == "protocols":
        print("\n".join(available_protocols()))
        return EXIT_OK

    try:
        return asyncio.run(_run(args))
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_BAD_CONFIGURATION
    except HarnessError as e:
        logger.error("%s", e)
        return EXIT_RUN_FAILED
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_RUN_FAILED


if __name__ == "__main__":
    sys.exit(main())
