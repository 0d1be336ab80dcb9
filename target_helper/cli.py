"""
target-helper entry point.

    target-helper                run the service until SIGINT/SIGTERM
    target-helper reap           remove broken pending job links once and exit
    target-helper submit-asn ID  queue an asn job for an existing ASN resource
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

from target_helper import __version__
from target_helper.runtime import build_apps
from target_helper.shared.config import Config, Settings, init_config
from target_helper.shared.observability import (
    get_logger,
    setup_logging,
    start_metrics_server,
)
from target_helper.shared.tasks import global_exception_handler

log = get_logger(__name__)


async def run_service(apps) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop.set)

    started = []
    try:
        for app in apps:
            await app.start()
            started.append(app)
        log.info("target_helper_started", version=__version__, apps=len(apps))
        await stop.wait()
        log.info("shutdown_requested")
    finally:
        for app in started:
            await app.stop()


async def run_reap(apps) -> int:
    removed = 0
    for app in apps:
        stats = await app.reaper.reap_once()
        removed += stats.get("removed", 0)
        await app.store.close()
    print(f"Removed {removed} broken job link(s)")
    return 0


async def run_submit_asn(apps, asn_id: str, key: str) -> int:
    app = apps[0]
    try:
        job_id = await app.submission.submit_asn(asn_id, key)
    finally:
        await app.store.close()
    print(job_id)
    return 0


async def _main(args: argparse.Namespace, config: Config, settings: Settings) -> int:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(global_exception_handler)

    apps = build_apps(config, settings)
    if args.command == "reap":
        return await run_reap(apps)
    if args.command == "submit-asn":
        return await run_submit_asn(apps, args.asn_id, args.key or args.asn_id.split("/")[-1])
    await run_service(apps)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="target-helper",
        description="Drives target transcription jobs and post-processes their results",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--env", help="Config environment (config/<env>.yaml)")
    parser.add_argument("--config", help="Explicit config file path")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")
    subparsers.add_parser("run", help="Run the service (default)")
    subparsers.add_parser("reap", help="Remove broken pending job links once")
    submit_parser = subparsers.add_parser("submit-asn", help="Queue an asn job")
    submit_parser.add_argument("asn_id", help="ASN resource id, e.g. resources/abc")
    submit_parser.add_argument("--key", help="documentsKey for the job")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.env:
        os.environ["ENV"] = args.env
    if args.config:
        os.environ["CONFIG_PATH"] = args.config

    try:
        config, settings = init_config()
    except (FileNotFoundError, ValueError) as e:
        setup_logging("INFO")
        log.error("startup_failed", error=str(e))
        return 1

    setup_logging(settings.log_level, json=settings.log_json)
    if config.monitoring.metrics_enabled:
        start_metrics_server(config.monitoring.metrics_port)

    try:
        return asyncio.run(_main(args, config, settings))
    except Exception as e:
        log.error("target_helper_failed", error_type=type(e).__name__, error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
