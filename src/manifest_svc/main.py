"""
Manifest Service entry point.

Commands:
    run            reconcile on a fixed interval until interrupted
    once           run a single cycle and print its report as JSON
    verify-domain  verify one manifest's domain claim and print the verdict
    init-db        create the database tables
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from hub_common.exceptions import ConfigurationError, ManifestServiceError
from hub_common.http_client import HttpClient
from hub_common.infrastructure import DatabaseManager
from hub_common.logging_config import setup_logging

from . import __version__
from .codec import EncodedManifest
from .config import ManifestServiceConfig
from .domain_verification import DomainVerifier
from .metrics import CycleMetrics
from .orchestrator import build_cycle_runner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manifest-service", description="Validator manifest reconciliation service"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run reconciliation cycles on a fixed interval")
    run.add_argument(
        "--interval", type=float, default=None, help="Seconds between cycles (CYCLE_INTERVAL_SECONDS)"
    )

    subparsers.add_parser("once", help="Run a single reconciliation cycle")

    verify = subparsers.add_parser("verify-domain", help="Verify a manifest's domain claim")
    verify.add_argument("manifest", help="Manifest as hex or base64 text")

    subparsers.add_parser("init-db", help="Create database tables")
    return parser


async def _init_db(config: ManifestServiceConfig) -> int:
    database = DatabaseManager(config.database)
    try:
        await database.create_all()
    finally:
        await database.dispose()
    logger.info("Database tables created")
    return 0


async def _verify_domain(config: ManifestServiceConfig, manifest: str) -> int:
    async with HttpClient(timeout=config.network.fetch_timeout_seconds) as http_client:
        verifier = DomainVerifier(http_client.get_text, config.network.trust_file_path)
        verification = await verifier.verify(EncodedManifest(manifest))
    print(json.dumps(verification.to_dict(), indent=2))
    return 0 if verification.verified else 1


async def _run(config: ManifestServiceConfig, *, once: bool, interval: Optional[float] = None) -> int:
    metrics = CycleMetrics()
    if config.service.metrics_enabled and not once:
        metrics.serve(config.service.metrics_port)
        logger.info(f"Metrics exposed on port {config.service.metrics_port}")

    database = DatabaseManager(config.database)
    await database.create_all()
    try:
        async with HttpClient(timeout=config.network.fetch_timeout_seconds) as http_client:
            runner = build_cycle_runner(config, database, http_client, metrics)
            if once:
                report = await runner.run_cycle()
                print(json.dumps(report.model_dump(mode="json"), indent=2))
                return 0 if report.status.value == "completed" else 1

            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(signum, runner.stop)
                except NotImplementedError:
                    pass
            await runner.run_forever(interval or config.service.cycle_interval_seconds)
            return 0
    finally:
        await database.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the manifest service."""
    args = build_parser().parse_args(argv)

    try:
        config = ManifestServiceConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2

    setup_logging(service_name=config.service.service_name, log_level=config.service.log_level)
    logger.debug(f"Configuration: {json.dumps(config.to_dict())}")

    try:
        if args.command == "init-db":
            return asyncio.run(_init_db(config))
        if args.command == "verify-domain":
            return asyncio.run(_verify_domain(config, args.manifest))
        return asyncio.run(_run(config, once=args.command == "once", interval=getattr(args, "interval", None)))
    except ManifestServiceError as e:
        logger.error(f"{args.command} failed: {e.message}")
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
