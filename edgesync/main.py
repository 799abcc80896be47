"""
EdgeSync - Entry Point

Usage:
    edgesync                        # Start with default config lookup
    edgesync --config my.yaml       # Use custom config file
    edgesync --dry-run              # Print resolved settings and exit
    edgesync --sync-once            # Run one config sync cycle and exit
    edgesync --verbose              # Enable debug logging
"""

import argparse
import asyncio
import json
import os
import sys

from edgesync import __version__
from edgesync.common.config import Settings, load_settings
from edgesync.common.exceptions import ConfigError
from edgesync.common.logging_setup import get_service_logger, set_global_level

logger = get_service_logger("main")


def print_startup_banner(settings: Settings) -> None:
    print()
    print("=" * 60)
    print(f"  EDGESYNC v{__version__}")
    print("=" * 60)
    print()
    print(f"  Tenant:       {settings.tenant_id if settings.tenant_id is not None else 'all'}")
    print(f"  Local DB:     {settings.local.url}")
    print(f"  Upload API:   {settings.remote.api_url or 'not set'}")
    print(f"  Config sync:  {settings.config_sync_cron}")
    print(f"  Collection:   every {settings.schedule.collection_interval_s:g}s")
    print(f"  Upload:       {settings.upload_cron}")
    print(f"  Operator API: http://{settings.http_host}:{settings.http_port}/status")
    print()
    print("=" * 60)
    print()


async def run_service(settings: Settings) -> None:
    from edgesync.service import EdgeSyncService

    service = EdgeSyncService(settings)
    try:
        await service.start()
    finally:
        await service.stop()


async def run_sync_once(settings: Settings) -> bool:
    from edgesync.service import EdgeSyncService

    service = EdgeSyncService(settings)
    try:
        await service.setup()
        result = await service.orchestrator.run_cycle()
        print(json.dumps(result.to_dict(), indent=2))
        return result.success
    finally:
        await service.stop()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="EdgeSync - meter configuration sync and reading upload for edge nodes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
    EDGESYNC_CONFIG              Settings file path
    EDGESYNC_REMOTE_DB_URL       Remote master database URL
    EDGESYNC_API_URL             Remote upload API base URL
    EDGESYNC_CONFIG_SYNC_CRON    Config sync schedule (default: hourly)
    EDGESYNC_UPLOAD_CRON         Upload schedule (default: every 5 minutes)
    EDGESYNC_LOG_LEVEL           DEBUG, INFO, WARNING, ERROR
    EDGESYNC_LOG_FORMAT          json or text
        """,
    )
    parser.add_argument("--config", "-c", type=str, default=None,
                        help="Path to configuration file")
    parser.add_argument("--dry-run", action="store_true",
                        help="Validate configuration, print resolved settings and exit")
    parser.add_argument("--sync-once", action="store_true",
                        help="Run one config sync cycle and exit")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose (debug) logging")
    parser.add_argument("--version", action="version", version=f"EdgeSync v{__version__}")

    args = parser.parse_args(argv)

    if args.verbose:
        os.environ["EDGESYNC_LOG_LEVEL"] = "DEBUG"
        set_global_level("DEBUG")

    try:
        settings = load_settings(args.config)
        settings.validate()
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print_startup_banner(settings)

    if args.dry_run:
        print(json.dumps(settings.to_dict(), indent=2))
        print("Dry run mode - configuration valid")
        return 0

    if args.sync_once:
        return 0 if asyncio.run(run_sync_once(settings)) else 2

    print("Starting EdgeSync...")
    print("Press Ctrl+C to stop")
    print()

    try:
        asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
