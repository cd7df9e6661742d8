#!/usr/bin/env python3
"""
Leadrunner - Main Entry Point

Usage:
    # Run the control API (starts the runtime with it)
    leadrunner serve --config leadrunner.yaml

    # Run the runtime headless until interrupted
    leadrunner run

    # Validate configuration and check the upstream API
    leadrunner check
"""

import argparse
import asyncio
import sys

from dotenv import load_dotenv

# Load environment variables before config defaults are read
load_dotenv()

from leadrunner.api.config import AppConfig, load_config
from leadrunner.api.logging_config import setup_logging
from leadrunner.core.error_handler import ConfigError

logger = setup_logging()


def check_environment(cfg: AppConfig) -> bool:
    """Check that the configuration is usable."""
    problems = cfg.validate()
    if problems:
        print("❌ Configuration problems:")
        for problem in problems:
            print(f"  - {problem}")
        return False

    print(f"✅ Configuration OK (API: {cfg.API_URL})")
    return True


def run_server(cfg: AppConfig, host: str, port: int):
    """Run the FastAPI control server."""
    import uvicorn

    from leadrunner.api.control import create_app
    from leadrunner.core.orchestrator import LeadrunnerRuntime

    print(f"🚀 Starting control API on {host}:{port}")
    uvicorn.run(create_app(LeadrunnerRuntime(cfg)), host=host, port=port, log_level="info")


async def run_headless(cfg: AppConfig):
    """Run poller, executor and timers without the control API."""
    from leadrunner.core.orchestrator import LeadrunnerRuntime

    runtime = LeadrunnerRuntime(cfg)
    await runtime.start()
    try:
        await runtime.join()
    finally:
        await runtime.stop()


async def check_api(cfg: AppConfig) -> bool:
    from leadrunner.api.client import ApiClient

    client = ApiClient(cfg)
    try:
        return await client.health_check()
    finally:
        await client.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Leadrunner - browser automation orchestrator for lead outreach"
    )
    parser.add_argument('--config', help='Path to config YAML')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    serve_parser = subparsers.add_parser('serve', help='Run the control API and the runtime')
    serve_parser.add_argument('--host', default=None, help='Host to bind to')
    serve_parser.add_argument('--port', type=int, default=None, help='Port to bind to')

    subparsers.add_parser('run', help='Run the runtime headless')
    subparsers.add_parser('check', help='Validate config and test API connectivity')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"❌ {e}")
        sys.exit(1)
    if not check_environment(cfg):
        sys.exit(1)

    if args.command == 'serve':
        run_server(cfg, args.host or cfg.HOST, args.port or cfg.PORT)

    elif args.command == 'run':
        try:
            asyncio.run(run_headless(cfg))
        except KeyboardInterrupt:
            logger.info("Interrupted, runtime stopped")

    elif args.command == 'check':
        healthy = asyncio.run(check_api(cfg))
        print("✅ API reachable" if healthy else "❌ API unreachable")
        if not healthy:
            sys.exit(1)


if __name__ == "__main__":
    main()
