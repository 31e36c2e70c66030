#!/usr/bin/env python3
"""
Optimization Service Entry Point.

Runs the schedule optimization workflow with its HTTP API.

Usage:
    python run_optimization_service.py                          # Settings from config.yaml
    python run_optimization_service.py --optimizer-url http://optimizer:8090
    python run_optimization_service.py --api-port 9010

Prerequisites:
    - The optimizer must be reachable for AI-assisted and fully automated modes
"""

import asyncio
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


async def main():
    """Run the optimization service with HTTP API."""
    import argparse
    from shared.config import load_config
    from optimization.service import OptimizationService
    from optimization.api import run_with_api

    parser = argparse.ArgumentParser(
        description="Schedule Optimization Service - orchestrates optimizer runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_optimization_service.py --config config.yaml
    python run_optimization_service.py --optimizer-url http://localhost:8090
    python run_optimization_service.py --no-optimizer       # Manual mode only
    python run_optimization_service.py --poll-interval 2 --max-poll-attempts 150
        """
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml at project root)"
    )
    parser.add_argument(
        "--optimizer-url",
        default=None,
        help="Optimizer base URL (overrides config and OPTIMIZER_URL)"
    )
    parser.add_argument(
        "--no-optimizer",
        action="store_true",
        help="Disable the optimizer integration"
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for schedule store checkpoints"
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between job status polls (default: 5)"
    )
    parser.add_argument(
        "--max-poll-attempts",
        type=int,
        default=None,
        help="Status polls before giving up locally (default: 60)"
    )
    parser.add_argument(
        "--api-host",
        default=None,
        help="HTTP API host (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="HTTP API port (default: 9010)"
    )

    args = parser.parse_args()

    config = load_config(args.config)
    if args.optimizer_url:
        config["optimizer"]["base_url"] = args.optimizer_url
    if args.no_optimizer:
        config["optimizer"]["enabled"] = False
    if args.data_dir:
        config["store"]["data_dir"] = args.data_dir
    if args.poll_interval is not None:
        config["orchestration"]["poll_interval_seconds"] = args.poll_interval
    if args.max_poll_attempts is not None:
        config["orchestration"]["max_poll_attempts"] = args.max_poll_attempts
    if args.api_host:
        config["api"]["host"] = args.api_host
    if args.api_port:
        config["api"]["port"] = args.api_port

    if config["orchestration"]["max_poll_attempts"] < 1:
        print("Error: --max-poll-attempts must be at least 1")
        sys.exit(1)

    print(f"Starting Optimization Service...")
    print(f"  Optimizer: {config['optimizer']['base_url']} "
          f"({'enabled' if config['optimizer']['enabled'] else 'disabled'})")
    print(f"  Polling: every {config['orchestration']['poll_interval_seconds']}s, "
          f"{config['orchestration']['max_poll_attempts']} attempts")
    print(f"  Store: {config['store']['data_dir'] or 'in-memory only'}")
    print(f"  API: http://{config['api']['host']}:{config['api']['port']}")
    print()

    service = OptimizationService(config=config)

    await run_with_api(
        service=service,
        host=config["api"]["host"],
        port=config["api"]["port"],
    )


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested...")
