#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json

from dotenv import load_dotenv

from swapcore.bot_runtime import setup_logger
from swapcore.config import CoreConfig
from swapcore.rpc import EndpointRegistry


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Probe every configured Solana RPC endpoint once.")
    parser.add_argument(
        "--endpoints",
        default="",
        help="Comma-separated url|tier list; defaults to RPC_ENDPOINTS from the environment.",
    )
    parser.add_argument("--env-file", default=".env")
    return parser.parse_args()


async def check_endpoints(config: CoreConfig) -> dict[str, object]:
    logger = setup_logger("WARNING")
    registry = EndpointRegistry(config.endpoints, logger=logger, settings=config.registry)
    try:
        results = await registry.check_all()
        metrics = registry.metrics_snapshot()
    finally:
        await registry.close()

    return {
        "healthy": sum(1 for healthy in results.values() if healthy),
        "total": len(results),
        "current_endpoint": registry.current_endpoint().label,
        "endpoints": {registry.get(url).label: metrics[url] for url in metrics},
    }


def main() -> None:
    args = parse_args()
    load_dotenv(args.env_file)

    config = CoreConfig.from_env()
    if args.endpoints:
        config = config.with_overrides({"rpc_endpoints": args.endpoints})

    report = asyncio.run(check_endpoints(config))
    print(json.dumps(report, indent=2, ensure_ascii=False))
    if report["healthy"] == 0:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
