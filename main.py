from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal

from dotenv import load_dotenv

from swapcore.bot_runtime import AppSettings, SwapCore, build_core, setup_logger
from swapcore.common import guarded_call, log_event, wait_with_stop
from swapcore.config import CoreConfig
from swapcore.storage import RedisConfigSource
from swapcore.trading import KeypairWallet, SwapRequest

STATUS_INTERVAL_SECONDS = 60.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Solana swap resilience core")
    parser.add_argument("--token", help="Token mint to swap once, then exit")
    parser.add_argument("--amount", type=float, default=0.01, help="SOL to spend (buy) or tokens to sell")
    parser.add_argument("--side", choices=("buy", "sell"), default="buy")
    parser.add_argument("--slippage-bps", type=int, default=None)
    return parser.parse_args(argv)


async def load_config(app_settings: AppSettings, logger: logging.Logger) -> CoreConfig:
    config = CoreConfig.from_env()
    if not app_settings.redis.enabled:
        return config

    source = RedisConfigSource(app_settings.redis, logger)
    try:
        await source.connect()
        overrides = await source.get_overrides()
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event="config_overrides_unavailable",
            message="Redis config overrides unavailable; using environment config",
            error=str(error),
        )
        return config
    finally:
        with contextlib.suppress(Exception):
            await source.close()

    return config.with_overrides(overrides)


async def run_single_swap(core: SwapCore, app_settings: AppSettings, args: argparse.Namespace) -> bool:
    if not app_settings.private_key:
        raise ValueError("PRIVATE_KEY is required to submit a swap.")

    wallet = KeypairWallet.from_secret(app_settings.private_key)
    result = await core.submit_swap(
        SwapRequest(
            token_address=args.token,
            user_wallet=wallet,
            amount_in=args.amount,
            slippage_bps=args.slippage_bps,
            side=args.side,
        )
    )
    print(json.dumps(result.to_dict(), ensure_ascii=False, default=str))
    return result.success


async def run_service(core: SwapCore, logger: logging.Logger, stop_event: asyncio.Event) -> None:
    core.start()
    while not stop_event.is_set():
        await wait_with_stop(stop_event, STATUS_INTERVAL_SECONDS)
        await guarded_call(
            lambda: log_event(
                logger,
                level="info",
                event="swap_core_status",
                message="Swap core status",
                endpoints=core.get_endpoint_metrics(),
                rate_limiter=core.get_rate_limiter_status(),
                rpc_usage=core.get_rpc_usage(),
            ),
            logger=logger,
            event="swap_core_status_failed",
            message="Failed to report swap core status",
        )


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    app_settings = AppSettings.from_env()
    logger = setup_logger(app_settings.log_level)

    config = await load_config(app_settings, logger)
    core = build_core(config, logger=logger)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(
            "Shutdown signal received",
            extra={"event": "shutdown_signal_received", "signal": sig.name},
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    exit_code = 0
    try:
        if args.token:
            exit_code = 0 if await run_single_swap(core, app_settings, args) else 1
        elif app_settings.health_monitor_enabled:
            await run_service(core, logger, stop_event)
        else:
            await stop_event.wait()
    finally:
        with contextlib.suppress(Exception):
            await core.close()
        logger.info("Shutdown completed", extra={"event": "shutdown_completed"})

    return exit_code


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
