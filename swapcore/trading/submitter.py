from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from typing import Any, Callable

from solders.transaction import VersionedTransaction

from swapcore.common import log_event
from swapcore.common.async_utils import SleepFunc
from swapcore.errors import InvalidArgumentError, TransactionFailedError
from swapcore.rpc import RpcOperation, RpcRequestScheduler

from .types import SwapExecution, UnsignedSwapBundle, WalletSigner

CONFIRMED_STATUSES = {"confirmed", "finalized"}


def decode_transaction(encoded: str) -> VersionedTransaction:
    try:
        return VersionedTransaction.from_bytes(base64.b64decode(encoded))
    except (binascii.Error, ValueError) as error:
        raise InvalidArgumentError(f"Swap transaction payload is not a valid transaction: {error}") from error


def _status_label(status: Any) -> str:
    confirmation = getattr(status, "confirmation_status", None)
    if confirmation is None:
        return ""
    return str(confirmation).rsplit(".", 1)[-1].lower()


class TransactionSubmitter:
    """Signs adapter-built transactions and sends them through the RPC scheduler.

    In dry-run mode the signed transaction is simulated instead of sent, and the
    result is flagged as simulated.
    """

    def __init__(
        self,
        *,
        scheduler: RpcRequestScheduler,
        logger: logging.Logger,
        dry_run: bool = True,
        skip_preflight: bool = False,
        confirm_timeout_seconds: float = 45.0,
        confirm_poll_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._scheduler = scheduler
        self._logger = logger
        self._dry_run = dry_run
        self._skip_preflight = skip_preflight
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._confirm_poll_interval_seconds = confirm_poll_interval_seconds
        self._clock = clock
        self._sleep = sleep

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def submit(self, bundle: UnsignedSwapBundle, *, wallet: WalletSigner) -> SwapExecution:
        if not bundle.transactions:
            raise InvalidArgumentError(f"{bundle.adapter_name} returned no transactions to sign")

        signatures: list[str] = []
        for encoded in bundle.transactions:
            signed = wallet.sign_transaction(decode_transaction(encoded))
            if self._dry_run:
                await self._simulate(signed, adapter_name=bundle.adapter_name)
                signatures.append(str(signed.signatures[0]))
                continue

            signature = await self._scheduler.call(
                RpcOperation.SEND_RAW_TRANSACTION,
                bytes(signed),
                self._skip_preflight,
            )
            await self.wait_for_confirmation(str(signature))
            signatures.append(str(signature))

        log_event(
            self._logger,
            level="info",
            event="swap_transaction_simulated" if self._dry_run else "swap_transaction_confirmed",
            message="Swap transaction simulated" if self._dry_run else "Swap transaction confirmed",
            adapter=bundle.adapter_name,
            tx_hash=signatures[-1],
            transactions=len(signatures),
        )
        return SwapExecution(
            adapter_name=bundle.adapter_name,
            success=True,
            tx_hash=signatures[-1],
            output_amount=bundle.quote.amount_out,
            simulated=self._dry_run,
        )

    async def _simulate(self, transaction: VersionedTransaction, *, adapter_name: str) -> None:
        result = await self._scheduler.call(RpcOperation.SIMULATE_TRANSACTION, transaction)
        error = getattr(result, "err", None)
        if error is not None:
            logs = list(getattr(result, "logs", None) or [])[-5:]
            raise TransactionFailedError(f"{adapter_name} swap simulation failed: {error} logs={logs}")

    async def wait_for_confirmation(self, signature: str) -> None:
        deadline = self._clock() + self._confirm_timeout_seconds
        while self._clock() < deadline:
            statuses = await self._scheduler.call(RpcOperation.GET_SIGNATURE_STATUSES, [signature])
            status = statuses[0] if statuses else None
            if status is not None:
                error = getattr(status, "err", None)
                if error is not None:
                    raise TransactionFailedError(
                        f"Transaction {signature} failed on-chain: {error}",
                        signature=signature,
                    )
                if _status_label(status) in CONFIRMED_STATUSES:
                    return
            await self._sleep(self._confirm_poll_interval_seconds)

        raise TransactionFailedError(
            f"Transaction {signature} was not confirmed within {self._confirm_timeout_seconds:.0f}s",
            signature=signature,
        )
