from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from solana.rpc.commitment import Commitment
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from swapcore.errors import InvalidArgumentError, normalize_error

DEFAULT_COMMITMENT = "confirmed"
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")

RpcHandler = Callable[..., Awaitable[Any]]


class RpcOperation(str, Enum):
    GET_ACCOUNT_INFO = "getAccountInfo"
    GET_BALANCE = "getBalance"
    GET_LATEST_BLOCKHASH = "getLatestBlockhash"
    GET_TOKEN_ACCOUNTS_BY_OWNER = "getTokenAccountsByOwner"
    GET_PARSED_TOKEN_ACCOUNTS_BY_OWNER = "getParsedTokenAccountsByOwner"
    GET_TOKEN_SUPPLY = "getTokenSupply"
    GET_TOKEN_LARGEST_ACCOUNTS = "getTokenLargestAccounts"
    GET_SIGNATURES_FOR_ADDRESS = "getSignaturesForAddress"
    GET_TRANSACTION = "getTransaction"
    GET_SIGNATURE_STATUSES = "getSignatureStatuses"
    SEND_RAW_TRANSACTION = "sendRawTransaction"
    SIMULATE_TRANSACTION = "simulateTransaction"


@dataclass(slots=True, frozen=True)
class OperationSpec:
    handler: RpcHandler
    commitment_index: int | None = None


def _pubkey(value: Any) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(str(value))
    except ValueError as error:
        raise InvalidArgumentError(f"Invalid public key: {value!r}") from error


def _signature(value: Any) -> Signature:
    if isinstance(value, Signature):
        return value
    try:
        return Signature.from_string(str(value))
    except ValueError as error:
        raise InvalidArgumentError(f"Invalid transaction signature: {value!r}") from error


def _unwrap(response: Any) -> Any:
    if hasattr(response, "value"):
        return response.value
    # solana-py hands back RPC error objects instead of raising for JSON-RPC errors.
    raise normalize_error(RuntimeError(f"RPC error response: {response}"))


def _token_opts(mint: Any) -> TokenAccountOpts:
    if mint is None:
        return TokenAccountOpts(program_id=TOKEN_PROGRAM_ID)
    return TokenAccountOpts(mint=_pubkey(mint))


async def _get_account_info(client: Any, address: Any, commitment: str = DEFAULT_COMMITMENT) -> Any:
    return _unwrap(await client.get_account_info(_pubkey(address), commitment=Commitment(commitment)))


async def _get_balance(client: Any, address: Any, commitment: str = DEFAULT_COMMITMENT) -> Any:
    return _unwrap(await client.get_balance(_pubkey(address), commitment=Commitment(commitment)))


async def _get_latest_blockhash(client: Any, commitment: str = DEFAULT_COMMITMENT) -> Any:
    return _unwrap(await client.get_latest_blockhash(commitment=Commitment(commitment)))


async def _get_token_accounts_by_owner(
    client: Any,
    owner: Any,
    mint: Any = None,
    commitment: str = DEFAULT_COMMITMENT,
) -> Any:
    response = await client.get_token_accounts_by_owner(
        _pubkey(owner),
        _token_opts(mint),
        commitment=Commitment(commitment),
    )
    return _unwrap(response)


async def _get_parsed_token_accounts_by_owner(
    client: Any,
    owner: Any,
    mint: Any = None,
    commitment: str = DEFAULT_COMMITMENT,
) -> Any:
    response = await client.get_token_accounts_by_owner_json_parsed(
        _pubkey(owner),
        _token_opts(mint),
        commitment=Commitment(commitment),
    )
    return _unwrap(response)


async def _get_token_supply(client: Any, mint: Any, commitment: str = DEFAULT_COMMITMENT) -> Any:
    return _unwrap(await client.get_token_supply(_pubkey(mint), commitment=Commitment(commitment)))


async def _get_token_largest_accounts(client: Any, mint: Any, commitment: str = DEFAULT_COMMITMENT) -> Any:
    return _unwrap(await client.get_token_largest_accounts(_pubkey(mint), commitment=Commitment(commitment)))


async def _get_signatures_for_address(client: Any, address: Any, limit: int = 10) -> Any:
    return _unwrap(await client.get_signatures_for_address(_pubkey(address), limit=int(limit)))


async def _get_transaction(client: Any, signature: Any, commitment: str = DEFAULT_COMMITMENT) -> Any:
    response = await client.get_transaction(
        _signature(signature),
        encoding="jsonParsed",
        commitment=Commitment(commitment),
        max_supported_transaction_version=0,
    )
    return _unwrap(response)


async def _get_signature_statuses(client: Any, signatures: Any) -> Any:
    if isinstance(signatures, (str, Signature)):
        signatures = [signatures]
    parsed = [_signature(item) for item in signatures]
    return _unwrap(await client.get_signature_statuses(parsed, search_transaction_history=False))


async def _send_raw_transaction(client: Any, raw_transaction: bytes, skip_preflight: bool = False) -> Any:
    if not isinstance(raw_transaction, (bytes, bytearray)):
        raise InvalidArgumentError("Raw transaction must be bytes")
    opts = TxOpts(skip_preflight=bool(skip_preflight), preflight_commitment=Commitment(DEFAULT_COMMITMENT))
    return _unwrap(await client.send_raw_transaction(bytes(raw_transaction), opts=opts))


async def _simulate_transaction(client: Any, transaction: VersionedTransaction) -> Any:
    if not isinstance(transaction, VersionedTransaction):
        raise InvalidArgumentError("Simulation requires a VersionedTransaction")
    return _unwrap(await client.simulate_transaction(transaction, sig_verify=True))


OPERATIONS: dict[RpcOperation, OperationSpec] = {
    RpcOperation.GET_ACCOUNT_INFO: OperationSpec(_get_account_info, commitment_index=1),
    RpcOperation.GET_BALANCE: OperationSpec(_get_balance, commitment_index=1),
    RpcOperation.GET_LATEST_BLOCKHASH: OperationSpec(_get_latest_blockhash, commitment_index=0),
    RpcOperation.GET_TOKEN_ACCOUNTS_BY_OWNER: OperationSpec(_get_token_accounts_by_owner, commitment_index=2),
    RpcOperation.GET_PARSED_TOKEN_ACCOUNTS_BY_OWNER: OperationSpec(
        _get_parsed_token_accounts_by_owner,
        commitment_index=2,
    ),
    RpcOperation.GET_TOKEN_SUPPLY: OperationSpec(_get_token_supply, commitment_index=1),
    RpcOperation.GET_TOKEN_LARGEST_ACCOUNTS: OperationSpec(_get_token_largest_accounts, commitment_index=1),
    RpcOperation.GET_SIGNATURES_FOR_ADDRESS: OperationSpec(_get_signatures_for_address),
    RpcOperation.GET_TRANSACTION: OperationSpec(_get_transaction, commitment_index=1),
    RpcOperation.GET_SIGNATURE_STATUSES: OperationSpec(_get_signature_statuses),
    RpcOperation.SEND_RAW_TRANSACTION: OperationSpec(_send_raw_transaction),
    RpcOperation.SIMULATE_TRANSACTION: OperationSpec(_simulate_transaction),
}


def prepare_arguments(operation: RpcOperation, args: tuple[Any, ...]) -> tuple[Any, ...]:
    """Strip trailing ``None`` arguments and fill the default commitment where one is expected."""
    entry = OPERATIONS.get(operation)
    if entry is None:
        raise InvalidArgumentError(f"Unsupported RPC operation: {operation!r}")

    cleaned = list(args)
    while cleaned and cleaned[-1] is None:
        cleaned.pop()

    index = entry.commitment_index
    if index is not None:
        while len(cleaned) <= index:
            cleaned.append(None)
        if cleaned[index] is None:
            cleaned[index] = DEFAULT_COMMITMENT
    return tuple(cleaned)
