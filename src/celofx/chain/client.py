"""Celo JSON-RPC client.

Reads go through ``eth_call``; writes are signed locally with eth_account
and broadcast with ``eth_sendRawTransaction``. Every RPC call has its own
timeout, is retried a bounded number of times per endpoint, and falls
through to the next configured endpoint on transport failure.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
from eth_account.signers.local import LocalAccount
from web3 import Web3

from celofx.chain.abi import decode_output, encode_call
from celofx.errors import (
    BroadcastUncertain,
    CeloFXError,
    ExecutionFailed,
    TransientInfrastructureFailure,
)

logger = logging.getLogger(__name__)

GAS_LIMIT_MULTIPLIER_PCT = 120

# Node answers to a rebroadcast of bytes it already pooled.
ALREADY_KNOWN_RE = re.compile(r"already known|known transaction", re.IGNORECASE)
# Node answers meaning some transaction with this nonce is pooled or mined.
NONCE_USED_RE = re.compile(
    r"nonce too low|replacement transaction underpriced", re.IGNORECASE
)

# Called with the hash of a signed transaction before it is broadcast.
SignedHook = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class ChainCall:
    """One transaction to submit.

    ``record_as`` names the trade field the resulting hash is stored in.
    """

    label: str
    to: str
    data: str
    record_as: Optional[str] = None


@dataclass
class TxReceipt:
    tx_hash: str
    status: int
    block_number: int
    from_address: str = ""
    to_address: Optional[str] = None
    logs: list[dict] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, data: dict) -> "TxReceipt":
        return cls(
            tx_hash=data["transactionHash"],
            status=int(data.get("status", "0x0"), 16),
            block_number=int(data.get("blockNumber", "0x0"), 16),
            from_address=data.get("from", ""),
            to_address=data.get("to"),
            logs=list(data.get("logs") or []),
        )


class ChainClient(ABC):
    """Narrow chain interface used by venues, the orchestrator and the verifier."""

    @property
    @abstractmethod
    def address(self) -> Optional[str]:
        """Address transactions are sent from, if a signer is attached."""
        pass

    @abstractmethod
    async def read_contract(
        self,
        contract: str,
        signature: str,
        args: Sequence[Any] = (),
        output_types: Sequence[str] = (),
    ) -> tuple:
        """Call a view function and decode its outputs."""
        pass

    @abstractmethod
    async def submit_transaction(
        self, call: ChainCall, on_signed: Optional[SignedHook] = None
    ) -> str:
        """Sign and broadcast a call. Returns the transaction hash.

        ``on_signed`` receives the hash before the transaction leaves the
        process. Errors that leave the transaction possibly in flight are
        raised as BroadcastUncertain; any other error means nothing was
        broadcast.
        """
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        pass

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def gas_price(self) -> int:
        """Current gas price in wei."""
        pass

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        pass

    async def balance_of(self, token: str, owner: str) -> int:
        """ERC20 balance in base units."""
        (balance,) = await self.read_contract(
            token, "balanceOf(address)", [Web3.to_checksum_address(owner)], ["uint256"]
        )
        return balance


class JsonRpcChainClient(ChainClient):
    """ChainClient over raw JSON-RPC with endpoint fallback."""

    # Shared across instances so that concurrent requests from the same
    # wallet never reuse a nonce.
    _nonce_cache: dict[str, int] = {}
    _nonce_locks: dict[str, asyncio.Lock] = {}

    def __init__(
        self,
        rpc_urls: list[str],
        chain_id: int = 42220,
        timeout: float = 10.0,
        retry_count: int = 1,
        account: Optional[LocalAccount] = None,
        receipt_timeout: float = 120.0,
        poll_interval: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not rpc_urls:
            raise ValueError("At least one RPC URL is required")
        self.rpc_urls = rpc_urls
        self.chain_id = chain_id
        self.timeout = timeout
        self.retry_count = retry_count
        self.account = account
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._transport = transport
        self._request_id = 0

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account else None

    def with_account(self, account: LocalAccount) -> "JsonRpcChainClient":
        """Clone this client with a signer attached."""
        return JsonRpcChainClient(
            rpc_urls=self.rpc_urls,
            chain_id=self.chain_id,
            timeout=self.timeout,
            retry_count=self.retry_count,
            account=account,
            receipt_timeout=self.receipt_timeout,
            poll_interval=self.poll_interval,
            transport=self._transport,
        )

    async def rpc(self, method: str, params: list) -> Any:
        """Perform a JSON-RPC call, falling back across endpoints.

        Raises:
            ExecutionFailed: the node answered with a JSON-RPC error
            TransientInfrastructureFailure: no endpoint answered
        """
        last_error: Optional[Exception] = None
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": self._request_id}

        for url in self.rpc_urls:
            for attempt in range(self.retry_count + 1):
                try:
                    async with httpx.AsyncClient(
                        timeout=self.timeout, transport=self._transport
                    ) as client:
                        response = await client.post(url, json=payload)
                        response.raise_for_status()
                        data = response.json()
                except (httpx.HTTPError, ValueError) as e:
                    last_error = e
                    logger.warning(f"{method} via {url} failed (attempt {attempt + 1}): {e}")
                    continue

                if data.get("error"):
                    error = data["error"]
                    message = error.get("message", error) if isinstance(error, dict) else error
                    raise ExecutionFailed(f"{method} rejected: {message}")
                return data.get("result")

        raise TransientInfrastructureFailure(
            f"All RPC endpoints failed for {method}: {last_error}",
            next_step="Retry shortly; check CELO_RPC_URL and fallbacks",
        )

    async def read_contract(
        self,
        contract: str,
        signature: str,
        args: Sequence[Any] = (),
        output_types: Sequence[str] = (),
    ) -> tuple:
        data = encode_call(signature, args)
        result = await self.rpc("eth_call", [{"to": contract, "data": data}, "latest"])
        if not output_types:
            return ()
        return decode_output(output_types, result)

    async def gas_price(self) -> int:
        return int(await self.rpc("eth_gasPrice", []), 16)

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        result = await self.rpc("eth_getTransactionReceipt", [tx_hash])
        return TxReceipt.from_rpc(result) if result else None

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return await self.rpc("eth_getTransactionByHash", [tx_hash])

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout
        last_error: Optional[Exception] = None
        while True:
            try:
                receipt = await self.get_receipt(tx_hash)
            except TransientInfrastructureFailure as e:
                logger.warning(f"Receipt poll for {tx_hash} failed, still waiting: {e}")
                last_error = e
                receipt = None
            if receipt is not None:
                return receipt
            if loop.time() >= deadline:
                reason = f" (last error: {last_error})" if last_error else ""
                raise TransientInfrastructureFailure(
                    f"Timed out waiting for receipt of {tx_hash}{reason}",
                    next_step=f"Check {tx_hash} on the explorer before retrying",
                )
            await asyncio.sleep(self.poll_interval)

    async def _next_nonce(self, address: str) -> int:
        lock = self._nonce_locks.setdefault(address, asyncio.Lock())
        async with lock:
            chain_nonce = int(await self.rpc("eth_getTransactionCount", [address, "pending"]), 16)
            next_nonce = max(chain_nonce, self._nonce_cache.get(address, 0))
            self._nonce_cache[address] = next_nonce + 1
            return next_nonce

    def _reset_nonce(self, address: str) -> None:
        self._nonce_cache.pop(address, None)

    async def _is_known(self, tx_hash: str) -> Optional[bool]:
        """Whether the node has the transaction; None when it cannot tell."""
        try:
            return await self.get_transaction(tx_hash) is not None
        except CeloFXError as e:
            logger.warning(f"Could not look up {tx_hash}: {e}")
            return None

    async def submit_transaction(
        self, call: ChainCall, on_signed: Optional[SignedHook] = None
    ) -> str:
        if self.account is None:
            raise ExecutionFailed("No signer attached to chain client")
        sender = self.account.address
        to = Web3.to_checksum_address(call.to)

        gas_price = await self.gas_price()
        estimate = await self.rpc(
            "eth_estimateGas", [{"from": sender, "to": to, "data": call.data}]
        )
        gas = int(estimate, 16) * GAS_LIMIT_MULTIPLIER_PCT // 100

        nonce = await self._next_nonce(sender)
        tx = {
            "to": to,
            "data": call.data,
            "value": 0,
            "gas": gas,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self.chain_id,
        }
        signed = self.account.sign_transaction(tx)
        tx_hash = Web3.to_hex(signed.hash)
        if on_signed is not None:
            await on_signed(tx_hash)

        try:
            await self.rpc("eth_sendRawTransaction", ["0x" + bytes(signed.raw_transaction).hex()])
        except ExecutionFailed as e:
            # A retried broadcast of bytes the node already accepted comes back as an error.
            if ALREADY_KNOWN_RE.search(str(e)) or await self._is_known(tx_hash):
                logger.warning(f"{call.label} tx {tx_hash} already known to the node: {e}")
            elif NONCE_USED_RE.search(str(e)):
                self._reset_nonce(sender)
                raise BroadcastUncertain(
                    f"Broadcast of {call.label} tx {tx_hash} uncertain: {e}", tx_hash=tx_hash
                ) from e
            else:
                self._reset_nonce(sender)
                raise
        except TransientInfrastructureFailure as e:
            if not await self._is_known(tx_hash):
                self._reset_nonce(sender)
                raise BroadcastUncertain(
                    f"Broadcast of {call.label} tx {tx_hash} uncertain: {e}", tx_hash=tx_hash
                ) from e
            logger.warning(f"{call.label} tx {tx_hash} reached the node despite: {e}")

        logger.info(f"Submitted {call.label} tx {tx_hash} from {sender} (nonce {nonce})")
        return tx_hash
