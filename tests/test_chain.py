"""Tests for ABI helpers, tokens, key derivation and the JSON-RPC client."""

import json
from decimal import Decimal

import httpx
import pytest
from eth_account import Account
from web3 import Web3

from celofx.chain.abi import TRANSFER_EVENT, decode_log, split_types
from celofx.chain.client import ChainCall, JsonRpcChainClient, TxReceipt
from celofx.chain.signing import derive_user_wallet, is_address, load_account
from celofx.chain.tokens import TOKENS, from_base_units, get_token, to_base_units
from celofx.errors import (
    BroadcastUncertain,
    ConfigurationError,
    ExecutionFailed,
    TransientInfrastructureFailure,
    ValidationError,
)
from celofx.execution.orchestrator import received_amount

from fakes import transfer_log

SENDER = "0x" + "a1" * 20
RECEIVER = "0x" + "b2" * 20


def rpc_transport(results: dict, calls: list, failing_hosts=()):
    """Mock JSON-RPC node answering ``results[method]``."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        calls.append((request.url.host, payload["method"], payload["params"]))
        if request.url.host in failing_hosts:
            return httpx.Response(502, text="bad gateway")
        result = results[payload["method"]]
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **result})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    return httpx.MockTransport(handler)


class TestAbi:
    """Tests for ABI helpers."""

    def test_split_types_keeps_tuples(self):
        assert split_types("address,(uint256,bool),bytes32") == [
            "address",
            "(uint256,bool)",
            "bytes32",
        ]

    def test_decode_transfer_log(self):
        token = TOKENS["cUSD"].address
        decoded = decode_log(TRANSFER_EVENT, transfer_log(token, SENDER, RECEIVER, 10**18))

        assert decoded.event == "Transfer"
        assert decoded.address == token
        assert decoded.args["from"].lower() == SENDER
        assert decoded.args["to"].lower() == RECEIVER
        assert decoded.args["value"] == 10**18
        assert decoded.log_index == 0

    def test_decode_other_event_returns_none(self):
        log = transfer_log(TOKENS["cUSD"].address, SENDER, RECEIVER, 1)
        log["topics"][0] = "0x" + "00" * 32

        assert decode_log(TRANSFER_EVENT, log) is None

    def test_received_amount_sums_matching_transfers(self):
        cusd, ceur = TOKENS["cUSD"], TOKENS["cEUR"]
        receipt = TxReceipt(
            tx_hash="0x01",
            status=1,
            block_number=1,
            logs=[
                transfer_log(ceur.address, SENDER, RECEIVER, 4 * 10**18),
                transfer_log(ceur.address, SENDER, RECEIVER, 5 * 10**17),
                transfer_log(ceur.address, RECEIVER, SENDER, 7 * 10**18),
                transfer_log(cusd.address, SENDER, RECEIVER, 9 * 10**18),
            ],
        )

        assert received_amount(receipt, ceur, RECEIVER) == Decimal("4.5")
        assert received_amount(receipt, TOKENS["cREAL"], RECEIVER) is None


class TestTokens:
    """Tests for token lookup and unit conversion."""

    def test_whitelist(self):
        assert get_token("cUSD").decimals == 18
        with pytest.raises(ValidationError):
            get_token("cUSD", allowed=["cEUR"])
        with pytest.raises(ValidationError):
            get_token("DOGE")

    def test_exact_conversion(self):
        """Exact mode refuses to drop precision."""
        assert to_base_units(Decimal("1.5"), 6, exact=True) == 1_500_000
        assert to_base_units(Decimal("1.0000005"), 6) == 1_000_000
        with pytest.raises(ValidationError):
            to_base_units(Decimal("1.0000005"), 6, exact=True)
        assert from_base_units(1_500_000, 6) == Decimal("1.5")


class TestSigning:
    """Tests for account loading and execution wallet derivation."""

    def test_derived_wallet_is_deterministic(self):
        """Derivation is case-insensitive in the user address."""
        a = derive_user_wallet(SENDER, "secret")
        b = derive_user_wallet(SENDER.upper().replace("0X", "0x"), "secret")
        c = derive_user_wallet(RECEIVER, "secret")

        assert a.address == b.address
        assert a.address != c.address
        assert derive_user_wallet(SENDER, "other").address != a.address

    def test_missing_secrets(self):
        with pytest.raises(ConfigurationError):
            derive_user_wallet(SENDER, None)
        with pytest.raises(ConfigurationError):
            load_account("")

    def test_load_account_without_prefix(self):
        key = "55" * 32
        assert load_account(key).address == Account.from_key("0x" + key).address

    def test_is_address(self):
        assert is_address(SENDER)
        assert not is_address(SENDER[:-1])
        assert not is_address(None)


class TestJsonRpcChainClient:
    """Tests for endpoint fallback and transaction submission."""

    @pytest.mark.asyncio
    async def test_falls_back_to_next_endpoint(self):
        calls = []
        client = JsonRpcChainClient(
            rpc_urls=["https://primary.test", "https://fallback.test"],
            retry_count=1,
            transport=rpc_transport({"eth_gasPrice": "0x12a05f200"}, calls, {"primary.test"}),
        )

        assert await client.gas_price() == 5 * 10**9
        assert [host for host, _, _ in calls] == ["primary.test", "primary.test", "fallback.test"]

    @pytest.mark.asyncio
    async def test_all_endpoints_down(self):
        calls = []
        client = JsonRpcChainClient(
            rpc_urls=["https://a.test", "https://b.test"],
            retry_count=0,
            transport=rpc_transport({}, calls, {"a.test", "b.test"}),
        )

        with pytest.raises(TransientInfrastructureFailure) as exc_info:
            await client.gas_price()
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_rpc_error_is_not_retried(self):
        """A node-level rejection is final, not an outage."""
        calls = []
        client = JsonRpcChainClient(
            rpc_urls=["https://a.test", "https://b.test"],
            transport=rpc_transport(
                {"eth_call": {"error": {"code": -32000, "message": "execution reverted"}}}, calls
            ),
        )

        with pytest.raises(ExecutionFailed, match="execution reverted"):
            await client.read_contract(TOKENS["cUSD"].address, "balanceOf(address)", [SENDER],
                                       ["uint256"])
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_receipt_timeout(self):
        calls = []
        client = JsonRpcChainClient(
            rpc_urls=["https://a.test"],
            receipt_timeout=0,
            transport=rpc_transport({"eth_getTransactionReceipt": None}, calls),
        )

        with pytest.raises(TransientInfrastructureFailure, match="Timed out"):
            await client.wait_for_receipt("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_submit_uses_increasing_nonces(self):
        """Back-to-back submissions never reuse a nonce."""
        calls = []
        account = Account.from_key("0x" + "44" * 32)
        client = JsonRpcChainClient(
            rpc_urls=["https://a.test"],
            transport=rpc_transport(
                {
                    "eth_gasPrice": "0x12a05f200",
                    "eth_estimateGas": "0x5208",
                    "eth_getTransactionCount": "0x0",
                    "eth_sendRawTransaction": "0x" + "ab" * 32,
                },
                calls,
            ),
        ).with_account(account)
        call = ChainCall("approve", TOKENS["cUSD"].address, "0x")

        first = await client.submit_transaction(call)
        await client.submit_transaction(call)

        raw = [params[0] for _, method, params in calls if method == "eth_sendRawTransaction"]
        assert len(raw) == 2
        assert raw[0] != raw[1]
        assert first == Web3.to_hex(Web3.keccak(hexstr=raw[0]))
        assert JsonRpcChainClient._nonce_cache[account.address] == 2

    @pytest.mark.asyncio
    async def test_submit_requires_signer(self):
        client = JsonRpcChainClient(rpc_urls=["https://a.test"])

        with pytest.raises(ExecutionFailed):
            await client.submit_transaction(ChainCall("approve", TOKENS["cUSD"].address, "0x"))


def node_transport(calls: list, send_replies: list, known: bool = False):
    """Mock node whose broadcasts answer ``send_replies`` in order.

    A reply that is an exception is raised as a transport failure.
    """
    replies = iter(send_replies)
    results = {
        "eth_gasPrice": "0x12a05f200",
        "eth_estimateGas": "0x5208",
        "eth_getTransactionCount": "0x0",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method = payload["method"]
        calls.append((request.url.host, method, payload["params"]))
        envelope = {"jsonrpc": "2.0", "id": payload["id"]}
        if method == "eth_sendRawTransaction":
            reply = next(replies)
            if isinstance(reply, Exception):
                raise reply
            return httpx.Response(200, json={**envelope, **reply})
        if method == "eth_getTransactionByHash":
            found = {"hash": payload["params"][0]} if known else None
            return httpx.Response(200, json={**envelope, "result": found})
        if method == "eth_getTransactionReceipt":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={**envelope, "result": results[method]})

    return httpx.MockTransport(handler)


def broadcasts(calls: list) -> list[str]:
    return [params[0] for _, method, params in calls if method == "eth_sendRawTransaction"]


class TestBroadcast:
    """Tests for the window between signing and the node's answer."""

    def _client(self, key_byte: str, transport, retry_count: int = 1) -> JsonRpcChainClient:
        account = Account.from_key("0x" + key_byte * 32)
        JsonRpcChainClient._nonce_cache.pop(account.address, None)
        return JsonRpcChainClient(
            rpc_urls=["https://node.test"], retry_count=retry_count, transport=transport
        ).with_account(account)

    @pytest.mark.asyncio
    async def test_timeout_then_already_known_is_success(self):
        """The node accepted the first send; the retry must not turn that into a failure."""
        calls = []
        timeout = httpx.ReadTimeout("read timed out")
        client = self._client(
            "61",
            node_transport(
                calls, [timeout, {"error": {"code": -32000, "message": "already known"}}]
            ),
        )
        signed = []

        async def on_signed(tx_hash: str) -> None:
            signed.append((tx_hash, len(broadcasts(calls))))

        tx_hash = await client.submit_transaction(
            ChainCall("swap", TOKENS["cUSD"].address, "0x"), on_signed=on_signed
        )

        raw = broadcasts(calls)
        assert len(raw) == 2
        assert raw[0] == raw[1]
        assert tx_hash == Web3.to_hex(Web3.keccak(hexstr=raw[0]))
        # The hash was handed out before anything was broadcast.
        assert signed == [(tx_hash, 0)]

    @pytest.mark.asyncio
    async def test_nonce_too_low_for_our_own_transaction(self):
        calls = []
        client = self._client(
            "62",
            node_transport(
                calls,
                [httpx.ReadTimeout("read timed out"),
                 {"error": {"code": -32000, "message": "nonce too low"}}],
                known=True,
            ),
        )

        tx_hash = await client.submit_transaction(ChainCall("swap", TOKENS["cUSD"].address, "0x"))

        assert tx_hash == Web3.to_hex(Web3.keccak(hexstr=broadcasts(calls)[0]))

    @pytest.mark.asyncio
    async def test_unanswered_broadcast_is_uncertain(self):
        """A send nobody answered may still land, so it counts as chain-mutating."""
        calls = []
        client = self._client(
            "63", node_transport(calls, [httpx.ReadTimeout("read timed out")]), retry_count=0
        )

        with pytest.raises(BroadcastUncertain) as exc_info:
            await client.submit_transaction(ChainCall("swap", TOKENS["cUSD"].address, "0x"))

        error = exc_info.value
        assert error.chain_mutated
        assert not error.retryable
        assert error.details["txHash"] == Web3.to_hex(Web3.keccak(hexstr=broadcasts(calls)[0]))
        assert client.address not in JsonRpcChainClient._nonce_cache

    @pytest.mark.asyncio
    async def test_rejected_broadcast_is_clean(self):
        calls = []
        client = self._client(
            "64",
            node_transport(
                calls, [{"error": {"code": -32000, "message": "insufficient funds for gas"}}]
            ),
        )

        with pytest.raises(ExecutionFailed) as exc_info:
            await client.submit_transaction(ChainCall("swap", TOKENS["cUSD"].address, "0x"))

        assert not isinstance(exc_info.value, BroadcastUncertain)
        assert not exc_info.value.chain_mutated
        assert len(broadcasts(calls)) == 1


class TestReceiptPolling:
    @pytest.mark.asyncio
    async def test_transient_poll_error_keeps_waiting(self):
        """One failed poll does not abandon a transaction that later confirms."""
        tx_hash = "0x" + "cd" * 32
        polls = []

        def handler(request: httpx.Request) -> httpx.Response:
            payload = json.loads(request.content)
            polls.append(payload["method"])
            if len(polls) == 1:
                return httpx.Response(503, text="unavailable")
            receipt = {"transactionHash": tx_hash, "status": "0x1", "blockNumber": "0x10"}
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": payload["id"], "result": receipt}
            )

        client = JsonRpcChainClient(
            rpc_urls=["https://node.test"],
            retry_count=0,
            receipt_timeout=5,
            poll_interval=0,
            transport=httpx.MockTransport(handler),
        )

        receipt = await client.wait_for_receipt(tx_hash)

        assert receipt.succeeded
        assert receipt.block_number == 16
        assert polls == ["eth_getTransactionReceipt", "eth_getTransactionReceipt"]

    @pytest.mark.asyncio
    async def test_poll_errors_until_deadline(self):
        calls = []
        client = JsonRpcChainClient(
            rpc_urls=["https://node.test"],
            retry_count=0,
            receipt_timeout=0,
            transport=node_transport(calls, []),
        )

        with pytest.raises(TransientInfrastructureFailure, match="last error"):
            await client.wait_for_receipt("0x" + "00" * 32)
