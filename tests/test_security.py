"""Tests for nonces, idempotency and request authentication."""

import asyncio
import json

import httpx
import pytest

from celofx.api.services import build_stores
from celofx.errors import (
    ConfigurationError,
    ReplayedOrExpiredNonce,
    TransientInfrastructureFailure,
    Unauthorized,
)
from celofx.security import (
    IdempotencyCache,
    MemoryStore,
    NonceLedger,
    RequestAuthenticator,
    UpstashStore,
)
from celofx.security.auth import (
    LABEL_SWAP,
    AgentCredentials,
    AuthMode,
    AuthRequest,
    WalletCredentials,
    build_signed_message,
    sign_agent_request,
)
from celofx.security.idempotency import MAX_TOKEN_LENGTH, CachedResponse, derive_idempotency_key

from conftest import AGENT_SECRET, USER_ADDRESS, USER_KEY, make_settings
from fakes import FakeClock, sign_text

OTHER_KEY = "0x" + "33" * 32
PATH = "/api/swap/execute"


def now_ms(clock: FakeClock) -> int:
    return int(clock() * 1000)


def agent_request(
    clock: FakeClock,
    body: bytes = b'{"fromToken":"cUSD"}',
    nonce: str = "agent-1",
    timestamp=None,
    signature=None,
    signed_body=None,
    authorization=None,
) -> AuthRequest:
    ts = str(timestamp if timestamp is not None else now_ms(clock))
    if signature is None:
        signature = sign_agent_request(
            AGENT_SECRET, ts, nonce, "POST", PATH, signed_body if signed_body is not None else body
        )
    return AuthRequest(
        mode=AuthMode.TRUSTED_AGENT,
        scope="swap-execute",
        label=LABEL_SWAP,
        agent=AgentCredentials(
            method="POST",
            path=PATH,
            body=body,
            signature=signature,
            timestamp=ts,
            nonce=nonce,
            authorization=authorization,
        ),
    )


def bearer_request(token: str) -> AuthRequest:
    return AuthRequest(
        mode=AuthMode.TRUSTED_AGENT,
        scope="swap-execute",
        label=LABEL_SWAP,
        agent=AgentCredentials(method="POST", path=PATH, body=b"{}", authorization=token),
    )


def wallet_request(
    clock: FakeClock,
    fields=None,
    signed_fields=None,
    nonce: str = "w-1",
    key: str = USER_KEY,
    signer: str = USER_ADDRESS,
    scope: str = "swap-execute",
) -> AuthRequest:
    fields = fields or [("fromToken", "cUSD"), ("toToken", "cEUR"), ("amount", "10")]
    ts = now_ms(clock)
    message = build_signed_message(
        LABEL_SWAP, "requester", signer, signed_fields or fields, nonce, ts
    )
    return AuthRequest(
        mode=AuthMode.WALLET_SIGNED,
        scope=scope,
        label=LABEL_SWAP,
        signer_field="requester",
        fields=fields,
        wallet=WalletCredentials(
            signer=signer, signature=sign_text(key, message), nonce=nonce, timestamp=ts
        ),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def nonce_ledger(clock) -> NonceLedger:
    return NonceLedger(MemoryStore(clock=clock), clock=clock)


@pytest.fixture
def authenticator(nonce_ledger) -> RequestAuthenticator:
    return RequestAuthenticator(nonce_ledger, agent_secret=AGENT_SECRET)


class TestMemoryStore:
    """Tests for the in-process key-value store."""

    @pytest.mark.asyncio
    async def test_entry_expires_exactly_at_ttl(self, clock):
        """Entries are live strictly before their TTL and gone at it."""
        store = MemoryStore(clock=clock)
        await store.put("k", {"v": 1}, ttl_seconds=10)

        clock.advance(9.999)
        assert await store.get("k") == {"v": 1}

        clock.advance(0.001)
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_put_if_absent(self, clock):
        """Only the first writer of a live key wins."""
        store = MemoryStore(clock=clock)

        assert await store.put_if_absent("k", "first", 5) is True
        assert await store.put_if_absent("k", "second", 5) is False
        assert await store.get("k") == "first"

        clock.advance(5)
        assert await store.put_if_absent("k", "third", 5) is True

    @pytest.mark.asyncio
    async def test_prune_keeps_live_entries(self, clock):
        """Growing past max_entries drops only expired entries."""
        store = MemoryStore(max_entries=2, clock=clock)
        await store.put("old", 1, ttl_seconds=1)
        await store.put("live", 2, ttl_seconds=100)

        clock.advance(2)
        await store.put("new", 3, ttl_seconds=100)
        await store.put("newer", 4, ttl_seconds=100)

        assert await store.get("live") == 2
        assert await store.get("new") == 3
        assert await store.get("newer") == 4
        assert len(store) == 3

    @pytest.mark.asyncio
    async def test_expired_entries_pruned_on_interval(self, clock):
        """Keys that are never read again still leave the store once expired."""
        store = MemoryStore(clock=clock, prune_interval=60)
        for i in range(100):
            await store.put(f"k-{i}", True, ttl_seconds=10)
        assert len(store) == 100

        clock.advance(61)
        await store.put("fresh", True, ttl_seconds=10)

        assert len(store) == 1


class TestNonceLedger:
    """Tests for single-use nonces."""

    def test_ttl_must_cover_skew_window(self):
        """A TTL shorter than twice the skew would reopen nonces."""
        with pytest.raises(ValueError):
            NonceLedger(MemoryStore(), max_clock_skew_seconds=300, ttl_seconds=599)

    @pytest.mark.asyncio
    async def test_concurrent_consume_succeeds_once(self, nonce_ledger, clock):
        """Of many concurrent consumers exactly one wins."""
        ts = now_ms(clock)
        results = await asyncio.gather(
            *(nonce_ledger.consume("arb-execute", USER_ADDRESS, "n-1", ts) for _ in range(20))
        )

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_scope_and_signer_isolate_nonces(self, nonce_ledger, clock):
        """The same nonce may be used once per scope and per signer."""
        ts = now_ms(clock)

        assert await nonce_ledger.consume("arb-execute", USER_ADDRESS, "n-1", ts)
        assert await nonce_ledger.consume("swap-execute", USER_ADDRESS, "n-1", ts)
        assert await nonce_ledger.consume("arb-execute", "0x" + "ab" * 20, "n-1", ts)
        assert not await nonce_ledger.consume("arb-execute", USER_ADDRESS.lower(), "n-1", ts)

    @pytest.mark.asyncio
    async def test_skew_boundary(self, nonce_ledger, clock):
        """Timestamps exactly at the skew limit pass, one ms beyond fails."""
        ts = now_ms(clock)

        assert await nonce_ledger.consume("s", USER_ADDRESS, "edge-past", ts - 300_000)
        assert await nonce_ledger.consume("s", USER_ADDRESS, "edge-future", ts + 300_000)
        assert not await nonce_ledger.consume("s", USER_ADDRESS, "stale", ts - 300_001)
        assert not await nonce_ledger.consume("s", USER_ADDRESS, "future", ts + 300_001)

    @pytest.mark.asyncio
    async def test_invalid_nonces_rejected(self, nonce_ledger, clock):
        """Empty and overlong nonces are never consumed."""
        ts = now_ms(clock)

        assert not await nonce_ledger.consume("s", USER_ADDRESS, "", ts)
        assert not await nonce_ledger.consume("s", USER_ADDRESS, "   ", ts)
        assert not await nonce_ledger.consume("s", USER_ADDRESS, "x" * 129, ts)

    @pytest.mark.asyncio
    async def test_replay_rejected_until_timestamp_is_stale(self, nonce_ledger, clock):
        """A consumed nonce stays consumed for as long as its timestamp is acceptable."""
        ts = now_ms(clock)
        assert await nonce_ledger.consume("s", USER_ADDRESS, "n-1", ts)

        clock.advance(299)
        assert not await nonce_ledger.consume("s", USER_ADDRESS, "n-1", ts)

        clock.advance(2)
        assert not nonce_ledger.within_skew(ts)

    @pytest.mark.asyncio
    async def test_consumed_nonces_do_not_accumulate(self, clock):
        """Requests spread over hours keep the in-process nonce store small."""
        store = build_stores(make_settings())[0]
        store.clock = clock
        ledger = NonceLedger(store, clock=clock)

        for i in range(2000):
            assert await ledger.consume("swap-execute", USER_ADDRESS, f"n-{i}", now_ms(clock))
            clock.advance(3600)

        assert store.max_entries == 5000
        assert len(store) == 1


class TestIdempotency:
    """Tests for idempotency keys and the response cache."""

    def test_explicit_token_wins(self):
        """An explicit token keys the request regardless of signer and nonce."""
        assert derive_idempotency_key("arb-execute", "abc", "0xABC", "n") == "arb-execute:abc"

    def test_signer_and_nonce_fallback(self):
        """Without a token, signer and nonce form the key."""
        assert derive_idempotency_key("arb-execute", None, "0xABC", "n-1") == "arb-execute:0xabc:n-1"
        assert derive_idempotency_key("arb-execute", "  ", "0xABC", None) is None
        assert derive_idempotency_key("arb-execute") is None

    def test_token_is_truncated(self):
        key = derive_idempotency_key("s", "t" * 500)
        assert key == "s:" + "t" * MAX_TOKEN_LENGTH

    @pytest.mark.asyncio
    async def test_claim_then_put(self, clock):
        """A claimed key is not returned until its response is stored."""
        cache = IdempotencyCache(MemoryStore(clock=clock), ttl_seconds=900)

        assert await cache.claim("k") is True
        assert await cache.claim("k") is False
        assert await cache.get("k") is None

        await cache.put("k", CachedResponse(200, {"success": True, "tradeId": 7}))
        cached = await cache.get("k")
        assert cached.status_code == 200
        assert cached.body == {"success": True, "tradeId": 7}

    @pytest.mark.asyncio
    async def test_release_allows_retry(self, clock):
        cache = IdempotencyCache(MemoryStore(clock=clock))
        await cache.claim("k")
        await cache.release("k")

        assert await cache.claim("k") is True

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self, clock):
        """Responses are served for the TTL, never beyond it."""
        cache = IdempotencyCache(MemoryStore(max_entries=1, clock=clock), ttl_seconds=900)
        await cache.put("k", CachedResponse(200, {"ok": True}))

        clock.advance(899)
        assert await cache.get("k") is not None

        clock.advance(1)
        assert await cache.get("k") is None


class TestAgentAuthentication:
    """Tests for trusted agent HMAC and bearer authentication."""

    @pytest.mark.asyncio
    async def test_valid_hmac_accepted(self, authenticator, clock):
        authorized = await authenticator.authenticate(agent_request(clock))

        assert authorized.is_agent
        assert authorized.identity == "agent"
        assert authorized.method == "hmac"

    @pytest.mark.asyncio
    async def test_replayed_hmac_rejected(self, authenticator, clock):
        """The same signed request cannot be used twice."""
        await authenticator.authenticate(agent_request(clock))

        with pytest.raises(ReplayedOrExpiredNonce):
            await authenticator.authenticate(agent_request(clock))

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, authenticator, clock):
        with pytest.raises(ReplayedOrExpiredNonce):
            await authenticator.authenticate(
                agent_request(clock, timestamp=now_ms(clock) - 301_000)
            )

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, authenticator, clock):
        """The signature covers the raw body."""
        request = agent_request(clock, body=b'{"amount":"50"}', signed_body=b'{"amount":"5"}')

        with pytest.raises(Unauthorized):
            await authenticator.authenticate(request)

    @pytest.mark.asyncio
    async def test_forged_signature_does_not_burn_nonce(self, authenticator, clock):
        """A failed signature check leaves the nonce usable by the real agent."""
        with pytest.raises(Unauthorized):
            await authenticator.authenticate(agent_request(clock, signature="ab" * 32))

        authorized = await authenticator.authenticate(agent_request(clock))
        assert authorized.is_agent

    @pytest.mark.asyncio
    async def test_malformed_signature_rejected(self, authenticator, clock):
        with pytest.raises(Unauthorized):
            await authenticator.authenticate(agent_request(clock, signature="not-hex"))

    @pytest.mark.asyncio
    async def test_missing_secret_is_configuration_error(self, nonce_ledger, clock):
        """Agent mode without a configured secret is a server problem."""
        authenticator = RequestAuthenticator(nonce_ledger, agent_secret="")

        with pytest.raises(ConfigurationError) as exc_info:
            await authenticator.authenticate(agent_request(clock))
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_bearer_rejected_unless_enabled(self, authenticator):
        with pytest.raises(Unauthorized):
            await authenticator.authenticate(bearer_request(f"Bearer {AGENT_SECRET}"))

    @pytest.mark.asyncio
    async def test_bearer_accepted_when_enabled(self, nonce_ledger):
        authenticator = RequestAuthenticator(
            nonce_ledger, agent_secret=AGENT_SECRET, allow_bearer=True
        )

        authorized = await authenticator.authenticate(bearer_request(f"Bearer {AGENT_SECRET}"))
        assert authorized.method == "bearer"

        with pytest.raises(Unauthorized):
            await authenticator.authenticate(bearer_request("Bearer wrong"))

    def test_unauthorized_body_is_uniform(self):
        """Failures never reveal which check failed."""
        body = ReplayedOrExpiredNonce("nonce n-1 replayed").to_dict()

        assert body == {"error": "Unauthorized", "code": "UNAUTHORIZED", "retryable": False}
        assert json.dumps(body)


class TestWalletAuthentication:
    """Tests for wallet-signed requests."""

    @pytest.mark.asyncio
    async def test_valid_signature_accepted_once(self, authenticator, clock):
        authorized = await authenticator.authenticate(wallet_request(clock))

        assert authorized.mode == AuthMode.WALLET_SIGNED
        assert authorized.identity == USER_ADDRESS.lower()

        with pytest.raises(ReplayedOrExpiredNonce):
            await authenticator.authenticate(wallet_request(clock))

    @pytest.mark.asyncio
    async def test_signature_from_other_key_rejected(self, authenticator, clock):
        """Claiming someone else's address fails signature recovery."""
        with pytest.raises(Unauthorized):
            await authenticator.authenticate(wallet_request(clock, key=OTHER_KEY))

    @pytest.mark.asyncio
    async def test_signature_binds_parameters(self, authenticator, clock):
        """Changing any signed field invalidates the signature."""
        request = wallet_request(
            clock,
            fields=[("fromToken", "cUSD"), ("toToken", "cEUR"), ("amount", "50")],
            signed_fields=[("fromToken", "cUSD"), ("toToken", "cEUR"), ("amount", "10")],
        )

        with pytest.raises(Unauthorized):
            await authenticator.authenticate(request)

    @pytest.mark.asyncio
    async def test_invalid_signer_rejected(self, authenticator, clock):
        with pytest.raises(Unauthorized):
            await authenticator.authenticate(wallet_request(clock, signer="not-an-address"))

    @pytest.mark.asyncio
    async def test_nonce_reusable_across_scopes(self, authenticator, clock):
        await authenticator.authenticate(wallet_request(clock, scope="swap-execute"))
        authorized = await authenticator.authenticate(wallet_request(clock, scope="arb-execute"))

        assert authorized.identity == USER_ADDRESS.lower()

    def test_signed_message_layout(self):
        message = build_signed_message(
            "CeloFX Cross-DEX Execute",
            "requester",
            "0xAbC",
            [("pair", "cUSD/cEUR"), ("amount", 10), ("buyVenue", None)],
            "n-1",
            1700000000000,
        )

        assert message.split("\n") == [
            "CeloFX Cross-DEX Execute",
            "requester:0xAbC",
            "pair:cUSD/cEUR",
            "amount:10",
            "buyVenue:",
            "nonce:n-1",
            "timestamp:1700000000000",
        ]


def upstash_transport(data: dict, commands: list, fail: bool = False) -> httpx.MockTransport:
    """Upstash REST endpoint backed by a dict; expiry is not simulated."""

    def handler(request: httpx.Request) -> httpx.Response:
        command = json.loads(request.content)
        commands.append((request.headers["authorization"], command))
        if fail:
            return httpx.Response(500, json={"error": "boom"})
        name, key = command[0], command[1]
        if name == "GET":
            return httpx.Response(200, json={"result": data.get(key)})
        if name == "DEL":
            return httpx.Response(200, json={"result": int(data.pop(key, None) is not None)})
        if name == "SET":
            if "NX" in command and key in data:
                return httpx.Response(200, json={"result": None})
            data[key] = command[2]
            return httpx.Response(200, json={"result": "OK"})
        return httpx.Response(200, json={"error": f"unknown command {name}"})

    return httpx.MockTransport(handler)


class TestUpstashStore:
    """Tests for the shared REST store."""

    @pytest.mark.asyncio
    async def test_set_nx_with_ttl(self):
        data, commands = {}, []
        store = UpstashStore("https://redis.test/", "tok", transport=upstash_transport(data, commands))

        assert await store.put_if_absent("nonce:a", True, 600) is True
        assert await store.put_if_absent("nonce:a", True, 600) is False
        assert await store.get("nonce:a") is True

        auth, first = commands[0]
        assert auth == "Bearer tok"
        assert first == ["SET", "nonce:a", "true", "NX", "PX", "600000"]

    @pytest.mark.asyncio
    async def test_json_values_and_delete(self):
        data, commands = {}, []
        store = UpstashStore("https://redis.test", "tok", transport=upstash_transport(data, commands))

        await store.put("idem:k", {"status": 200, "body": {"ok": True}}, 1.5)
        assert await store.get("idem:k") == {"status": 200, "body": {"ok": True}}
        assert commands[0][1][-2:] == ["PX", "1500"]

        await store.delete("idem:k")
        assert await store.get("idem:k") is None

    @pytest.mark.asyncio
    async def test_outage_is_transient_failure(self):
        """A store outage rejects the request instead of skipping the replay check."""
        store = UpstashStore("https://redis.test", "tok", transport=upstash_transport({}, [], fail=True))
        ledger = NonceLedger(store)

        with pytest.raises(TransientInfrastructureFailure) as exc_info:
            await store.get("nonce:a")
        assert exc_info.value.retryable

        with pytest.raises(TransientInfrastructureFailure):
            await ledger.consume("swap-execute", USER_ADDRESS, "n-1", ledger.clock() * 1000)
