"""Service container wiring settings into the execution pipeline."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from celofx.chain.client import ChainClient, JsonRpcChainClient
from celofx.chain.tokens import get_token
from celofx.config import Settings
from celofx.execution import (
    ArbitrageService,
    ExecutionContext,
    ExecutionPolicy,
    RemittanceService,
    SwapService,
    WalletResolver,
)
from celofx.notifications.dispatcher import BackgroundDispatcher, OpsNotifier
from celofx.notifications.telegram import TelegramNotifier
from celofx.orders import OrderService
from celofx.providers.prices import HttpPriceFeed, PriceFeed
from celofx.routing import GasOracle, MentoVenue, QuoteAggregator, QuoteVenue, UniswapVenue
from celofx.security import (
    IdempotencyCache,
    KeyValueStore,
    MemoryStore,
    NonceLedger,
    RequestAuthenticator,
    UpstashStore,
)
from celofx.vault import DepositVerifier, LedgerAccountant, VaultService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the routers need, built once per application."""

    settings: Settings
    authenticator: RequestAuthenticator
    idempotency: IdempotencyCache
    arbitrage: ArbitrageService
    swap: SwapService
    remittance: RemittanceService
    vault: VaultService
    orders: OrderService
    dispatcher: BackgroundDispatcher


def build_stores(settings: Settings) -> tuple[KeyValueStore, KeyValueStore]:
    """Nonce and idempotency stores: shared Upstash when configured, else in-process."""
    if settings.has_shared_store:
        store = UpstashStore(settings.upstash_redis_rest_url, settings.upstash_redis_rest_token)
        return store, store
    if settings.is_production:
        logger.warning(
            "No shared store configured: nonces and idempotency keys are per-process only"
        )
    return (
        MemoryStore(max_entries=settings.nonce_max_entries),
        MemoryStore(max_entries=settings.idempotency_max_entries),
    )


def build_services(
    settings: Settings,
    chain: Optional[ChainClient] = None,
    venues: Optional[list[QuoteVenue]] = None,
    price_feed: Optional[PriceFeed] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    stores: Optional[tuple[KeyValueStore, KeyValueStore]] = None,
    wallets: Optional[WalletResolver] = None,
) -> Services:
    """Build the service graph from settings.

    Every collaborator can be injected, which is how tests swap in fakes.
    """
    if chain is None:
        chain = JsonRpcChainClient(
            rpc_urls=settings.rpc_urls,
            chain_id=settings.chain_id,
            timeout=settings.rpc_timeout_seconds,
            retry_count=settings.rpc_retry_count,
            receipt_timeout=settings.receipt_timeout_seconds,
            poll_interval=settings.receipt_poll_interval,
        )
    if venues is None:
        venues = [MentoVenue(chain), UniswapVenue(chain)]
    if price_feed is None:
        price_feed = HttpPriceFeed(
            forex_url=settings.forex_api_url,
            crypto_url=settings.crypto_api_url,
            timeout=settings.price_timeout_seconds,
        )
    if wallets is None:
        wallets = WalletResolver(
            chain_factory=chain.with_account,
            agent_private_key=settings.agent_private_key,
            user_wallet_secret=settings.user_agent_wallet_secret,
        )
    nonce_store, idempotency_store = stores or build_stores(settings)

    nonce_ledger = NonceLedger(
        nonce_store,
        max_clock_skew_seconds=settings.max_clock_skew_seconds,
        ttl_seconds=settings.nonce_ttl_seconds,
    )
    authenticator = RequestAuthenticator(
        nonce_ledger,
        agent_secret=settings.agent_api_secret,
        allow_bearer=settings.agent_api_allow_bearer,
    )

    dispatcher = BackgroundDispatcher()
    telegram = None
    if settings.telegram_bot_token and settings.telegram_ops_chat_id:
        telegram = TelegramNotifier(settings.telegram_ops_chat_id)
    notifier = OpsNotifier(dispatcher, webhook_url=settings.notify_webhook_url, telegram=telegram)

    ctx = ExecutionContext(
        settings=settings,
        aggregator=QuoteAggregator(venues, timeout=settings.quote_timeout_seconds),
        price_feed=price_feed,
        gas_oracle=GasOracle(chain, price_feed, gas_units=settings.swap_gas_estimate),
        wallets=wallets,
        policy=ExecutionPolicy(
            session_factory,
            paused=settings.agent_paused,
            max_daily_volume=settings.max_daily_volume,
        ),
        session_factory=session_factory,
        notifier=notifier,
    )

    vault_token = get_token(settings.vault_asset)
    vault = VaultService(
        accountant=LedgerAccountant(vault_token, session_factory, seed_pnl=settings.vault_seed_pnl),
        verifier=DepositVerifier(chain, settings.custody_address, vault_token),
        wallets=wallets,
        session_factory=session_factory,
    )

    return Services(
        settings=settings,
        authenticator=authenticator,
        idempotency=IdempotencyCache(idempotency_store, ttl_seconds=settings.idempotency_ttl_seconds),
        arbitrage=ArbitrageService(ctx),
        swap=SwapService(ctx),
        remittance=RemittanceService(ctx),
        vault=vault,
        orders=OrderService(session_factory),
        dispatcher=dispatcher,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the application's services."""
    return request.app.state.services
