"""Application configuration using pydantic-settings.

Every tuning constant of the execution pipeline (clock skew, TTLs,
profitability thresholds, notional caps, RPC fallbacks) lives here so that
operators can adjust it through the environment or a ``.env`` file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AGENT_ADDRESS = "0x6652AcDc623b7CCd52E115161d84b949bAf3a303"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/celofx.db",
        description="Database connection URL",
    )

    # ======================
    # Agent credentials
    # ======================
    agent_api_secret: str = Field(
        default="", description="Shared secret for trusted agent requests (HMAC / bearer)"
    )
    agent_api_allow_bearer: bool = Field(
        default=False, description="Accept 'Authorization: Bearer <secret>' for agent requests"
    )
    agent_private_key: Optional[str] = Field(
        default=None, description="Private key of the agent execution and custody wallet"
    )
    user_agent_wallet_secret: Optional[str] = Field(
        default=None, description="Server secret used to derive per-user execution wallets"
    )
    agent_paused: bool = Field(
        default=False, description="Circuit breaker: reject all executions while set"
    )

    # ======================
    # Celo chain
    # ======================
    chain_id: int = Field(default=42220, description="Celo mainnet chain id")
    celo_rpc_url: str = Field(default="", description="Primary Celo RPC URL")
    celo_rpc_fallback_urls: str = Field(
        default="https://forno.celo.org,https://rpc.ankr.com/celo",
        description="Comma-separated fallback RPC URLs, tried in order",
    )
    rpc_timeout_seconds: float = Field(default=10.0, description="Per-call RPC timeout")
    rpc_retry_count: int = Field(default=1, description="Retries per RPC endpoint")
    receipt_timeout_seconds: float = Field(
        default=120.0, description="Maximum wait for a transaction receipt"
    )
    receipt_poll_interval: float = Field(default=2.0, description="Receipt polling interval")
    custody_address: str = Field(
        default=DEFAULT_AGENT_ADDRESS,
        description="Vault custody wallet (receives deposits, pays withdrawals)",
    )
    vault_asset: str = Field(default="cUSD", description="Token accepted by the vault")

    # ======================
    # Replay protection / idempotency
    # ======================
    max_clock_skew_seconds: int = Field(
        default=300, description="Maximum |now - timestamp| for signed requests"
    )
    nonce_ttl_seconds: int = Field(
        default=600, description="Nonce retention; must be at least twice the clock skew"
    )
    nonce_max_entries: int = Field(
        default=5000, description="In-process nonce count that triggers expiry pruning"
    )
    idempotency_ttl_seconds: int = Field(default=900, description="Cached response lifetime")
    idempotency_max_entries: int = Field(
        default=300, description="In-process cache size that triggers expiry pruning"
    )
    upstash_redis_rest_url: str = Field(default="", description="Shared store REST URL")
    upstash_redis_rest_token: str = Field(default="", description="Shared store REST token")

    # ======================
    # Profitability gates
    # ======================
    min_venue_spread_pct: float = Field(
        default=0.3, description="Minimum cross-venue spread for arbitrage (percent)"
    )
    min_expected_pnl_pct: float = Field(
        default=0.05, description="Minimum expected round-trip PnL for arbitrage (percent)"
    )
    base_spread_floor_pct: float = Field(
        default=0.1, description="Lowest spread a single swap may execute at (percent)"
    )
    slippage_buffer_pct: float = Field(default=0.02, description="Slippage buffer (percent)")
    safety_margin_pct: float = Field(default=0.02, description="Safety margin (percent)")
    min_abs_profit_usd: float = Field(
        default=0.03, description="Minimum absolute expected profit in USD"
    )
    swap_gas_estimate: int = Field(default=250_000, description="Gas units for approve + swap")
    max_gas_price_gwei: float = Field(default=50.0, description="Gas price ceiling")
    max_gas_to_profit_ratio: float = Field(
        default=0.5, description="Reject swaps whose gas eats this share of expected profit"
    )
    max_rate_drift_bps: int = Field(
        default=40, description="Maximum quote drift between gating and submission"
    )
    default_slippage_pct: int = Field(default=1, description="Slippage tolerance for minOut")
    quote_timeout_seconds: float = Field(default=8.0, description="Per-venue quote timeout")

    # ======================
    # Execution policy
    # ======================
    max_arb_amount: float = Field(default=50.0, description="Max notional per arbitrage")
    max_swap_amount: float = Field(default=50.0, description="Max notional per swap")
    max_remittance_amount: float = Field(default=500.0, description="Max notional per remittance")
    max_daily_volume: float = Field(default=500.0, description="Rolling 24h volume cap")
    allowed_tokens: str = Field(
        default="cUSD,cEUR,cREAL,USDC,USDT", description="Comma-separated tradeable tokens"
    )
    vault_seed_pnl: float = Field(
        default=1.2, description="Historical PnL credited to the vault before any trade"
    )

    # ======================
    # Price feeds
    # ======================
    forex_api_url: str = Field(
        default="https://api.frankfurter.dev/v1/latest", description="Forex rates endpoint"
    )
    crypto_api_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price",
        description="Crypto price endpoint",
    )
    price_timeout_seconds: float = Field(default=5.0, description="Price feed timeout")

    # ======================
    # Notifications
    # ======================
    notify_webhook_url: str = Field(default="", description="Ops webhook URL")
    telegram_bot_token: str = Field(default="", description="Telegram bot token from BotFather")
    telegram_ops_chat_id: str = Field(default="", description="Telegram chat for ops alerts")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() == "production"

    @property
    def rpc_urls(self) -> list[str]:
        """Primary RPC URL followed by the fallbacks, without duplicates."""
        urls = []
        for url in [self.celo_rpc_url, *self.celo_rpc_fallback_urls.split(",")]:
            url = url.strip()
            if url and url not in urls:
                urls.append(url)
        return urls

    @property
    def allowed_token_list(self) -> list[str]:
        """Parse the token whitelist."""
        return [t.strip() for t in self.allowed_tokens.split(",") if t.strip()]

    @property
    def has_shared_store(self) -> bool:
        """Check if the shared nonce/idempotency store is configured."""
        return bool(self.upstash_redis_rest_url and self.upstash_redis_rest_token)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "agent_api_secret": "***" if self.agent_api_secret else "(not set)",
            "agent_api_allow_bearer": self.agent_api_allow_bearer,
            "agent_private_key": "***" if self.agent_private_key else "(not set)",
            "user_agent_wallet_secret": "***" if self.user_agent_wallet_secret else "(not set)",
            "agent_paused": self.agent_paused,
            "chain": {
                "chain_id": self.chain_id,
                "rpc_urls": self.rpc_urls,
                "custody_address": self.custody_address,
                "vault_asset": self.vault_asset,
            },
            "replay": {
                "max_clock_skew_seconds": self.max_clock_skew_seconds,
                "nonce_ttl_seconds": self.nonce_ttl_seconds,
                "idempotency_ttl_seconds": self.idempotency_ttl_seconds,
                "shared_store": self.has_shared_store,
            },
            "thresholds": {
                "min_venue_spread_pct": self.min_venue_spread_pct,
                "min_expected_pnl_pct": self.min_expected_pnl_pct,
                "base_spread_floor_pct": self.base_spread_floor_pct,
                "max_gas_price_gwei": self.max_gas_price_gwei,
            },
            "policy": {
                "max_arb_amount": self.max_arb_amount,
                "max_swap_amount": self.max_swap_amount,
                "max_remittance_amount": self.max_remittance_amount,
                "max_daily_volume": self.max_daily_volume,
                "allowed_tokens": self.allowed_token_list,
            },
            "notifications": {
                "webhook": "***" if self.notify_webhook_url else "(not set)",
                "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
