"""Caller authentication under two trust models.

TRUSTED_AGENT: the operator's own automation. Proves possession of the
shared API secret by HMAC-signing the request (or, when explicitly enabled,
by presenting the secret as a bearer token).

WALLET_SIGNED: an end user. Proves control of an address by personal-signing
a canonical message that binds the action, its parameters, a nonce and a
timestamp.

The mode is chosen explicitly by the caller; credentials of the other mode
are ignored. Every failed check yields the same ``Unauthorized`` error.
"""

import hashlib
import hmac
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from celofx.chain.signing import is_address, recover_signer
from celofx.errors import ConfigurationError, ReplayedOrExpiredNonce, Unauthorized
from celofx.security.nonces import NonceLedger

logger = logging.getLogger(__name__)

HMAC_HEX_RE = re.compile(r"^[a-fA-F0-9]{64}$")
AGENT_NONCE_SCOPE = "agent-hmac"
AGENT_IDENTITY = "agent"

# Action labels heading each signed message
LABEL_ARBITRAGE = "CeloFX Cross-DEX Execute"
LABEL_SWAP = "CeloFX Arbitrage Execute"
LABEL_REMITTANCE = "CeloFX Remittance Execute"
LABEL_VAULT_DEPOSIT = "CeloFX Vault Deposit"
LABEL_VAULT_WITHDRAW = "CeloFX Vault Withdraw"
LABEL_ORDER_CREATE = "CeloFX Order Create"
LABEL_ORDER_CANCEL = "CeloFX Order Cancel"


class AuthMode(str, Enum):
    """Trust model a request claims."""

    TRUSTED_AGENT = "agent"
    WALLET_SIGNED = "wallet"


@dataclass(frozen=True)
class AgentCredentials:
    """Agent headers plus the request line they sign."""

    method: str
    path: str
    body: bytes
    signature: Optional[str] = None
    timestamp: Optional[str] = None
    nonce: Optional[str] = None
    authorization: Optional[str] = None


@dataclass(frozen=True)
class WalletCredentials:
    signer: Optional[str]
    signature: Optional[str]
    nonce: Optional[str]
    timestamp: Any


@dataclass(frozen=True)
class AuthRequest:
    """Everything needed to authenticate one request.

    ``fields`` are the ordered business parameters placed between the signer
    line and the nonce/timestamp lines of the canonical message.
    """

    mode: AuthMode
    scope: str
    label: str
    signer_field: str = "requester"
    fields: list[tuple[str, Any]] = field(default_factory=list)
    agent: Optional[AgentCredentials] = None
    wallet: Optional[WalletCredentials] = None


@dataclass(frozen=True)
class Authorized:
    """Established caller identity."""

    mode: AuthMode
    identity: str
    method: str

    @property
    def is_agent(self) -> bool:
        return self.mode == AuthMode.TRUSTED_AGENT


def format_field(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_signed_message(
    label: str,
    signer_field: str,
    signer: str,
    fields: list[tuple[str, Any]],
    nonce: str,
    timestamp: Any,
) -> str:
    """Build the canonical message a wallet signs.

    Example:
        CeloFX Cross-DEX Execute
        requester:0xabc...
        pair:cUSD/cEUR
        amount:10
        nonce:n-1
        timestamp:1700000000000
    """
    lines = [label, f"{signer_field}:{signer}"]
    lines.extend(f"{name}:{format_field(value)}" for name, value in fields)
    lines.append(f"nonce:{nonce}")
    lines.append(f"timestamp:{format_field(timestamp)}")
    return "\n".join(lines)


def sign_agent_request(
    secret: str, timestamp: str, nonce: str, method: str, path: str, body: bytes
) -> str:
    """Compute the agent HMAC over ``timestamp.nonce.METHOD.path.body``."""
    prefix = f"{timestamp}.{nonce}.{method.upper()}.{path}.".encode()
    return hmac.new(secret.encode(), prefix + body, hashlib.sha256).hexdigest()


def parse_timestamp(value: Any) -> Optional[float]:
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    return ts if math.isfinite(ts) else None


class RequestAuthenticator:
    """Establishes caller identity for mutating requests."""

    def __init__(
        self,
        nonce_ledger: NonceLedger,
        agent_secret: str = "",
        allow_bearer: bool = False,
    ):
        self.nonce_ledger = nonce_ledger
        self.agent_secret = agent_secret
        self.allow_bearer = allow_bearer

    async def authenticate(self, request: AuthRequest) -> Authorized:
        """Authenticate a request under its declared mode.

        Raises:
            Unauthorized: credential missing, malformed, stale, replayed or forged
            ConfigurationError: agent mode requested but no secret is configured
        """
        if request.mode == AuthMode.TRUSTED_AGENT:
            return await self._authenticate_agent(request)
        return await self._authenticate_wallet(request)

    async def _authenticate_agent(self, request: AuthRequest) -> Authorized:
        if not self.agent_secret:
            raise ConfigurationError(
                "AGENT_API_SECRET not configured",
                next_step="Configure AGENT_API_SECRET on the server",
            )
        creds = request.agent
        if creds is None:
            raise Unauthorized()

        if creds.signature or creds.timestamp or creds.nonce:
            await self._verify_agent_hmac(creds)
            return Authorized(AuthMode.TRUSTED_AGENT, AGENT_IDENTITY, "hmac")

        if self.allow_bearer and creds.authorization:
            expected = f"Bearer {self.agent_secret}"
            if hmac.compare_digest(creds.authorization.encode(), expected.encode()):
                return Authorized(AuthMode.TRUSTED_AGENT, AGENT_IDENTITY, "bearer")

        logger.warning(f"Agent authentication failed for {creds.method} {creds.path}")
        raise Unauthorized()

    async def _verify_agent_hmac(self, creds: AgentCredentials) -> None:
        if not (creds.signature and creds.timestamp and creds.nonce):
            raise Unauthorized()
        timestamp = parse_timestamp(creds.timestamp)
        if timestamp is None or not self.nonce_ledger.within_skew(timestamp):
            raise ReplayedOrExpiredNonce()

        signature = creds.signature.strip().lower()
        if not HMAC_HEX_RE.match(signature):
            raise Unauthorized()
        expected = sign_agent_request(
            self.agent_secret, creds.timestamp, creds.nonce, creds.method, creds.path, creds.body
        )
        if not hmac.compare_digest(signature.encode(), expected.encode()):
            logger.warning(f"Agent HMAC mismatch for {creds.method} {creds.path}")
            raise Unauthorized()

        if not await self.nonce_ledger.consume(
            AGENT_NONCE_SCOPE, AGENT_IDENTITY, creds.nonce, timestamp
        ):
            raise ReplayedOrExpiredNonce()

    async def _authenticate_wallet(self, request: AuthRequest) -> Authorized:
        creds = request.wallet
        if creds is None or not (creds.signature and creds.nonce):
            raise Unauthorized()
        if not is_address(creds.signer):
            raise Unauthorized()
        timestamp = parse_timestamp(creds.timestamp)
        if timestamp is None or not self.nonce_ledger.within_skew(timestamp):
            raise ReplayedOrExpiredNonce()

        message = build_signed_message(
            request.label,
            request.signer_field,
            creds.signer,
            request.fields,
            creds.nonce,
            creds.timestamp,
        )
        recovered = recover_signer(message, creds.signature)
        if recovered is None or recovered.lower() != creds.signer.lower():
            logger.warning(f"Wallet signature mismatch for claimed signer {creds.signer}")
            raise Unauthorized()

        if not await self.nonce_ledger.consume(
            request.scope, creds.signer, creds.nonce, timestamp
        ):
            raise ReplayedOrExpiredNonce()

        return Authorized(AuthMode.WALLET_SIGNED, creds.signer.lower(), "signature")
