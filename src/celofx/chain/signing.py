"""Key handling and signature recovery for Celo accounts."""

import hashlib
import hmac
import logging
import re
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from celofx.errors import ConfigurationError

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# Each derivation attempt bumps the counter; a digest outside the secp256k1
# range is astronomically unlikely, a handful of attempts is plenty.
MAX_DERIVATION_ATTEMPTS = 8


def is_address(value: Optional[str]) -> bool:
    """Check that a value is a 0x-prefixed 20-byte hex address."""
    return bool(value) and ADDRESS_RE.match(value) is not None


def recover_signer(message: str, signature: str) -> Optional[str]:
    """Recover the address that personal-signed ``message`` (EIP-191).

    Returns:
        Checksummed address, or None if the signature is malformed
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.debug(f"Signature recovery failed: {e}")
        return None


def load_account(private_key: Optional[str]) -> LocalAccount:
    """Load an account from a hex private key."""
    if not private_key:
        raise ConfigurationError(
            "Agent private key not configured",
            next_step="Set AGENT_PRIVATE_KEY",
        )
    key = private_key.strip()
    if not key.startswith("0x"):
        key = f"0x{key}"
    return Account.from_key(key)


def derive_user_wallet(user_address: str, secret: Optional[str]) -> LocalAccount:
    """Derive the deterministic execution wallet for a user.

    key = HMAC-SHA256(secret, "<address lowercased>:<counter>"), retried with
    the next counter if the digest is not a valid secp256k1 scalar.
    """
    if not secret:
        raise ConfigurationError(
            "User wallet derivation secret not configured",
            next_step="Set USER_AGENT_WALLET_SECRET",
        )
    normalized = user_address.lower()
    for counter in range(MAX_DERIVATION_ATTEMPTS):
        digest = hmac.new(
            secret.encode(), f"{normalized}:{counter}".encode(), hashlib.sha256
        ).digest()
        try:
            return Account.from_key(digest)
        except ValueError:
            continue
    raise ConfigurationError(f"Could not derive an execution wallet for {user_address}")
