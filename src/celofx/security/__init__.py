"""Replay protection, idempotency and caller authentication."""

from celofx.security.auth import (
    AgentCredentials,
    AuthMode,
    AuthRequest,
    Authorized,
    RequestAuthenticator,
    WalletCredentials,
    build_signed_message,
)
from celofx.security.idempotency import CachedResponse, IdempotencyCache, derive_idempotency_key
from celofx.security.nonces import NonceLedger
from celofx.security.store import KeyValueStore, MemoryStore, UpstashStore

__all__ = [
    "AgentCredentials",
    "AuthMode",
    "AuthRequest",
    "Authorized",
    "RequestAuthenticator",
    "WalletCredentials",
    "build_signed_message",
    "CachedResponse",
    "IdempotencyCache",
    "derive_idempotency_key",
    "NonceLedger",
    "KeyValueStore",
    "MemoryStore",
    "UpstashStore",
]
