"""Utility modules for CeloFX."""

from celofx.utils.locks import LockTimeoutError, active_key_locks, get_key_lock, keyed_lock

__all__ = ["LockTimeoutError", "active_key_locks", "get_key_lock", "keyed_lock"]
