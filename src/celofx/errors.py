"""Exception hierarchy for the execution pipeline.

Every error carries a stable machine-readable ``code``, the HTTP status it
maps to, whether the caller may retry with the same inputs, and an
operator-facing ``next_step`` hint.
"""

from typing import Any, Optional


class CeloFXError(Exception):
    """Base class for all pipeline errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict] = None,
        next_step: Optional[str] = None,
        retryable: Optional[bool] = None,
        chain_mutated: bool = False,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        self.next_step = next_step
        if retryable is not None:
            self.retryable = retryable
        # Set once a transaction has been submitted on-chain for this request.
        self.chain_mutated = chain_mutated

    def to_dict(self) -> dict[str, Any]:
        """Render as a JSON response body."""
        body: dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.next_step:
            body["nextStep"] = self.next_step
        if self.details:
            body["details"] = self.details
        return body


class Unauthorized(CeloFXError):
    """Caller identity could not be established."""

    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Unauthorized", **kwargs):
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        # Never reveal which check failed.
        return {"error": "Unauthorized", "code": self.code, "retryable": False}


class ReplayedOrExpiredNonce(Unauthorized):
    """Nonce already consumed or outside the clock skew window."""


class Forbidden(CeloFXError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(CeloFXError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(CeloFXError):
    """Malformed or out-of-range input."""

    code = "INVALID_REQUEST"
    status_code = 400


class InsufficientCustodyBalance(ValidationError):
    code = "INSUFFICIENT_CUSTODY_BALANCE"


class NotProfitable(CeloFXError):
    """Spread or expected profit below the configured threshold."""

    code = "SPREAD_TOO_LOW"
    status_code = 400

    def __init__(self, message: str, *, spread_pct: float, threshold_pct: float, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.setdefault("spreadPct", spread_pct)
        details.setdefault("thresholdPct", threshold_pct)
        super().__init__(message, details=details, **kwargs)
        self.spread_pct = spread_pct
        self.threshold_pct = threshold_pct


class VerificationFailed(CeloFXError):
    """Submitted proof of payment does not prove the claimed transfer."""

    code = "VERIFICATION_FAILED"
    status_code = 400

    def __init__(self, message: str, *, reason: str, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.setdefault("reason", reason)
        super().__init__(message, details=details, **kwargs)
        self.reason = reason


class VerificationPending(CeloFXError):
    code = "VERIFICATION_PENDING"
    status_code = 409
    retryable = True


class PolicyViolation(CeloFXError):
    """Execution refused by an operational policy (pause switch, volume cap)."""

    code = "POLICY_VIOLATION"
    status_code = 403


class AgentPaused(PolicyViolation):
    code = "AGENT_PAUSED"
    status_code = 503
    retryable = True


class VolumeLimitExceeded(PolicyViolation):
    code = "VOLUME_LIMIT_EXCEEDED"
    status_code = 429


class IdempotencyInProgress(CeloFXError):
    code = "IDEMPOTENCY_IN_PROGRESS"
    status_code = 409
    retryable = True


class ExecutionFailed(CeloFXError):
    """On-chain execution failed before any leg completed."""

    code = "EXECUTION_FAILED"
    status_code = 500


class BroadcastUncertain(ExecutionFailed):
    """A signed transaction may have reached the network; its fate is unknown."""

    code = "BROADCAST_UNCERTAIN"
    status_code = 502

    def __init__(self, message: str, *, tx_hash: str, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.setdefault("txHash", tx_hash)
        kwargs.setdefault("chain_mutated", True)
        kwargs.setdefault("retryable", False)
        kwargs.setdefault("next_step", f"Check {tx_hash} on the explorer before retrying")
        super().__init__(message, details=details, **kwargs)
        self.tx_hash = tx_hash


class PartialExecutionFailure(ExecutionFailed):
    """A later leg failed after earlier legs were confirmed on-chain."""

    code = "PARTIAL_EXECUTION"
    status_code = 502

    def __init__(self, message: str, *, completed_legs: int, tx_hashes: dict, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.setdefault("completedLegs", completed_legs)
        details.setdefault("txHashes", tx_hashes)
        kwargs.setdefault("chain_mutated", True)
        super().__init__(message, details=details, **kwargs)
        self.completed_legs = completed_legs
        self.tx_hashes = tx_hashes


class TransientInfrastructureFailure(CeloFXError):
    """RPC, price feed or shared store unreachable."""

    code = "INFRASTRUCTURE_UNAVAILABLE"
    status_code = 503
    retryable = True


class ConfigurationError(CeloFXError):
    """Server-side configuration is missing; the caller cannot fix it."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class RateMoved(ExecutionFailed):
    """Quote drifted beyond tolerance between gating and submission."""

    code = "RATE_MOVED"
    status_code = 409
    retryable = True
