"""Authenticated, idempotent execution of mutating requests.

Order of operations for every mutating endpoint:

1. Derive the idempotency key and return a cached response on a hit
2. Authenticate (consumes the caller's nonce)
3. Claim the key so a concurrent duplicate cannot execute too
4. Run the action
5. Cache the response; failures are cached only once the chain was touched,
   otherwise the claim is released so the request can be retried
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from celofx.api.services import Services
from celofx.errors import CeloFXError, IdempotencyInProgress, Unauthorized, ValidationError
from celofx.security.auth import (
    AGENT_IDENTITY,
    AgentCredentials,
    AuthMode,
    AuthRequest,
    Authorized,
    WalletCredentials,
)
from celofx.security.idempotency import CachedResponse, derive_idempotency_key

logger = logging.getLogger(__name__)

Handler = Callable[[Authorized, dict[str, Any]], Awaitable[dict[str, Any]]]


class RequestModel(BaseModel):
    """Body contract; amounts may arrive as JSON numbers or strings."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


def auth_mode_from(request: Request) -> AuthMode:
    raw = (request.headers.get("x-auth-mode") or AuthMode.WALLET_SIGNED.value).strip().lower()
    try:
        return AuthMode(raw)
    except ValueError:
        raise Unauthorized()


async def read_json(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def build_auth_request(
    request: Request,
    raw_body: bytes,
    body: dict[str, Any],
    *,
    scope: str,
    label: str,
    signer_field: str,
    fields: list[str],
) -> AuthRequest:
    """Collect both credential kinds; the declared mode decides which is checked."""
    headers = request.headers
    return AuthRequest(
        mode=auth_mode_from(request),
        scope=scope,
        label=label,
        signer_field=signer_field,
        fields=[(name, body.get(name)) for name in fields],
        agent=AgentCredentials(
            method=request.method,
            path=request.url.path,
            body=raw_body,
            signature=headers.get("x-agent-signature"),
            timestamp=headers.get("x-agent-timestamp"),
            nonce=headers.get("x-agent-nonce"),
            authorization=headers.get("authorization"),
        ),
        wallet=WalletCredentials(
            signer=body.get(signer_field),
            signature=body.get("signature"),
            nonce=body.get("nonce"),
            timestamp=body.get("timestamp"),
        ),
    )


def idempotency_key_for(request: Request, body: dict[str, Any], auth: AuthRequest) -> Optional[str]:
    token = request.headers.get("x-idempotency-key") or body.get("idempotencyKey")
    if auth.mode == AuthMode.TRUSTED_AGENT:
        signer, nonce = AGENT_IDENTITY, auth.agent.nonce
    else:
        signer, nonce = auth.wallet.signer, auth.wallet.nonce
    return derive_idempotency_key(
        auth.scope,
        str(token) if token is not None else None,
        str(signer) if signer else None,
        str(nonce) if nonce else None,
    )


def _replay(cached: CachedResponse) -> JSONResponse:
    return JSONResponse({**cached.body, "idempotent": True}, status_code=cached.status_code)


async def execute_request(
    request: Request,
    services: Services,
    *,
    scope: str,
    label: str,
    signer_field: str,
    fields: list[str],
    handler: Handler,
    success_status: int = 200,
) -> JSONResponse:
    """Run ``handler`` for one mutating request under auth and idempotency."""
    raw_body = await request.body()
    body = await read_json(request)
    auth_request = build_auth_request(
        request, raw_body, body, scope=scope, label=label, signer_field=signer_field, fields=fields
    )
    cache = services.idempotency
    key = idempotency_key_for(request, body, auth_request)

    if key:
        cached = await cache.get(key)
        if cached:
            logger.info(f"Idempotent replay for {key}")
            return _replay(cached)

    authorized = await services.authenticator.authenticate(auth_request)

    if key and not await cache.claim(key):
        cached = await cache.get(key)
        if cached:
            return _replay(cached)
        raise IdempotencyInProgress(
            "A request with this idempotency key is already executing",
            next_step="Retry shortly to receive the original response.",
        )

    try:
        payload = await handler(authorized, body)
    except CeloFXError as e:
        if key:
            if e.chain_mutated:
                await cache.put(key, CachedResponse(e.status_code, e.to_dict()))
            else:
                await cache.release(key)
        raise
    except Exception:
        if key:
            await cache.release(key)
        raise

    if key:
        await cache.put(key, CachedResponse(success_status, payload))
    return JSONResponse(payload, status_code=success_status)
