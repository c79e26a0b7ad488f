"""
REST / HTTP API server for QuorumVault.

Built on ``aiohttp``; every request is forwarded to an AccountHost.

Endpoints
---------
GET  /health                          Liveness check
GET  /status                          Vault summary
GET  /owners                          Owner list, count and threshold
GET  /owners/count                    Number of owners
GET  /owners/{address}/public_key     Declared key of an owner
GET  /owners/{address}/nonce          Next request nonce for a caller
GET  /tx/{tx_id}                      Call record and status
GET  /tx/{tx_id}/confirmations        Confirmation count
POST /owners/public_key               Set or rotate the caller's own key (signed)
POST /tx/submit                       Submit a call
POST /tx/{tx_id}/confirm              Confirm a call
POST /tx/{tx_id}/execute              Execute a call that has quorum

POST bodies carry ``caller``, ``nonce`` and ``signature`` (``[r, s]`` as
ints or hex strings) next to the operation's own fields.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
- Per-IP token-bucket rate limiter (configurable RPM).
- Request body size cap (``max_body_bytes``, default 1 MiB).
- Requests reach the vault one at a time (single asyncio lock).

Usage:
    api = APIServer(vault_host, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from quorumvault_core.crypto_utils import to_field_element
from quorumvault_core.errors import (
    AlreadyConfirmed,
    AlreadyExecuted,
    AuthenticationError,
    AuthorizationError,
    DispatchFailed,
    InvariantViolation,
    ThresholdNotMet,
    TxNotFound,
    VaultError,
)
from quorumvault_core.host import AccountHost, SignedRequest
from quorumvault_core.signature import parse_signature

if TYPE_CHECKING:
    from quorumvault_core.config import APIConfig

logger = logging.getLogger("quorumvault_api")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting non-integer input."""
    if isinstance(value, bool):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _field(value: Any, name: str) -> int:
    """Parse a field element given as int or hex/decimal string."""
    try:
        return to_field_element(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be a field element")


def _hex_bytes(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise web.HTTPBadRequest(text=f"{name} must be a hex string")
    text = value[2:] if value.lower().startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise web.HTTPBadRequest(text=f"{name} must be a hex string")


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _status_for(exc: VaultError) -> int:
    if isinstance(exc, TxNotFound):
        return 404
    if isinstance(exc, (AlreadyConfirmed, AlreadyExecuted, ThresholdNotMet)):
        return 409
    if isinstance(exc, (AuthorizationError, AuthenticationError)):
        return 403
    if isinstance(exc, DispatchFailed):
        return 502
    if isinstance(exc, InvariantViolation):
        return 500
    return 400


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST.

    Timing-safe comparison; the key is only read from the ``X-API-Key``
    header, never from query params.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method == "POST":
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


@web.middleware
async def vault_error_middleware(request: web.Request, handler):
    """Turn VaultError into a JSON body with a stable error code."""
    try:
        return await handler(request)
    except VaultError as exc:
        return web.json_response(exc.to_dict(), status=_status_for(exc))


class APIServer:
    """Thin aiohttp wrapper around an AccountHost."""

    def __init__(
        self,
        vault_host: AccountHost,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.vault_host = vault_host
        self.host = host
        self.port = port
        self._api_config = api_config
        self._lock = asyncio.Lock()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def account(self):
        return self.vault_host.account

    # ── lifecycle ────────────────────────────────────────────────

    def make_app(self) -> web.Application:
        middlewares: list = []
        max_body = 1_048_576

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(vault_error_middleware)

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/owners", self._owners)
        app.router.add_get("/owners/count", self._owner_count)
        app.router.add_get("/owners/{address}/public_key", self._owner_public_key)
        app.router.add_get("/owners/{address}/nonce", self._nonce)
        app.router.add_get("/tx/{tx_id}", self._transaction)
        app.router.add_get("/tx/{tx_id}/confirmations", self._confirmations)
        app.router.add_post("/owners/public_key", self._set_public_key)
        app.router.add_post("/tx/submit", self._submit)
        app.router.add_post("/tx/{tx_id}/confirm", self._confirm)
        app.router.add_post("/tx/{tx_id}/execute", self._execute)

    async def _invoke(self, body: dict, entrypoint: str, args: tuple) -> Any:
        caller = body.get("caller")
        if not isinstance(caller, str) or not caller:
            raise web.HTTPBadRequest(text="caller required")
        signature = body.get("signature", [])
        if not isinstance(signature, list):
            raise web.HTTPBadRequest(text="signature must be a list")
        request = SignedRequest(
            caller=caller,
            entrypoint=entrypoint,
            args=args,
            nonce=_safe_int(body.get("nonce", 0), "nonce"),
            signature=tuple(parse_signature(signature)),
        )
        async with self._lock:
            return self.vault_host.invoke(request)

    # ── GET handlers ─────────────────────────────────────────────

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _status(self, request: web.Request) -> web.Response:
        summary = self.account.get_state_summary()
        summary["address"] = self.vault_host.address
        return web.json_response(summary)

    async def _owners(self, request: web.Request) -> web.Response:
        return web.json_response({
            "owners": self.account.get_owners(),
            "num_owners": self.account.get_num_owners(),
            "threshold": self.account.get_threshold(),
        })

    async def _owner_count(self, request: web.Request) -> web.Response:
        return web.json_response({"num_owners": self.account.get_num_owners()})

    async def _owner_public_key(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        key = self.account.get_owner_public_key(address)
        return web.json_response({"address": address, "public_key": key.hex()})

    async def _nonce(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        try:
            nonce = self.vault_host.get_nonce(address)
        except ValueError:
            raise web.HTTPBadRequest(text="address must be 0x-prefixed hex")
        return web.json_response({"address": address, "nonce": nonce})

    async def _transaction(self, request: web.Request) -> web.Response:
        tx_id = _safe_int(request.match_info["tx_id"], "tx_id")
        record = self.account.get_transaction(tx_id)
        data = record.to_dict()
        data["status"] = record.status(self.account.get_threshold())
        return web.json_response(data)

    async def _confirmations(self, request: web.Request) -> web.Response:
        tx_id = _safe_int(request.match_info["tx_id"], "tx_id")
        return web.json_response({
            "tx_id": tx_id,
            "confirmations": self.account.get_confirmations(tx_id),
            "threshold": self.account.get_threshold(),
        })

    # ── POST handlers ────────────────────────────────────────────

    async def _set_public_key(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        key = _hex_bytes(body.get("public_key"), "public_key")
        await self._invoke(body, "set_public_key", (key,))
        return web.json_response({"status": "ok", "caller": body["caller"]})

    async def _submit(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        payload = body.get("payload", [])
        if not isinstance(payload, list):
            raise web.HTTPBadRequest(text="payload must be a list")
        args = (
            _field(body.get("target"), "target"),
            _field(body.get("selector"), "selector"),
            [_field(x, "payload element") for x in payload],
        )
        tx_id = await self._invoke(body, "submit_transaction", args)
        return web.json_response({"status": "submitted", "tx_id": tx_id})

    async def _confirm(self, request: web.Request) -> web.Response:
        tx_id = _safe_int(request.match_info["tx_id"], "tx_id")
        body = await _json_body(request)
        count = await self._invoke(body, "confirm_transaction", (tx_id,))
        return web.json_response({"status": "confirmed", "tx_id": tx_id, "confirmations": count})

    async def _execute(self, request: web.Request) -> web.Response:
        tx_id = _safe_int(request.match_info["tx_id"], "tx_id")
        body = await _json_body(request)
        result = await self._invoke(body, "execute_transaction", (tx_id,))
        return web.json_response({"status": "executed", "tx_id": tx_id, "result": result.hex()})
