"""Rate-limited Mercury API client.

Every outbound call goes through ``RateLimitedClient.call``: it waits for a slot
in the token's bucket, sends the request, and classifies the result.

    429        -> sleep Retry-After (or backoff), retry, then RateLimitExceeded
    5xx / I/O  -> exponential backoff with jitter, retry, then TransientNetworkError
    other 4xx  -> ClientRequestError immediately
    bad JSON   -> InvalidResponse

Errors and log lines only ever carry the masked token hint.
"""

import asyncio
import hashlib
import json
import logging
import random
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from pydantic import BaseModel, SecretStr, ValidationError

from portal.core.errors import (
    ClientRequestError,
    InvalidResponse,
    RateLimitExceeded,
    TransientNetworkError,
)
from portal.core.security import mask_token, redact_error_message
from portal.schemas.provider import (
    MercuryAccount,
    MercuryAccountList,
    MercuryErrorBody,
    MercuryTransaction,
    MercuryTransactionList,
)
from portal.services.rate_limit import Clock, RetryPolicy, Sleeper, TokenBucket

logger = logging.getLogger(__name__)

TRANSACTIONS_PAGE_SIZE = 500
MAX_TRANSACTION_PAGES = 50


@dataclass(frozen=True)
class ProviderRequest:
    method: str
    path: str
    params: dict[str, Any] = field(default_factory=dict)


class RateLimitedClient:
    def __init__(
        self,
        base_url: str,
        *,
        policy: RetryPolicy | None = None,
        capacity: int = 100,
        refill_per_second: float = 100 / 60,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock | None = None,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.policy = policy or RetryPolicy()
        self._capacity = capacity
        self._refill = refill_per_second
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._buckets: dict[str, TokenBucket] = {}

    @classmethod
    def from_settings(cls, s, **kwargs) -> "RateLimitedClient":
        return cls(
            s.mercury_base_url,
            policy=RetryPolicy.from_settings(s),
            capacity=s.rate_limit_capacity,
            refill_per_second=s.rate_limit_refill_per_second,
            timeout=s.mercury_timeout_seconds,
            **kwargs,
        )

    def bucket_for(self, token: str) -> TokenBucket:
        # Keyed by digest so the raw token is not kept as a dict key
        key = hashlib.sha256(token.encode()).hexdigest()
        bucket = self._buckets.get(key)
        if bucket is None:
            kwargs = {"sleep": self._sleep}
            if self._clock is not None:
                kwargs["clock"] = self._clock
            bucket = TokenBucket(self._capacity, self._refill, **kwargs)
            self._buckets[key] = bucket
        return bucket

    async def call(self, token: SecretStr | str, request: ProviderRequest) -> dict[str, Any]:
        raw = token.get_secret_value() if isinstance(token, SecretStr) else token
        hint = mask_token(raw)
        bucket = self.bucket_for(raw)
        headers = {"Authorization": f"Bearer {raw}", "Accept": "application/json"}
        throttled = 0
        transient = 0

        while True:
            await bucket.acquire()
            try:
                response = await self._http.request(
                    request.method, request.path, params=request.params or None, headers=headers
                )
            except httpx.TransportError as exc:
                transient += 1
                cause = redact_error_message(f"{type(exc).__name__}: {exc}")
                if transient >= self.policy.max_attempts:
                    raise TransientNetworkError(transient, cause, token_hint=hint, path=request.path) from None
                delay = self.policy.backoff_delay(transient, self._rng)
                logger.warning(
                    "Mercury %s %s failed (%s) [token %s]; retry %d/%d in %.2fs",
                    request.method, request.path, cause, hint, transient, self.policy.max_attempts - 1, delay,
                )
                await self._sleep(delay)
                continue

            status = response.status_code
            if status == 429:
                throttled += 1
                if throttled >= self.policy.max_attempts:
                    raise RateLimitExceeded(throttled, token_hint=hint, path=request.path)
                delay = self._retry_after(response)
                if delay is None:
                    delay = self.policy.backoff_delay(throttled, self._rng)
                logger.warning(
                    "Mercury rate limit on %s [token %s]; retry %d/%d in %.2fs",
                    request.path, hint, throttled, self.policy.max_attempts - 1, delay,
                )
                await self._sleep(delay)
                continue

            if status >= 500:
                transient += 1
                if transient >= self.policy.max_attempts:
                    raise TransientNetworkError(transient, f"HTTP {status}", token_hint=hint, path=request.path)
                delay = self.policy.backoff_delay(transient, self._rng)
                logger.warning(
                    "Mercury %s %s returned %d [token %s]; retry %d/%d in %.2fs",
                    request.method, request.path, status, hint, transient, self.policy.max_attempts - 1, delay,
                )
                await self._sleep(delay)
                continue

            if status >= 400:
                provider_code, message = self._error_details(response)
                logger.error(
                    "Mercury %s %s rejected with %d (%s) [token %s]",
                    request.method, request.path, status, provider_code, hint,
                )
                raise ClientRequestError(status, provider_code, message, token_hint=hint, path=request.path)

            return self._decode(response, hint, request.path)

    def _retry_after(self, response: httpx.Response) -> float | None:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            seconds = float(value)
        except ValueError:
            try:
                when = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            seconds = (when - datetime.now(timezone.utc)).total_seconds()
        return min(max(seconds, 0.0), self.policy.retry_after_cap)

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str | None, str]:
        try:
            body = response.json()
        except ValueError:
            return None, redact_error_message(response.text[:200]) or response.reason_phrase
        if isinstance(body, dict):
            # Mercury nests details under "errors"; other gateways use a flat body
            raw = body.get("errors") if isinstance(body.get("errors"), dict) else body
            try:
                parsed = MercuryErrorBody.model_validate(raw)
            except ValidationError:
                parsed = MercuryErrorBody()
            code = parsed.error_code or (str(raw["code"]) if raw.get("code") is not None else None)
            return code, redact_error_message(parsed.message or response.reason_phrase)
        return None, response.reason_phrase

    @staticmethod
    def _decode(response: httpx.Response, hint: str, path: str) -> dict[str, Any]:
        try:
            body = response.json(parse_float=Decimal)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("Mercury returned non-JSON body for %s [token %s]", path, hint)
            raise InvalidResponse("body is not JSON", token_hint=hint, path=path) from None
        if not isinstance(body, dict):
            raise InvalidResponse(f"expected an object, got {type(body).__name__}", token_hint=hint, path=path)
        return body

    async def aclose(self) -> None:
        await self._http.aclose()


def _parse(model: type[BaseModel], body: dict[str, Any], hint: str, path: str):
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors()[:5])
        logger.error("Mercury payload for %s failed validation (%s) [token %s]", path, fields, hint)
        raise InvalidResponse(f"unexpected shape at {fields}", token_hint=hint, path=path) from None


class MercuryClient:
    """The three provider operations the sync worker needs."""

    def __init__(self, transport: RateLimitedClient):
        self._client = transport

    async def list_accounts(self, token: SecretStr) -> list[MercuryAccount]:
        path = "/accounts"
        body = await self._client.call(token, ProviderRequest("GET", path))
        return _parse(MercuryAccountList, body, mask_token(token.get_secret_value()), path).accounts

    async def get_account(self, token: SecretStr, account_id: str) -> MercuryAccount:
        path = f"/account/{account_id}"
        body = await self._client.call(token, ProviderRequest("GET", path))
        return _parse(MercuryAccount, body, mask_token(token.get_secret_value()), path)

    async def list_transactions(
        self, token: SecretStr, account_id: str, since: date | None = None
    ) -> list[MercuryTransaction]:
        """All transactions for an account, optionally from ``since`` (inclusive) on."""
        path = f"/account/{account_id}/transactions"
        hint = mask_token(token.get_secret_value())
        results: list[MercuryTransaction] = []
        offset = 0
        for _ in range(MAX_TRANSACTION_PAGES):
            params: dict[str, Any] = {"limit": TRANSACTIONS_PAGE_SIZE, "offset": offset}
            if since is not None:
                params["start"] = since.isoformat()
            body = await self._client.call(token, ProviderRequest("GET", path, params))
            page = _parse(MercuryTransactionList, body, hint, path).transactions
            results.extend(page)
            if len(page) < TRANSACTIONS_PAGE_SIZE:
                break
            offset += len(page)
        else:
            logger.warning("Stopped paging %s after %d pages [token %s]", path, MAX_TRANSACTION_PAGES, hint)
        return results
