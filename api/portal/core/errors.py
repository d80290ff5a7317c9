"""Error taxonomy for the Mercury sync core.

Provider failures are raised by the rate-limited client and caught per entity
(or per account) by the sync worker. Store failures are raised by the
reconciliation store. Every error carries a stable ``code`` which is what ends
up in SyncRun outcomes and API error envelopes; messages never contain a raw
access token, only its masked hint.
"""

from typing import Any


class PortalError(Exception):
    code = "PORTAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# ─── Configuration ─────────────────────────────────────────────────────────────

class MissingCredential(PortalError):
    code = "MISSING_CREDENTIAL"

    def __init__(self, entity_id: str):
        super().__init__(
            f"No Mercury credential configured for entity '{entity_id}'",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


# ─── Provider ──────────────────────────────────────────────────────────────────

class ProviderError(PortalError):
    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(self, message: str, *, token_hint: str, path: str | None = None, **details: Any):
        super().__init__(
            message,
            details={"token": token_hint, "path": path, **details},
        )
        self.token_hint = token_hint
        self.path = path


class ClientRequestError(ProviderError):
    """4xx from the provider. Never retried."""

    code = "CLIENT_REQUEST_ERROR"

    def __init__(
        self,
        status: int,
        provider_code: str | None,
        message: str,
        *,
        token_hint: str,
        path: str | None = None,
    ):
        super().__init__(
            f"Mercury rejected request ({status}): {message} [token {token_hint}]",
            token_hint=token_hint,
            path=path,
            status=status,
            provider_code=provider_code,
        )
        self.status = status
        self.provider_code = provider_code


class RateLimitExceeded(ProviderError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 503

    def __init__(self, attempts: int, *, token_hint: str, path: str | None = None):
        super().__init__(
            f"Mercury rate limit still exceeded after {attempts} attempts [token {token_hint}]",
            token_hint=token_hint,
            path=path,
            attempts=attempts,
        )
        self.attempts = attempts


class TransientNetworkError(ProviderError):
    code = "TRANSIENT_NETWORK_ERROR"
    status_code = 503

    def __init__(self, attempts: int, cause: str, *, token_hint: str, path: str | None = None):
        super().__init__(
            f"Mercury unreachable after {attempts} attempts: {cause} [token {token_hint}]",
            token_hint=token_hint,
            path=path,
            attempts=attempts,
        )
        self.attempts = attempts


class InvalidResponse(ProviderError):
    code = "INVALID_RESPONSE"

    def __init__(self, reason: str, *, token_hint: str = "[n/a]", path: str | None = None):
        super().__init__(
            f"Malformed Mercury payload: {reason}",
            token_hint=token_hint,
            path=path,
        )
        self.reason = reason


# ─── Store ─────────────────────────────────────────────────────────────────────

class InvalidStateTransition(PortalError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, external_id: str, current: str, requested: str):
        super().__init__(
            f"Transaction {external_id}: {current} -> {requested} is not allowed",
            details={"external_id": external_id, "current": current, "requested": requested},
        )
        self.external_id = external_id
        self.current = current
        self.requested = requested


class AccountOwnershipConflict(PortalError):
    """A provider account already recorded under a different entity."""

    code = "ACCOUNT_OWNERSHIP_CONFLICT"
    status_code = 409

    def __init__(self, external_account_id: str, owner: str, claimant: str):
        super().__init__(
            f"Mercury account {external_account_id} belongs to entity '{owner}', not '{claimant}'",
            details={"external_account_id": external_account_id, "owner": owner, "claimant": claimant},
        )


class SnapshotConflict(PortalError):
    """Same account and observation timestamp, but a different amount."""

    code = "SNAPSHOT_CONFLICT"
    status_code = 409


class SnapshotOutOfOrder(PortalError):
    code = "SNAPSHOT_OUT_OF_ORDER"
    status_code = 409


class SyncRunFinalized(PortalError):
    code = "SYNC_RUN_FINALIZED"
    status_code = 409


class NotFound(PortalError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationFailed(PortalError):
    """Request parameters that are individually valid but inconsistent together."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, fields: dict[str, str]):
        super().__init__("Validation failed", details={"fields": fields})


# ─── Sync ──────────────────────────────────────────────────────────────────────

class SyncTimeout(PortalError):
    code = "TIMEOUT"

    def __init__(self, entity_id: str, seconds: float):
        super().__init__(
            f"Sync for entity '{entity_id}' exceeded {seconds:g}s",
            details={"entity_id": entity_id, "timeout_seconds": seconds},
        )


# Cache warning, not an exception: surfaced as a flag on cached reads
STALE_BEYOND_LIMIT = "STALE_BEYOND_LIMIT"
