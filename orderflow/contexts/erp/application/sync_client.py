from __future__ import annotations

import functools
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from flask import current_app

from orderflow.contexts.erp.application.retry_policy import (
    RATE_LIMIT_STATUS,
    backoff_seconds,
    is_transient_status,
    retry_after_delay,
)
from orderflow.contexts.erp.application.token_locks import TenantLockRegistry, get_token_lock_registry
from orderflow.contexts.erp.domain.gateway import ErpGateway, ErpGatewayError, TokenGrant
from orderflow.contexts.erp.infrastructure.http_gateway import HttpErpGateway
from orderflow.contexts.erp.infrastructure.simulator import InMemoryErpSimulator
from orderflow.contexts.erp.infrastructure.token_repository import ErpTokenRepository
from orderflow.errors import IntegrationError, ValidationError
from orderflow.observability import (
    current_request_id,
    observe_erp_retry,
    observe_erp_sync,
    observe_erp_token_refresh,
)


class SyncOutcome(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncResult:
    outcome: str
    success: bool
    retries_used: int = 0
    rate_limited: bool = False
    error: str | None = None
    status_code: int | None = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "success": self.success,
            "retries_used": self.retries_used,
            "rate_limited": self.rate_limited,
            "error": self.error,
            "status_code": self.status_code,
        }


class ErpTokenUnavailableError(RuntimeError):
    def __init__(self, reason: str, details: str | None = None) -> None:
        super().__init__(details or reason)
        self.reason = reason
        self.details = details


@dataclass(frozen=True)
class ErpSyncSettings:
    max_retries: int = 3
    base_delay_ms: int = 2000
    max_delay_ms: int = 30000
    refresh_buffer_seconds: int = 300

    @classmethod
    def from_config(cls, config) -> "ErpSyncSettings":
        return cls(
            max_retries=max(0, int(config.get("ERP_SYNC_MAX_RETRIES", 3))),
            base_delay_ms=max(0, int(config.get("ERP_RETRY_BASE_DELAY_MS", 2000))),
            max_delay_ms=max(0, int(config.get("ERP_RETRY_MAX_DELAY_MS", 30000))),
            refresh_buffer_seconds=max(0, int(config.get("ERP_TOKEN_REFRESH_BUFFER_SECONDS", 300))),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_expires_at(value) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ErpSyncClient:
    """Pushes external order status to the ERP with token refresh and bounded retries.

    Never raises for ERP trouble: every call ends in a ``SyncResult`` whose
    outcome is one of ``SyncOutcome``. Callers must not hold a database
    transaction open while calling ``set_order_status``.
    """

    def __init__(
        self,
        gateway: ErpGateway,
        settings: ErpSyncSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
        random_fn: Callable[[], float] = random.random,
        locks: TenantLockRegistry | None = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings or ErpSyncSettings()
        self._sleep = sleep
        self._clock = clock
        self._random = random_fn
        self._locks = locks or get_token_lock_registry()

    def _needs_refresh(self, record: dict) -> bool:
        expires_at = _parse_expires_at(record.get("expires_at"))
        if expires_at is None:
            return True
        return expires_at < self._clock() + timedelta(seconds=self.settings.refresh_buffer_seconds)

    def _persist_grant(
        self,
        db,
        repository: ErpTokenRepository,
        grant: TokenGrant,
        *,
        expected_refresh_token: str | None = None,
    ) -> bool:
        expires_at = (self._clock() + timedelta(seconds=max(0, int(grant.expires_in)))).replace(microsecond=0)
        fields = {
            "access_token": grant.access_token,
            "refresh_token": grant.refresh_token,
            "expires_at": expires_at.isoformat(),
            "token_type": grant.token_type or "Bearer",
        }
        with db.transaction():
            if expected_refresh_token is None:
                repository.upsert(db, **fields)
                return True
            return repository.rotate(db, expected_refresh_token=expected_refresh_token, **fields)

    def _rotated_elsewhere(self, db, repository: ErpTokenRepository, spent_refresh_token: str) -> dict | None:
        """A fresh pair written by another worker after we read ``spent_refresh_token``."""
        record = repository.get(db)
        if record is None or str(record["refresh_token"]) == spent_refresh_token:
            return None
        if self._needs_refresh(record):
            return None
        return record

    def ensure_fresh_token(self, db, tenant_id: str) -> str:
        repository = ErpTokenRepository(tenant_id=tenant_id)
        record = repository.get(db)
        if record is None:
            raise ErpTokenUnavailableError("erp_not_connected")
        if not self._needs_refresh(record):
            return str(record["access_token"])

        with self._locks.lock_for(tenant_id):
            # Another request may have rotated the pair while we waited.
            record = repository.get(db)
            if record is None:
                raise ErpTokenUnavailableError("erp_not_connected")
            if not self._needs_refresh(record):
                observe_erp_token_refresh("reused")
                return str(record["access_token"])

            spent_refresh_token = str(record["refresh_token"])
            try:
                grant = self.gateway.exchange_refresh_token(spent_refresh_token)
            except ErpGatewayError as exc:
                # Another process may have spent the same refresh token first.
                winner = self._rotated_elsewhere(db, repository, spent_refresh_token)
                if winner is not None:
                    observe_erp_token_refresh("reused")
                    return str(winner["access_token"])
                observe_erp_token_refresh("failed")
                current_app.logger.warning(
                    "erp_token_refresh_failed",
                    extra={
                        "request_id": current_request_id(default="n/a"),
                        "tenant_id": tenant_id,
                        "error_code": exc.code,
                    },
                )
                raise ErpTokenUnavailableError("erp_token_refresh_failed", str(exc)) from exc

            if not self._persist_grant(db, repository, grant, expected_refresh_token=spent_refresh_token):
                winner = self._rotated_elsewhere(db, repository, spent_refresh_token)
                if winner is None:
                    raise ErpTokenUnavailableError("erp_token_refresh_failed", "par de tokens alterado durante a renovacao")
                observe_erp_token_refresh("reused")
                current_app.logger.warning(
                    "erp_token_rotation_lost",
                    extra={"request_id": current_request_id(default="n/a"), "tenant_id": tenant_id},
                )
                return str(winner["access_token"])
            observe_erp_token_refresh("refreshed")
            current_app.logger.info(
                "erp_token_refreshed",
                extra={"request_id": current_request_id(default="n/a"), "tenant_id": tenant_id},
            )
            return grant.access_token

    def _pause(self, seconds: float) -> None:
        observe_erp_retry(seconds)
        self._sleep(seconds)

    def _finish(
        self,
        result: SyncResult,
        *,
        tenant_id: str,
        external_order_ref: str | None,
        status_code: int | None,
        started: float,
    ) -> SyncResult:
        duration_ms = (time.perf_counter() - started) * 1000.0
        observe_erp_sync(result.outcome, duration_ms)
        quiet = result.success or result.outcome == SyncOutcome.SKIPPED.value
        log = current_app.logger.info if quiet else current_app.logger.warning
        log(
            "erp_sync_result",
            extra={
                "request_id": current_request_id(default="n/a"),
                "tenant_id": tenant_id,
                "external_order_ref": external_order_ref,
                "external_status": status_code,
                "outcome": result.outcome,
                "retries_used": result.retries_used,
                "http_status": result.status_code,
                "error": result.error,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return result

    def set_order_status(self, db, tenant_id: str, external_order_ref: str | None, status_code: int) -> SyncResult:
        started = time.perf_counter()
        finish = functools.partial(
            self._finish,
            tenant_id=tenant_id,
            external_order_ref=external_order_ref,
            status_code=status_code,
            started=started,
        )

        ref = str(external_order_ref or "").strip()
        if not ref:
            return finish(SyncResult(outcome=SyncOutcome.SKIPPED.value, success=False, error="erp_order_not_linked"))

        try:
            token = self.ensure_fresh_token(db, tenant_id)
        except ErpTokenUnavailableError as exc:
            return finish(
                SyncResult(outcome=SyncOutcome.UNAVAILABLE.value, success=False, error=exc.details or exc.reason)
            )

        max_retries = self.settings.max_retries
        retries = 0
        last_status: int | None = None
        last_error: str | None = None
        had_rate_limit = False
        for attempt in range(max_retries + 1):
            try:
                response = self.gateway.put_order_status(token, ref, int(status_code))
            except ErpGatewayError as exc:
                last_status, last_error = None, str(exc)
                if exc.transient and attempt < max_retries:
                    self._pause(
                        backoff_seconds(
                            attempt,
                            base_delay_ms=self.settings.base_delay_ms,
                            max_delay_ms=self.settings.max_delay_ms,
                            random_fn=self._random,
                        )
                    )
                    retries += 1
                    continue
                if exc.transient:
                    break
                return finish(
                    SyncResult(
                        outcome=SyncOutcome.FAILED.value,
                        success=False,
                        retries_used=retries,
                        rate_limited=had_rate_limit,
                        error=last_error,
                    )
                )

            if response.ok:
                return finish(
                    SyncResult(
                        outcome=SyncOutcome.SYNCED.value,
                        success=True,
                        retries_used=retries,
                        rate_limited=had_rate_limit,
                        status_code=response.status_code,
                    )
                )

            last_status = int(response.status_code)
            last_error = f"ERP HTTP {last_status}: {(response.body or '')[:200]}".strip()
            if last_status == RATE_LIMIT_STATUS:
                had_rate_limit = True
            if not is_transient_status(last_status):
                return finish(
                    SyncResult(
                        outcome=SyncOutcome.FAILED.value,
                        success=False,
                        retries_used=retries,
                        rate_limited=had_rate_limit,
                        error=last_error,
                        status_code=last_status,
                    )
                )
            if attempt >= max_retries:
                break

            delay = None
            if last_status == RATE_LIMIT_STATUS:
                delay = retry_after_delay(response.header("Retry-After"), random_fn=self._random, now=self._clock())
            if delay is None:
                delay = backoff_seconds(
                    attempt,
                    base_delay_ms=self.settings.base_delay_ms,
                    max_delay_ms=self.settings.max_delay_ms,
                    random_fn=self._random,
                )
            self._pause(delay)
            retries += 1

        return finish(
            SyncResult(
                outcome=SyncOutcome.RATE_LIMITED.value if had_rate_limit else SyncOutcome.FAILED.value,
                success=False,
                retries_used=retries,
                rate_limited=had_rate_limit,
                error=last_error,
                status_code=last_status,
            )
        )

    def authorize(self, db, tenant_id: str, code: str, redirect_uri: str | None = None) -> dict:
        code = str(code or "").strip()
        if not code:
            raise ValidationError(code="authorization_code_required")
        try:
            grant = self.gateway.exchange_authorization_code(code, redirect_uri)
        except ErpGatewayError as exc:
            raise IntegrationError(
                code="erp_temporarily_unavailable",
                message_key="erp_temporarily_unavailable",
                details=str(exc),
            ) from exc
        repository = ErpTokenRepository(tenant_id=tenant_id)
        with self._locks.lock_for(tenant_id):
            self._persist_grant(db, repository, grant)
        current_app.logger.info(
            "erp_authorized",
            extra={"request_id": current_request_id(default="n/a"), "tenant_id": tenant_id},
        )
        return self.connection_status(db, tenant_id)

    def connection_status(self, db, tenant_id: str) -> dict:
        record = ErpTokenRepository(tenant_id=tenant_id).get(db)
        if record is None:
            return {"connected": False, "expires_at": None, "token_type": None, "needs_refresh": False}
        return {
            "connected": True,
            "expires_at": record.get("expires_at"),
            "token_type": record.get("token_type"),
            "needs_refresh": self._needs_refresh(record),
        }


def build_erp_gateway(config) -> ErpGateway:
    mode = str(config.get("ERP_MODE") or "mock").strip().lower()
    if mode == "http":
        return HttpErpGateway.from_config(config)
    if mode == "mock":
        return InMemoryErpSimulator()
    raise RuntimeError(f"ERP_MODE invalido: {mode}")


def get_erp_sync_client() -> ErpSyncClient:
    """One client per app; tests may replace ``app.extensions['erp_sync_client']``."""
    client = current_app.extensions.get("erp_sync_client")
    if client is None:
        client = ErpSyncClient(
            build_erp_gateway(current_app.config),
            ErpSyncSettings.from_config(current_app.config),
        )
        current_app.extensions["erp_sync_client"] = client
    return client
