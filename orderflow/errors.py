from __future__ import annotations

from typing import Any, Dict

from orderflow.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or code or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Nao foi possivel concluir a operacao.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "status_invalid"
    default_http_status = 400
    default_critical = False


class PermissionError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "order_not_found"
    default_message_key = "order_not_found"
    default_http_status = 404
    default_critical = False


class ConflictError(UserActionError):
    """Another writer changed the order between our read and our write."""

    default_code = "order_conflict"
    default_message_key = "order_conflict"
    default_http_status = 409
    default_critical = False


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "erp_temporarily_unavailable"
    default_http_status = 502
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


def integration_error_for_sync(outcome: str, details: str | None = None) -> IntegrationError:
    normalized = str(outcome or "").strip().lower()
    if normalized == "rate_limited":
        return IntegrationError(
            code="erp_rate_limited",
            message_key="erp_rate_limited",
            http_status=503,
            details=details,
        )
    if normalized == "unavailable":
        return IntegrationError(
            code="erp_not_connected",
            message_key="erp_not_connected",
            http_status=502,
            details=details,
        )
    return IntegrationError(
        code="erp_temporarily_unavailable",
        message_key="erp_temporarily_unavailable",
        http_status=502,
        details=details,
    )
