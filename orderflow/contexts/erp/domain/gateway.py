from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict


class ErpGatewayError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None
        self.status_code = status_code
        self.transient = bool(transient)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ErpHttpResponse:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= int(self.status_code) < 300

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class ErpGateway(ABC):
    """Transport to the tenant's ERP. Implementations never retry; the sync client owns that."""

    @abstractmethod
    def exchange_refresh_token(self, refresh_token: str) -> TokenGrant:
        raise NotImplementedError

    @abstractmethod
    def exchange_authorization_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        raise NotImplementedError

    @abstractmethod
    def put_order_status(self, access_token: str, external_order_ref: str, status_code: int) -> ErpHttpResponse:
        """Return the HTTP response for any status; raise ``ErpGatewayError`` only for transport failures."""
        raise NotImplementedError
