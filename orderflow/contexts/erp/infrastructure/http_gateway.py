from __future__ import annotations

import base64
import json
import socket
import ssl
import urllib.error
import urllib.parse
import urllib.request
from urllib.parse import quote

from orderflow.contexts.erp.domain.gateway import ErpGateway, ErpGatewayError, ErpHttpResponse, TokenGrant


class HttpErpGateway(ErpGateway):
    """OAuth2 + REST client over urllib for the ERP order-status API."""

    def __init__(
        self,
        *,
        api_url: str,
        token_url: str,
        client_id: str | None,
        client_secret: str | None,
        status_path: str = "/orders/{ref}/status/{code}",
        timeout_seconds: int = 20,
        verify_ssl: bool = True,
    ) -> None:
        self.api_url = str(api_url or "").rstrip("/")
        self.token_url = str(token_url or "").strip()
        self.client_id = client_id
        self.client_secret = client_secret
        self.status_path = status_path
        self.timeout_seconds = int(timeout_seconds)
        self._ssl_context = None if verify_ssl else ssl._create_unverified_context()

    @classmethod
    def from_config(cls, config) -> "HttpErpGateway":
        return cls(
            api_url=config.get("ERP_API_URL"),
            token_url=config.get("ERP_TOKEN_URL"),
            client_id=config.get("ERP_CLIENT_ID"),
            client_secret=config.get("ERP_CLIENT_SECRET"),
            status_path=config.get("ERP_STATUS_PATH") or "/orders/{ref}/status/{code}",
            timeout_seconds=int(config.get("ERP_TIMEOUT_SECONDS") or 20),
            verify_ssl=bool(config.get("ERP_VERIFY_SSL", True)),
        )

    def exchange_refresh_token(self, refresh_token: str) -> TokenGrant:
        return self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    def exchange_authorization_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        form = {"grant_type": "authorization_code", "code": code}
        if redirect_uri:
            form["redirect_uri"] = redirect_uri
        return self._token_request(form)

    def put_order_status(self, access_token: str, external_order_ref: str, status_code: int) -> ErpHttpResponse:
        path = self.status_path.format(ref=quote(str(external_order_ref), safe=""), code=int(status_code))
        request = urllib.request.Request(
            f"{self.api_url}/{path.lstrip('/')}",
            data=b"",
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {access_token}",
            },
            method="PUT",
        )
        return self._send(request)

    def _basic_auth_header(self) -> str:
        if not self.client_id or not self.client_secret:
            raise ErpGatewayError("ERP_CLIENT_ID/ERP_CLIENT_SECRET nao configurados.", code="erp_not_configured")
        raw = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    def _token_request(self, form: dict) -> TokenGrant:
        if not self.token_url:
            raise ErpGatewayError("ERP_TOKEN_URL nao configurado.", code="erp_not_configured")
        request = urllib.request.Request(
            self.token_url,
            data=urllib.parse.urlencode(form).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
                "Authorization": self._basic_auth_header(),
            },
            method="POST",
        )
        response = self._send(request)
        if not response.ok:
            raise ErpGatewayError(
                f"ERP HTTP {response.status_code}: {response.body[:200]}",
                code="token_exchange_failed",
                status_code=response.status_code,
                transient=response.status_code == 429 or response.status_code >= 500,
            )
        try:
            payload = json.loads(response.body or "{}")
        except json.JSONDecodeError as exc:
            raise ErpGatewayError("ERP retornou JSON invalido.", code="token_exchange_failed") from exc

        access_token = str(payload.get("access_token") or "").strip()
        refresh_token = str(payload.get("refresh_token") or "").strip()
        if not access_token or not refresh_token:
            raise ErpGatewayError("ERP nao retornou o par de tokens.", code="token_exchange_failed")
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            token_type=str(payload.get("token_type") or "Bearer"),
        )

    def _send(self, request: urllib.request.Request) -> ErpHttpResponse:
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds, context=self._ssl_context) as response:
                return ErpHttpResponse(
                    status_code=int(response.status),
                    headers=dict(response.headers.items()),
                    body=response.read().decode("utf-8", errors="replace"),
                )
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            return ErpHttpResponse(
                status_code=int(exc.code),
                headers=dict(exc.headers.items()) if exc.headers else {},
                body=body,
            )
        except urllib.error.URLError as exc:
            raise ErpGatewayError(f"Erro de conexao ERP: {exc.reason}", code="network_error", transient=True) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ErpGatewayError("Tempo esgotado ao chamar o ERP.", code="timeout", transient=True) from exc
