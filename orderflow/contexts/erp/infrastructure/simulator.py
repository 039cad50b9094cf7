from __future__ import annotations

import hashlib
import json
from collections import deque
from threading import Lock
from typing import Deque, Dict, List

from orderflow.contexts.erp.domain.gateway import ErpGateway, ErpGatewayError, ErpHttpResponse, TokenGrant


class InMemoryErpSimulator(ErpGateway):
    """ERP stand-in used when ERP_MODE=mock and in tests.

    Tokens rotate on every exchange, so an old refresh token stops working
    like it does on the real provider. Status pushes answer 200 unless a
    scripted response was queued with ``queue_responses``.
    """

    def __init__(self, seed: int = 42, *, expires_in: int = 21600) -> None:
        self.seed = int(seed)
        self.expires_in = int(expires_in)
        self._lock = Lock()
        self._issued = 0
        self._valid_access: set[str] = set()
        self._valid_refresh: set[str] = set()
        self._scripted: Deque[ErpHttpResponse] = deque()
        self._fail_token_exchange = 0
        self.order_statuses: Dict[str, int] = {}
        self.calls: List[dict] = []

    def _token_pair(self, hint: str) -> TokenGrant:
        self._issued += 1
        digest = hashlib.sha256(f"{self.seed}:{hint}:{self._issued}".encode("utf-8")).hexdigest()
        grant = TokenGrant(
            access_token=f"sim-access-{digest[:16]}",
            refresh_token=f"sim-refresh-{digest[16:32]}",
            expires_in=self.expires_in,
        )
        self._valid_access.add(grant.access_token)
        self._valid_refresh.add(grant.refresh_token)
        return grant

    def queue_responses(self, *responses) -> None:
        """Queue status-push answers: ints, ``(status, headers)`` tuples or ``ErpHttpResponse``."""
        with self._lock:
            for item in responses:
                if isinstance(item, ErpHttpResponse):
                    self._scripted.append(item)
                elif isinstance(item, tuple):
                    status, headers = item
                    self._scripted.append(ErpHttpResponse(status_code=int(status), headers=dict(headers or {})))
                else:
                    self._scripted.append(ErpHttpResponse(status_code=int(item)))

    def fail_next_token_exchange(self, times: int = 1) -> None:
        with self._lock:
            self._fail_token_exchange += int(times)

    def exchange_refresh_token(self, refresh_token: str) -> TokenGrant:
        with self._lock:
            self.calls.append({"op": "refresh_token"})
            if self._fail_token_exchange > 0:
                self._fail_token_exchange -= 1
                raise ErpGatewayError("ERP indisponivel para renovar token.", code="token_exchange_failed", transient=True)
            if refresh_token not in self._valid_refresh:
                raise ErpGatewayError("refresh_token invalido.", code="invalid_grant", status_code=400)
            self._valid_refresh.discard(refresh_token)
            return self._token_pair(refresh_token)

    def exchange_authorization_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        with self._lock:
            self.calls.append({"op": "authorization_code"})
            if self._fail_token_exchange > 0:
                self._fail_token_exchange -= 1
                raise ErpGatewayError("ERP indisponivel para autorizar.", code="token_exchange_failed", transient=True)
            if not str(code or "").strip():
                raise ErpGatewayError("code invalido.", code="invalid_grant", status_code=400)
            return self._token_pair(code)

    def put_order_status(self, access_token: str, external_order_ref: str, status_code: int) -> ErpHttpResponse:
        with self._lock:
            self.calls.append(
                {"op": "put_order_status", "ref": external_order_ref, "status_code": int(status_code)}
            )
            if self._scripted:
                response = self._scripted.popleft()
                if response.ok:
                    self.order_statuses[str(external_order_ref)] = int(status_code)
                return response
            if access_token not in self._valid_access:
                return ErpHttpResponse(status_code=401, body=json.dumps({"error": "invalid_token"}))
            self.order_statuses[str(external_order_ref)] = int(status_code)
            return ErpHttpResponse(status_code=200, body=json.dumps({"data": {"id": external_order_ref}}))

    def status_calls(self) -> List[dict]:
        return [call for call in self.calls if call["op"] == "put_order_status"]
