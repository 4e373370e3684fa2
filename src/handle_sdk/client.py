"""Typed SDK client for handle registry endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from handle_sdk.errors import (
    RegistryRequestError,
    RegistryUnavailableError,
    SchemaValidationError,
)
from handle_sdk.status import (
    HandleStatus,
    parse_handle_status,
    parse_handle_statuses,
    unknown_status,
)

DEFAULT_REGISTRY_BASE = "https://testnet.atbitcoin.com"
DEFAULT_PAYMENT_METHOD = "google_iap"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    deadline: int
    handle_status: HandleStatus
    product_id: str


@dataclass(frozen=True)
class ClaimResult:
    handle_status: Optional[HandleStatus]
    error: Optional[str] = None


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class RegistryClient:
    base_url: str = DEFAULT_REGISTRY_BASE
    timeout: float = 10.0
    retries: int = 2

    def __post_init__(self) -> None:
        self._session = requests.Session()
        retry = Retry(
            total=max(0, int(self.retries)),
            connect=max(0, int(self.retries)),
            read=max(0, int(self.retries)),
            status=max(0, int(self.retries)),
            status_forcelist=(429, 500, 502, 503, 504),
            backoff_factor=0.2,
            allowed_methods=("GET", "POST"),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, *, json_payload: dict | None = None):
        try:
            return self._session.request(
                method,
                self._url(path),
                json=json_payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except (requests.RequestException, OSError) as exc:
            raise RegistryUnavailableError(str(exc)) from exc

    @staticmethod
    def _json_body(response) -> Any:
        try:
            return response.json()
        except Exception as exc:
            raise SchemaValidationError("registry returned a non-JSON body") from exc

    def _request(self, method: str, path: str, *, json_payload: dict | None = None) -> Any:
        response = self._send(method, path, json_payload=json_payload)

        if response.status_code >= 400:
            body: object | None = None
            detail: object | None = None
            try:
                body = response.json()
            except Exception:
                body = None
            if isinstance(body, dict):
                detail = body.get("error", body.get("detail"))
            if isinstance(detail, str):
                message = f"registry request failed: {response.status_code} {detail}"
            else:
                message = f"registry request failed: {response.status_code} {response.text}"
            raise RegistryRequestError(
                message,
                status_code=response.status_code,
                detail=detail,
                body=body,
            )
        return self._json_body(response)

    def fetch_proposed_handles(self, query: str) -> list[str]:
        """Best-effort suggestion lookup; any failure yields an empty list."""
        try:
            data = self._request("POST", "/api/proposed", json_payload={"query": query})
        except (RegistryUnavailableError, SchemaValidationError) as exc:
            logger.warning("failed to fetch proposed handles: %s", exc)
            return []
        if not isinstance(data, dict):
            logger.warning("failed to fetch proposed handles: unexpected body")
            return []
        proposed = data.get("available_subspaces") or []
        if not isinstance(proposed, list):
            return []
        return [item for item in proposed if isinstance(item, str)]

    def fetch_handle_statuses(self, handles: list[str]) -> list[HandleStatus]:
        data = self._request("POST", "/api/spaces/status", json_payload={"handles": list(handles)})
        return parse_handle_statuses(data)

    def fetch_handle_status(self, handle: str) -> HandleStatus:
        for status in self.fetch_handle_statuses([handle]):
            if status.handle == handle:
                return status
        return unknown_status(handle)

    def reserve_handle(
        self,
        handle: str,
        script_pubkey: str,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
    ) -> Reservation:
        data = self._request(
            "POST",
            "/api/reserve",
            json_payload={
                "handle": handle,
                "script_pubkey": script_pubkey,
                "payment_method": payment_method,
            },
        )
        if not isinstance(data, dict):
            raise SchemaValidationError("invalid reservation response")
        if isinstance(data.get("error"), str):
            raise RegistryRequestError(
                f"reservation rejected: {data['error']}",
                detail=data["error"],
                body=data,
            )
        deadline = data.get("deadline")
        product_id = data.get("product_id")
        if not _is_number(deadline) or not isinstance(product_id, str):
            raise SchemaValidationError("invalid reservation response")
        return Reservation(
            deadline=int(deadline),
            handle_status=parse_handle_status(data.get("handle_status")),
            product_id=product_id,
        )

    def claim_handle(self, handle: str, script_pubkey: str, purchase_token: str) -> ClaimResult:
        # The claim endpoint reports rejections in the body, sometimes with a 4xx.
        response = self._send(
            "POST",
            "/api/android/claim",
            json_payload={
                "handle": handle,
                "script_pubkey": script_pubkey,
                "purchase_token": purchase_token,
            },
        )
        data = self._json_body(response)
        if not isinstance(data, dict):
            raise SchemaValidationError("invalid claim response")
        error = data.get("error")
        if error is not None and not isinstance(error, str):
            raise SchemaValidationError("invalid claim response")
        raw_status = data.get("handle_status")
        if raw_status is None and error is not None:
            return ClaimResult(handle_status=None, error=error)
        return ClaimResult(handle_status=parse_handle_status(raw_status), error=error)


__all__ = ["RegistryClient", "Reservation", "ClaimResult", "DEFAULT_REGISTRY_BASE"]
