"""HTTP client for the relief API, used by merchant devices.

Wraps ``httpx`` with the role headers the API expects and turns failed calls
into ``ApiError`` so the offline syncer can count them as retries.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

log = logging.getLogger(__name__)


class ApiError(Exception):
    """A call to the relief API failed (transport error or non-2xx reply)."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Optional[dict] = None):
        self.status = status
        self.payload = payload or {}
        super().__init__(message)


class RelifexClient:
    def __init__(
        self,
        base_url: str,
        role: str = "merchant",
        user_ref: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"X-Relifex-Role": role}
        if user_ref:
            headers["X-Relifex-User"] = user_ref
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RelifexClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {path} failed: {e}") from e
        if not resp.is_success:
            try:
                body = resp.json()
            except ValueError:
                body = {"message": resp.text[:200]}
            if not isinstance(body, dict):
                body = {"message": str(body)[:200]}
            raise ApiError(
                body.get("message") or f"{method} {path} returned {resp.status_code}",
                status=resp.status_code,
                payload=body,
            )
        try:
            return resp.json()
        except ValueError as e:
            # Captive portals and proxies answer with HTML
            raise ApiError(f"{method} {path} returned a non-JSON body", status=resp.status_code) from e

    def ping(self) -> bool:
        try:
            self._request("GET", "/ping")
            return True
        except ApiError:
            return False

    def submit_offline_transaction(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        """Replay one queued offline payment."""
        return self._request("POST", "/offline/transactions", json=tx)
