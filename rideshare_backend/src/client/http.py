"""
HTTP layer for Rideshare API clients.

Every request carries the stored bearer token. A 401 from the API clears the
token and hands control to the on_unauthorized callback (the login redirect in
a UI), then raises ApiError like any other failure.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
DEFAULT_TIMEOUT = 10.0


class ApiError(Exception):
    """Non-2xx response (or transport failure, status_code=0) from the API."""

    def __init__(self, status_code: int, message: str, payload: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}
        super().__init__(f"{status_code}: {message}")


class TokenStore:
    """In-memory holder for the access token."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


def _error_message(response: requests.Response) -> str:
    """Pull the human message out of the API error envelope."""
    try:
        body = response.json()
    except ValueError:
        return response.reason or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "detail"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return response.reason or f"HTTP {response.status_code}"


class ApiClient:
    """Thin JSON client over requests.Session."""

    def __init__(
        self,
        base_url: str,
        token_store: Optional[TokenStore] = None,
        on_unauthorized: Optional[Callable[[str], None]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_store = token_store or TokenStore()
        self.on_unauthorized = on_unauthorized
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self.token_store.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    # PUBLIC_INTERFACE
    def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send one request and return the decoded JSON body (None for empty bodies).

        Raises:
            ApiError: on transport failure or any non-2xx status.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = self.session.request(
                method, url, json=json, params=params, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise ApiError(0, f"Network error: {exc}") from exc

        if response.status_code == 401:
            self.token_store.clear()
            if self.on_unauthorized is not None:
                self.on_unauthorized(LOGIN_PATH)
            raise ApiError(401, _error_message(response))

        if not response.ok:
            payload = None
            try:
                payload = response.json()
            except ValueError:
                pass
            raise ApiError(response.status_code, _error_message(response), payload if isinstance(payload, dict) else None)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("POST", path, json=json)

    def patch(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("PATCH", path, json=json)

    def delete(self, path: str) -> Any:
        return self.request("DELETE", path)

    # PUBLIC_INTERFACE
    def login(self, email: str, password: str) -> str:
        """Log in and keep the returned token for later calls."""
        body = self.post("/auth/login", {"email": email, "password": password})
        token = body["access_token"]
        self.token_store.set(token)
        return token
