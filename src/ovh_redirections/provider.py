"""Remote resource client for the OVH API.

Only the request contract matters to the rest of the package: every caller
goes through ``RemoteClient.request(method, path, body)`` and gets decoded
JSON back, so tests can substitute an in-memory fake.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

# =============================================================================
# Endpoints
# =============================================================================

ENDPOINTS: Dict[str, str] = {
    "ovh-eu": "https://eu.api.ovh.com/1.0",
    "ovh-ca": "https://ca.api.ovh.com/1.0",
    "ovh-us": "https://api.us.ovhcloud.com/1.0",
    "kimsufi-eu": "https://eu.api.kimsufi.com/1.0",
    "kimsufi-ca": "https://ca.api.kimsufi.com/1.0",
    "soyoustart-eu": "https://eu.api.soyoustart.com/1.0",
    "soyoustart-ca": "https://ca.api.soyoustart.com/1.0",
}

ACCESS_RULES: List[Dict[str, str]] = [
    {"method": "GET", "path": "/*"},
    {"method": "POST", "path": "/*"},
    {"method": "PUT", "path": "/*"},
    {"method": "DELETE", "path": "/*"},
]


def resolve_endpoint(endpoint: str) -> str:
    """Map an endpoint alias to its base URL; full URLs pass through."""
    value = (endpoint or "").strip()
    if value.startswith("https://") or value.startswith("http://"):
        return value.rstrip("/")
    try:
        return ENDPOINTS[value.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown OVH endpoint '{endpoint}'. Known endpoints: {', '.join(sorted(ENDPOINTS))}"
        ) from None


# =============================================================================
# Errors
# =============================================================================


class ApiError(Exception):
    """A remote call failed (transport, HTTP status, or undecodable body)."""

    def __init__(self, message: str, *, status: Optional[int] = None, path: str = ""):
        super().__init__(message)
        self.message = message
        self.status = status
        self.path = path

    @property
    def not_found(self) -> bool:
        return self.status == 404

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.message} (HTTP {self.status} on {self.path})"
        return f"{self.message} ({self.path})" if self.path else self.message


# =============================================================================
# Client Interface and Implementation
# =============================================================================


class RemoteClient(ABC):
    """Abstract request contract for the provider API."""

    @abstractmethod
    def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """Perform a call and return the decoded JSON response."""
        pass


class OvhClient(RemoteClient):
    """Signed OVH API client built on a ``requests.Session``."""

    def __init__(
        self,
        endpoint: str,
        app_key: str,
        app_secret: str,
        consumer_key: str = "",
        timeout_seconds: float = 10.0,
    ):
        self._base = resolve_endpoint(endpoint)
        self._app_key = app_key
        self._app_secret = app_secret
        self._consumer_key = consumer_key
        self._timeout = timeout_seconds
        self._time_delta: Optional[int] = None
        self._session = requests.Session()
        self._session.headers.update({"X-Ovh-Application": app_key})

    @property
    def base_url(self) -> str:
        return self._base

    def time_delta(self) -> int:
        """Offset between the API server clock and the local clock, fetched once."""
        if self._time_delta is None:
            server_time = self._call("GET", "/auth/time", None, signed=False)
            self._time_delta = int(server_time) - int(time.time())
        return self._time_delta

    def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self._call(method, path, body, signed=True)

    def request_credential(self, redirect_url: str = "") -> Dict[str, Any]:
        """Ask for a new consumer key with full access on every path.

        Returns the provider response, which holds ``validationUrl`` and
        ``consumerKey``; the key is usable once the URL has been visited.
        """
        body: Dict[str, Any] = {"accessRules": ACCESS_RULES}
        if redirect_url:
            body["redirection"] = redirect_url
        return self._call("POST", "/auth/credential", body, signed=False)

    def _call(
        self, method: str, path: str, body: Optional[Dict[str, Any]], *, signed: bool
    ) -> Any:
        method = method.upper()
        target = f"{self._base}{path}"
        payload = ""
        if body:
            if method in ("GET", "DELETE"):
                target = f"{target}?{urlencode(body)}"
            else:
                payload = json.dumps(body)

        headers: Dict[str, str] = {}
        if payload:
            headers["Content-Type"] = "application/json"
        if signed:
            headers.update(self._signature_headers(method, target, payload))

        logger.debug(f"{method} {path}")
        try:
            response = self._session.request(
                method, target, data=payload or None, headers=headers, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise ApiError(f"Request failed: {e}", path=path) from e

        if response.status_code >= 400:
            raise ApiError(_error_message(response), status=response.status_code, path=path)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(
                f"Invalid JSON in response: {e}", status=response.status_code, path=path
            ) from e

    def _signature_headers(self, method: str, target: str, payload: str) -> Dict[str, str]:
        if not self._consumer_key:
            raise ApiError("No consumer key configured; run 'authorize' first", path=target)
        now = str(int(time.time()) + self.time_delta())
        digest = hashlib.sha1(
            "+".join(
                [self._app_secret, self._consumer_key, method, target, payload, now]
            ).encode("utf-8")
        ).hexdigest()
        return {
            "X-Ovh-Consumer": self._consumer_key,
            "X-Ovh-Timestamp": now,
            "X-Ovh-Signature": f"$1${digest}",
        }


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.reason or "Remote error"


# =============================================================================
# Redirection Endpoints
# =============================================================================


def redirection_path(domain: str, redirection_id: Any = None) -> str:
    base = f"/email/domain/{domain}/redirection"
    if redirection_id is None:
        return base
    return f"{base}/{redirection_id}"
