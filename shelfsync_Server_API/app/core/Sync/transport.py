# Sync/transport.py
# Description: Device-side HTTP client for the /sync endpoint.
#
# Imports
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional
#
# 3rd-party Libraries
import requests
from loguru import logger
#
# Local Imports
from shelfsync_Server_API.app.core.config import DEFAULT_CLIENT_TIMEOUT_SECONDS
from .exceptions import (
    AuthenticationError,
    NetworkError,
    SyncError,
    SyncTimeoutError,
    TransportError,
    UpstreamStoreError,
    ValidationError,
)
#
########################################################################################################################

TokenProvider = Callable[[], Optional[str]]


class SyncTransport(ABC):
    """Abstract base class for sync transport layers."""

    @abstractmethod
    def pull(self, since: int, kind: Optional[str] = None, book: Optional[str] = None,
             meta_hash: Optional[str] = None) -> Dict[str, Any]:
        """
        Fetches records changed after since (epoch ms, exclusive).

        Returns:
            The response body: one list per requested kind, null for the others.

        Raises:
            SyncError: a subclass describing why the pull failed.
        """
        pass

    @abstractmethod
    def push(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Sends local records, keyed by kind.

        Returns:
            The authoritative records per pushed kind, plus an 'errors' map when some records failed.
        """
        pass


class SyncClient(SyncTransport):
    """HTTP transport over a requests Session, authenticated with a bearer token."""

    def __init__(self, base_url: str, token_provider: TokenProvider,
                 timeout: float = DEFAULT_CLIENT_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.sync_url = f"{base_url.rstrip('/')}/sync"
        self.token_provider = token_provider
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info(f"SyncClient initialized for URL: {self.sync_url} (timeout {self.timeout}s)")

    def pull(self, since: int, kind: Optional[str] = None, book: Optional[str] = None,
             meta_hash: Optional[str] = None) -> Dict[str, Any]:
        params = {"since": str(int(since))}
        if kind:
            params["type"] = kind
        if book:
            params["book"] = book
        if meta_hash:
            params["meta_hash"] = meta_hash
        logger.debug(f"Pulling changes with params: {params}")
        return self._request("GET", params=params)

    def push(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        counts = {k: len(v) for k, v in payload.items() if isinstance(v, list)}
        logger.debug(f"Pushing records: {counts}")
        return self._request("POST", json_body=payload)

    def close(self):
        self.session.close()

    # --- Internals ---

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider()
        if not token:
            logger.warning("No access token available; not contacting the sync server.")
            raise AuthenticationError()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _request(self, method: str, params: Optional[Dict[str, str]] = None,
                 json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = self._headers()
        try:
            response = self.session.request(method, self.sync_url, params=params, json=json_body,
                                            headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.warning(f"{method} {self.sync_url} timed out after {self.timeout}s")
            raise SyncTimeoutError(f"Request timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"{method} {self.sync_url} failed to connect: {e}")
            raise NetworkError(f"Could not reach sync server: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"HTTP request failed during {method} {self.sync_url}: {e}")
            raise NetworkError(f"Sync request failed: {e}") from e

        if not response.ok:
            raise self._error_for_response(response)

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Failed to decode JSON response from {self.sync_url}: {e}")
            raise TransportError(f"Invalid JSON response received: {e}", status_code=response.status_code) from e
        if not isinstance(body, dict):
            raise TransportError(f"Invalid response format: expected object, got {type(body).__name__}",
                                 status_code=response.status_code)
        return body

    @staticmethod
    def _error_for_response(response: requests.Response) -> SyncError:
        message = f"{response.status_code} {response.reason}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
            message = body["error"]

        status_code = response.status_code
        logger.warning(f"Sync server answered {status_code}: {message}")
        if status_code in (401, 403):
            return AuthenticationError(message)
        if status_code in (400, 422):
            return ValidationError(message)
        if status_code >= 500:
            return UpstreamStoreError(message)
        return TransportError(message, status_code=status_code)

#
# End of Sync/transport.py
########################################################################################################################
