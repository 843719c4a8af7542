"""Shared HTTP plumbing for the Google API clients.

ApiClient owns a requests session carrying the user's bearer token, maps
error responses onto ApiError subclasses and retries rate limited or
failed requests with exponential backoff. Non-idempotent requests are only
retried when the server cannot have processed them.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from ..core.state import Credentials
from .logging import get_logger, mask_sensitive_data


DEFAULT_TIMEOUT = 60  # seconds
DEFAULT_MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0

# Methods that are safe to send again after a timeout or server error
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


class ApiError(Exception):
    """Base exception for Google API errors."""

    pass


class ApiAuthError(ApiError):
    """Authentication or authorization error (401/403)."""

    pass


class ApiNotFoundError(ApiError):
    """Resource not found (404)."""

    pass


class ApiRateLimitError(ApiError):
    """Rate limit exceeded (429) or transient server error (5xx)."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.status_code = status_code


class ApiClient:
    """Base class for clients authenticated with the user's OAuth token.

    Attributes:
        credentials: OAuth credentials of the exporting user.
        timeout: Request timeout in seconds.
        max_retries: Attempts per request on rate limits and server errors.
    """

    def __init__(
        self,
        credentials: Credentials,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": credentials.authorization_header(),
                "User-Agent": "table-export/1.0",
            }
        )
        self._logger = logger or get_logger("utils.http")

        self._logger.debug(
            f"{type(self).__name__} initialized with token: "
            f"{mask_sensitive_data(credentials.access_token)}"
        )

    def _handle_response_error(self, response: requests.Response, context: str) -> None:
        """Raise the matching ApiError for a failed response.

        Args:
            response: The HTTP response to check.
            context: Description of the operation for error messages.

        Raises:
            ApiAuthError: For 401/403 responses.
            ApiNotFoundError: For 404 responses.
            ApiRateLimitError: For 429 and 5xx responses.
            ApiError: For other error responses.
        """
        if response.ok:
            return

        status_code = response.status_code
        try:
            error_message = response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            error_message = response.text or f"HTTP {status_code}"

        if status_code in (401, 403):
            self._logger.error(f"Access denied for {context}: {error_message}")
            raise ApiAuthError(f"Access denied: {error_message}")

        if status_code == 404:
            raise ApiNotFoundError(f"Not found: {error_message}")

        if status_code == 429 or status_code >= 500:
            retry_after = None
            if "Retry-After" in response.headers:
                try:
                    retry_after = int(response.headers["Retry-After"])
                except ValueError:
                    pass
            raise ApiRateLimitError(
                f"HTTP {status_code}: {error_message}",
                retry_after=retry_after,
                status_code=status_code,
            )

        self._logger.error(f"HTTP {status_code} for {context}: {error_message}")
        raise ApiError(f"HTTP {status_code}: {error_message}")

    def _calculate_backoff(self, attempt: int, retry_after: Optional[int] = None) -> float:
        """Calculate backoff time with exponential increase.

        Args:
            attempt: Current attempt number (0-indexed).
            retry_after: Optional Retry-After value from server.

        Returns:
            Seconds to wait before next retry.
        """
        if retry_after is not None:
            return float(retry_after)

        backoff = INITIAL_BACKOFF_SECONDS * (BACKOFF_MULTIPLIER ** attempt)
        return min(backoff, MAX_BACKOFF_SECONDS)

    def _send(
        self,
        method: str,
        url: str,
        context: str,
        idempotent: Optional[bool] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send a request, retrying rate limits and connection failures.

        Auth and not found errors are raised immediately. Requests that are
        not idempotent (POST by default) are only retried when the server
        cannot have acted on them: a 429 response or a failed connect.
        Timeouts and 5xx responses could hide a request that went through,
        so those fail on the first attempt.

        Args:
            method: HTTP method.
            url: Request URL.
            context: Description of the operation for logs and errors.
            idempotent: Override whether the request may be sent twice.
                Defaults to True for GET, HEAD, OPTIONS, PUT and DELETE.

        Raises:
            ApiError: If the request still fails after max_retries attempts,
                or on the first unsafe failure of a non-idempotent request.
        """
        if idempotent is None:
            idempotent = method.upper() in IDEMPOTENT_METHODS

        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            retry_after: Optional[int] = None
            try:
                response = self._session.request(method, url, timeout=self.timeout, **kwargs)
                self._handle_response_error(response, context)
                return response

            except ApiRateLimitError as e:
                if not idempotent and e.status_code != 429:
                    self._logger.error(f"{context} failed, not retrying {method}: {e}")
                    raise
                last_error = e
                retry_after = e.retry_after

            except requests.exceptions.ConnectTimeout as e:
                last_error = e

            except requests.exceptions.RequestException as e:
                if not idempotent:
                    error_msg = f"{context} failed, not retrying {method}: {e}"
                    self._logger.error(error_msg)
                    raise ApiError(error_msg) from e
                last_error = e

            if attempt < self.max_retries - 1:
                backoff = self._calculate_backoff(attempt, retry_after)
                self._logger.warning(
                    f"{context} failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{last_error}. Retrying in {backoff:.1f}s..."
                )
                time.sleep(backoff)

        error_msg = f"{context} failed after {self.max_retries} attempts: {last_error}"
        self._logger.error(error_msg)
        raise ApiError(error_msg) from last_error

    def _request_json(self, method: str, url: str, context: str, **kwargs: Any) -> Dict[str, Any]:
        response = self._send(method, url, context, **kwargs)
        return response.json() if response.content else {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(token={mask_sensitive_data(self.credentials.access_token)!r})"
