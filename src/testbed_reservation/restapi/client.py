"""Testbed REST API client.

Provides an HTTP client with basic authentication, thread safety, a bounded
retry policy for timed-out reads, and decoding of every JSON response into a
:class:`~.types.Resource` envelope.
"""

import platform
import threading
import time
from typing import Any

import httpx
import structlog

from .. import __version__
from ..errors import ApiError, AuthenticationError
from .types import Resource

logger = structlog.get_logger(__name__)

DEFAULT_API_VERSION = "sid"

DEFAULT_TIMEOUT = 30.0

DEFAULT_RETRIES = 3

DEFAULT_RETRY_BACKOFF = 1.0

DEFAULT_CONFIG_HINT = (
    "Check the username and password in ~/.testbed_api.json, or point the "
    "TESTBED_API_CONFIG environment variable (or the conf_file option) at a "
    "file holding valid credentials"
)

# Markers the API uses when a job or deployment has already been torn down.
ALREADY_RELEASED_MARKERS = ("already killed", "already terminated")


def user_agent() -> str:
    """Client identifier sent with every request, for server-side diagnostics."""
    return (
        f"testbed-reservation/{__version__} "
        f"({platform.system()} {platform.release()}) "
        f"Python {platform.python_version()}"
    )


class RestClient:
    """HTTP client for the testbed REST API.

    All paths are resolved relative to ``base_url``. Resource paths are
    versioned (``"{api_version}/{path}"``, see :meth:`api_path`); hrefs taken
    from ``links`` already carry the version and are passed through as is.

    Thread-safe through thread-local storage of httpx.Client instances.
    Can be used as a context manager for automatic cleanup.
    """

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        transport: httpx.BaseTransport | None = None,
        config_hint: str = DEFAULT_CONFIG_HINT,
    ):
        """Initialize the REST API client and check connectivity.

        Args:
            base_url: Root URL of the API (e.g., "https://api.grid5000.fr/").
            username: User name; credentials are only sent when both the
                username and the password are given (inside the testbed the
                API is reachable without them).
            password: Password for ``username``.
            api_version: API version prefix (default: sid).
            timeout: Request timeout in seconds (default: 30.0).
            retries: How many times a timed-out GET is retried (default: 3).
            retry_backoff: Seconds to sleep between retries (default: 1.0).
            transport: Optional httpx transport, mainly for tests.
            config_hint: Guidance appended to authentication errors.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
            AuthenticationError: If the API rejects the credentials.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)
        if retries < 0:
            msg = "retries cannot be negative"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/") + "/"
        self.api_version = api_version.strip("/")
        self.username = username
        self._timeout = timeout
        self._retries = retries
        self._retry_backoff = retry_backoff
        self._transport = transport
        self._config_hint = config_hint

        self._auth = (
            httpx.BasicAuth(username, password)
            if username is not None and password is not None
            else None
        )
        self._headers = {
            "Accept": "application/json",
            "User-Agent": user_agent(),
        }

        # Use thread-local storage for httpx.Client (thread safety)
        self._local = threading.local()

        self._test_connection()

    @property
    def client(self) -> httpx.Client:
        """Get or create thread-local httpx client.

        Each thread gets its own httpx.Client instance for thread safety.
        Clients are created lazily and reused within the same thread.

        Returns:
            Thread-local httpx.Client instance.
        """
        if not hasattr(self._local, "client") or self._local.client.is_closed:
            self._local.client = httpx.Client(
                base_url=self.base_url,
                auth=self._auth,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._local.client

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and cleanup resources."""
        self.close()

    def close(self):
        """Close the thread-local HTTP client if open."""
        if hasattr(self._local, "client") and not self._local.client.is_closed:
            self._local.client.close()

    def api_path(self, path: str) -> str:
        """Prefix a resource path with the API version."""
        return f"{self.api_version}/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> httpx.Response:
        """Send one request and turn error statuses into :class:`ApiError`."""
        path = path.lstrip("/")
        start_time = time.time()
        logger.debug("Making API request", method=method, path=path, params=params)
        try:
            if payload is None:
                response = self.client.request(method, path, params=params)
            else:
                response = self.client.request(
                    method,
                    path,
                    params=params,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.debug(
                "API request failed",
                method=method,
                path=path,
                status_code=exc.response.status_code,
                duration_seconds=round(time.time() - start_time, 3),
            )
            raise ApiError(
                exc.response.status_code,
                str(exc.request.url),
                exc.response.text,
            ) from exc
        logger.debug(
            "API request completed",
            method=method,
            path=path,
            duration_seconds=round(time.time() - start_time, 3),
        )
        return response

    def get(self, path: str, params: dict[str, Any] | None = None) -> Resource:
        """GET a resource, retrying when the request times out.

        Args:
            path: Path relative to the API root; a leading "/" is ignored.
            params: Optional query parameters.

        Returns:
            The decoded response envelope.

        Raises:
            httpx.TimeoutException: If the request still times out after
                all retries.
            ApiError: If the API answers with an error status (never retried).
        """
        failures = 0
        while True:
            try:
                response = self._send("GET", path, params=params)
                return Resource(response.json())
            except httpx.TimeoutException:
                failures += 1
                if failures > self._retries:
                    logger.error(
                        "API request timed out, giving up",
                        path=path,
                        attempts=failures,
                    )
                    raise
                logger.warning(
                    "API request timed out, retrying",
                    path=path,
                    attempt=failures,
                    backoff_seconds=self._retry_backoff,
                )
                time.sleep(self._retry_backoff)

    def post(self, path: str, payload: dict[str, Any]) -> Resource:
        """POST a JSON payload and decode the answer. Never retried."""
        response = self._send("POST", path, payload=payload)
        return Resource(response.json())

    def delete(self, path: str) -> httpx.Response | None:
        """DELETE a resource.

        A resource that is already killed or terminated counts as released:
        ``None`` is returned instead of raising.

        Raises:
            ApiError: For every other error status.
        """
        try:
            return self._send("DELETE", path)
        except ApiError as exc:
            body = exc.body.lower()
            if any(marker in body for marker in ALREADY_RELEASED_MARKERS):
                logger.info("Resource already released", path=path)
                return None
            raise

    def follow_parent(self, resource: Resource) -> Resource:
        """Fetch the parent of a resource through its ``parent`` link."""
        return self.get(resource.rel("parent"))

    def _test_connection(self) -> Resource:
        """Fetch the API root, failing early on rejected credentials."""
        try:
            return self.get("")
        except ApiError as exc:
            if exc.status_code == httpx.codes.UNAUTHORIZED:
                msg = (
                    f"Your credentials are not recognized by {self.base_url}. "
                    f"{self._config_hint}"
                )
                raise AuthenticationError(msg) from exc
            raise
