"""HTTP gateway to the backend API.

Wraps one ``httpx.AsyncClient`` per event loop with the backend base URL, a default
timeout, default headers, and the single mutable bearer slot that the
session manager writes. Failures are classified into the TransportError
family; nothing is retried here.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import json
import logging
import threading

from typing import TYPE_CHECKING, Any

import httpx

from pydantic import BaseModel, ConfigDict, ValidationError

from .exceptions import HttpStatusError, NetworkError, TransportTimeoutError
from .log import redact_sensitive_data
from .types import ApiResponse


if TYPE_CHECKING:
    from types import TracebackType

    from .config import ApiSettings
    from .types import ProviderCredential


logger = logging.getLogger("sessionvault.gateway")

DEFAULT_TIMEOUT = 10.0
GENERIC_ERROR_MESSAGE = "Request failed"


class AuthEndpoints:
    """Backend auth endpoint paths, relative to the versioned API prefix."""

    SIGN_IN = "/auth/apple"
    REFRESH = "/auth/refresh"
    ME = "/auth/me"
    LOGOUT = "/auth/logout"


HEALTH_PATH = "/health"


class ErrorEnvelope(BaseModel):
    """Error body returned by the backend on non-2xx responses.

    ``detail`` is what the backend framework emits; ``message`` and
    ``error`` are accepted from proxies and older endpoints.
    """

    model_config = ConfigDict(extra="ignore")

    detail: str | list[Any] | dict[str, Any] | None = None
    message: str | None = None
    error: str | dict[str, Any] | None = None

    def describe(self) -> str | None:
        """The error message, preferring ``detail`` then ``message`` then ``error``."""
        for value in (self.detail, self.message, self.error):
            if value is None or value == "":
                continue
            if isinstance(value, str):
                return value
            return json.dumps(value, ensure_ascii=False)
        return None


def extract_error_message(data: Any) -> str:
    """Turn a decoded error body into a message.

    Parameters
    ----------
    data : Any
        Parsed JSON body or raw text.

    Returns
    -------
    str
        The envelope message, the raw text for non-JSON bodies, or a
        generic message.
    """
    if isinstance(data, dict):
        try:
            message = ErrorEnvelope.model_validate(data).describe()
        except ValidationError:
            message = None
        return message or GENERIC_ERROR_MESSAGE
    if isinstance(data, str) and data.strip():
        return data.strip()
    return GENERIC_ERROR_MESSAGE


class HttpGateway:
    """Executes requests against the backend with a shared bearer header.

    Parameters
    ----------
    base_url : str
        Backend origin, e.g. ``http://localhost:8001``.
    api_version : str
        Version segment of the API prefix (default ``"v1"``).
    timeout : float
        Default per-request timeout in seconds.
    default_headers : dict, optional
        Extra headers sent with every request.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (for example ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        base_url: str,
        api_version: str = "v1",
        timeout: float = DEFAULT_TIMEOUT,
        default_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the gateway."""
        self.base_url = base_url.rstrip("/")
        self.api_prefix = f"/api/{api_version}"
        self.timeout = timeout
        self.default_headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(default_headers or {}),
        }
        self._transport = transport
        self._clients: dict[asyncio.AbstractEventLoop, httpx.AsyncClient] = {}
        self._clients_lock = threading.Lock()
        self._bearer: str | None = None
        self._bearer_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: ApiSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> HttpGateway:
        """Build a gateway from the API settings section."""
        return cls(
            base_url=settings.base_url,
            api_version=settings.version,
            timeout=settings.timeout,
            transport=transport,
        )

    # ── Bearer slot ─────────────────────────────────────────────────

    def set_bearer(self, token: str) -> None:
        """Use ``token`` as the bearer for all subsequent requests."""
        with self._bearer_lock:
            self._bearer = token

    def clear_bearer(self) -> None:
        """Stop sending an ``Authorization`` header."""
        with self._bearer_lock:
            self._bearer = None

    @property
    def bearer(self) -> str | None:
        """The token currently sent as bearer, if any."""
        with self._bearer_lock:
            return self._bearer

    # ── Client lifecycle ────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client owned by the running event loop.

        ``httpx.AsyncClient`` connection pools are bound to the loop that
        opened them, so each loop that sends through this gateway gets its
        own client. Entries for loops that have since closed are dropped.
        """
        loop = asyncio.get_running_loop()
        with self._clients_lock:
            for stale in [other for other in self._clients if other.is_closed()]:
                del self._clients[stale]
            client = self._clients.get(loop)
            if client is None or client.is_closed:
                client = httpx.AsyncClient(transport=self._transport)
                self._clients[loop] = client
            return client

    async def aclose(self) -> None:
        """Close every HTTP client. Call from app shutdown lifecycle.

        The client of the calling loop is closed in place. Clients owned by
        other running loops are closed on those loops.
        """
        current = asyncio.get_running_loop()
        with self._clients_lock:
            clients = list(self._clients.items())
            self._clients.clear()
        for loop, client in clients:
            if client.is_closed:
                continue
            if loop is current:
                await client.aclose()
            elif loop.is_running():
                asyncio.run_coroutine_threadsafe(client.aclose(), loop)
            else:
                logger.debug("Dropping HTTP client of a stopped event loop")

    @property
    def open_clients(self) -> int:
        """Number of live HTTP clients, one per event loop in use."""
        with self._clients_lock:
            return sum(1 for client in self._clients.values() if not client.is_closed)

    async def __aenter__(self) -> HttpGateway:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ── Requests ────────────────────────────────────────────────────

    def _build_headers(self, headers: dict[str, str] | None) -> dict[str, str]:
        merged = dict(self.default_headers)
        bearer = self.bearer
        if bearer:
            merged["Authorization"] = f"Bearer {bearer}"
        if headers:
            merged.update(headers)
        return merged

    async def request(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ApiResponse:
        """Send a request under the versioned API prefix.

        Parameters
        ----------
        method : str
            HTTP method.
        path : str
            Path relative to ``/api/{version}``.
        json_body : Any, optional
            Body serialized as JSON.
        headers : dict, optional
            Per-call headers, overriding defaults.
        timeout : float, optional
            Per-call timeout in seconds (defaults to the gateway timeout).

        Returns
        -------
        ApiResponse
            The decoded 2xx response.

        Raises
        ------
        TransportTimeoutError
            If the timeout elapsed.
        NetworkError
            If the connection failed.
        HttpStatusError
            If the backend answered with a non-2xx status.
        """
        return await self._send(method, f"{self.api_prefix}{path}", json_body, headers, timeout)

    async def _send(
        self,
        method: str,
        path: str,
        json_body: Any,
        headers: dict[str, str] | None,
        timeout: float | None,
    ) -> ApiResponse:
        method = method.upper()
        url = f"{self.base_url}{path}"
        effective_timeout = self.timeout if timeout is None else timeout
        request_headers = self._build_headers(headers)

        if json_body is not None:
            logger.debug("%s %s body=%s", method, url, redact_sensitive_data(json_body))
        else:
            logger.debug("%s %s", method, url)

        client = await self._get_client()
        try:
            response = await client.request(
                method,
                url,
                json=json_body,
                headers=request_headers,
                timeout=effective_timeout,
            )
        except httpx.TimeoutException as exc:
            msg = f"Request timed out after {effective_timeout}s"
            raise TransportTimeoutError(
                msg, timeout=effective_timeout, method=method, path=path
            ) from exc
        except httpx.TransportError as exc:
            msg = f"Network request failed: {exc}"
            raise NetworkError(msg, method=method, path=path) from exc

        data = self._decode(response)
        logger.debug("%s %s - %s", method, url, response.status_code)

        if not response.is_success:
            message = extract_error_message(data)
            logger.warning("%s %s failed with %s: %s", method, path, response.status_code, message)
            raise HttpStatusError(message, status=response.status_code, method=method, path=path)

        return ApiResponse(
            status=response.status_code,
            data=data,
            headers=dict(response.headers),
        )

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        """Parse JSON bodies; anything else degrades to raw text."""
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text

    async def get(self, path: str, headers: dict[str, str] | None = None) -> ApiResponse:
        """GET request under the API prefix."""
        return await self.request("GET", path, headers=headers)

    async def post(
        self,
        path: str,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> ApiResponse:
        """POST request under the API prefix."""
        return await self.request("POST", path, json_body=json_body, headers=headers)

    # ── Backend auth endpoints ──────────────────────────────────────

    async def sign_in_exchange(self, credential: ProviderCredential) -> ApiResponse:
        """Exchange a provider credential for a backend session."""
        return await self.post(AuthEndpoints.SIGN_IN, credential.to_exchange_payload())

    async def refresh(self, current_token: str) -> ApiResponse:
        """Request a new token for ``current_token``."""
        return await self.post(AuthEndpoints.REFRESH, {"current_token": current_token})

    async def current_user(self) -> ApiResponse:
        """Fetch the profile of the bearer's user."""
        return await self.get(AuthEndpoints.ME)

    async def logout(self) -> ApiResponse:
        """Tell the backend the bearer's session ended."""
        return await self.post(AuthEndpoints.LOGOUT)

    async def health_check(self) -> ApiResponse:
        """Liveness check; served outside the versioned API prefix."""
        return await self._send("GET", HEALTH_PATH, None, None, None)
