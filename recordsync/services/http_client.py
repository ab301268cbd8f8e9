"""HTTP client for the transcription backend.

Builds requests, attaches bearer tokens, classifies responses into the
error taxonomy in :mod:`recordsync.services.errors`, and keeps auth headers
intact across redirects.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit

import requests
from pydantic import BaseModel, TypeAdapter, ValidationError

from recordsync.models.schemas import APIErrorResponse, SystemStatusResponse
from recordsync.services.errors import (
    ApiError,
    ClientError,
    DecodingError,
    Forbidden,
    InvalidResponse,
    InvalidURL,
    NetworkError,
    ServerError,
    Unauthorized,
    UnknownError,
)
from recordsync.services.events import EventChannel
from recordsync.services.token_store import TokenStore

logger = logging.getLogger(__name__)

# Resource collections the backend only serves with a trailing slash
_COLLECTION_PATHS = frozenset({"/recordings", "/prompt-templates"})


def normalize_path(path: str) -> str:
    """Apply the backend's trailing-slash rules, keeping any query string.

    Collections such as ``/recordings`` need the slash; single resources
    and actions (``/recordings/{id}``, ``/recordings/upload``) must not
    have one.
    """
    path, sep, query = path.partition("?")
    if not path.startswith("/"):
        path = "/" + path
    path = path.rstrip("/") or "/"
    if path in _COLLECTION_PATHS:
        path += "/"
    return path + sep + query


class RedirectPreservingSession(requests.Session):
    """requests Session that never downgrades a redirected request.

    Stock requests turns a redirected POST into a GET, drops the body,
    purges content headers and strips ``Authorization`` when the host
    changes. Here the redirected request keeps the original method, body
    and every original header, and gets ``Authorization`` back from the
    token provider if it went missing.
    """

    def __init__(self, token_provider: Callable[[], str | None]):
        super().__init__()
        self._token_provider = token_provider

    def rebuild_method(self, prepared_request, response):
        # Keep the original method for every redirect status
        return

    def rebuild_auth(self, prepared_request, response):
        original = response.request

        for name, value in original.headers.items():
            if name not in prepared_request.headers:
                prepared_request.headers[name] = value

        if prepared_request.body is None and original.body is not None:
            prepared_request.body = original.body

        if "Authorization" not in prepared_request.headers:
            token = self._token_provider()
            if token:
                prepared_request.headers["Authorization"] = f"Bearer {token}"


class HTTPClient:
    """Translates logical requests into classified outcomes.

    Blocking transport work runs in a worker thread; classification and
    the 401 side effects run back on the event loop.
    """

    def __init__(
        self,
        base_url: str,
        token_store: TokenStore,
        unauthorized: EventChannel,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.is_connected = False
        self._token_store = token_store
        self._unauthorized = unauthorized
        self._session = session or RedirectPreservingSession(lambda: token_store.access_token)

    # --- Request building ---

    def build_url(self, path: str) -> str:
        parts = urlsplit(self.base_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise InvalidURL(f"Invalid base URL: {self.base_url!r}")
        return self.base_url + normalize_path(path)

    def build_headers(self, requires_auth: bool, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if extra:
            headers.update(extra)
        if requires_auth:
            token = self._token_store.access_token
            if token:
                headers["Authorization"] = f"Bearer {token}"
            else:
                # Still send it: the server's rejection is the signal
                logger.warning("Authenticated request without a stored token")
        return headers

    # --- Generic API call ---

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        data: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        requires_auth: bool = False,
        response_model: type[BaseModel] | TypeAdapter | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and return the decoded body or raise a classified error.

        With no *response_model* the parsed JSON (or ``None`` for an empty
        body) is returned.
        """
        url = self.build_url(path)
        response = await self._send(
            method,
            url,
            json=json,
            data=data,
            params=params,
            headers=self.build_headers(requires_auth, headers),
            timeout=timeout or self.timeout,
        )
        logger.debug(f"API Response [{method} {path}]: {response.status_code}")
        return await self.classify(response, response_model)

    async def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return await asyncio.to_thread(self._session.request, method, url, **kwargs)
        except (requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema,
                requests.exceptions.InvalidURL) as e:
            raise InvalidURL(str(e)) from e
        except requests.exceptions.TooManyRedirects as e:
            raise InvalidResponse(str(e)) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(str(e)) from e

    async def classify(self, response: requests.Response, response_model=None) -> Any:
        """Map a status code to a decoded body or a typed error."""
        if not isinstance(response, requests.Response):
            raise InvalidResponse()

        code = response.status_code
        if 200 <= code <= 299:
            return self._decode(response, response_model)
        if code == 401:
            await self._token_store.clear()
            self._unauthorized.publish({"type": "unauthorized", "url": response.url})
            logger.warning(f"Unauthorized response from {response.url}, session cleared")
            raise Unauthorized()
        if code == 403:
            raise Forbidden()
        if 400 <= code <= 499:
            message = self._error_message(response)
            if message:
                raise ApiError(message)
            raise ClientError(code)
        if 500 <= code <= 599:
            raise ServerError(code)
        # 3xx only reaches us when the redirect could not be followed
        raise UnknownError(f"Unexpected status {code}")

    @staticmethod
    def _decode(response: requests.Response, model) -> Any:
        try:
            if model is None:
                return response.json() if response.content else None
            if isinstance(model, TypeAdapter):
                return model.validate_json(response.content)
            return model.model_validate_json(response.content)
        except (ValidationError, ValueError) as e:
            logger.error(f"Could not decode response from {response.url}: {e}")
            raise DecodingError() from e

    @staticmethod
    def _error_message(response: requests.Response) -> str | None:
        try:
            error = APIErrorResponse.model_validate_json(response.content)
        except (ValidationError, ValueError):
            return None
        return error.message if isinstance(error.message, str) and error.message else None

    # --- Connection check ---

    async def check_connection(self) -> bool:
        """Ping ``/system/status``; never raises."""
        try:
            status = await self.request("GET", "/system/status", response_model=SystemStatusResponse)
            self.is_connected = True
            logger.info(f"Backend reachable: status={status.status} version={status.version}")
        except Exception as e:
            self.is_connected = False
            logger.warning(f"Backend connection failed: {e}")
        return self.is_connected

    def close(self) -> None:
        self._session.close()
