"""Client for the voice signaling endpoint."""

from __future__ import annotations

import logging
from typing import Any

import orjson
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout
from mashumaro.exceptions import MissingField

from aiovoiceplayer.models.config import VoiceOptions
from aiovoiceplayer.models.signaling import (
    ALREADY_CONNECTED,
    ApiErrorBody,
    JoinCallRequest,
    JoinCallResponse,
)
from aiovoiceplayer.util import StrategiesExhaustedError, Strategy, first_success

from .errors import AlreadyConnectedError, ConnectionConflictError, SessionConnectionError

logger = logging.getLogger(__name__)


class SignalingClient:
    """
    Requests and releases session grants for voice channels.

    A grant is a relay URL plus an access token. When the endpoint reports
    that a grant already exists, negotiate() runs the recovery strategies in
    order: release the stale grant and retry, then retry with the force flag.
    """

    _options: VoiceOptions
    _session: ClientSession | None
    """aiohttp session used for all requests."""
    _owns_session: bool
    """Whether this client created the session and must close it."""

    def __init__(self, options: VoiceOptions, session: ClientSession | None = None) -> None:
        """
        Create a signaling client.

        Args:
            options: Endpoint location, credentials and timeouts.
            session: Optional aiohttp ClientSession. If None, a session is
                created on first use and closed by close().
        """
        self._options = options
        self._session = session
        self._owns_session = session is None
        self._timeout = ClientTimeout(total=options.request_timeout)

    @property
    def session(self) -> ClientSession:
        """Return the aiohttp session, creating it if needed."""
        if self._session is None:
            self._session = ClientSession()
        return self._session

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._options.token:
            headers[self._options.token_header] = self._options.token
        return headers

    async def _request(self, method: str, url: str, body: str | None = None) -> bytes:
        try:
            async with self.session.request(
                method, url, data=body, headers=self._headers(), timeout=self._timeout
            ) as response:
                payload = await response.read()
                if response.status >= 400:
                    raise self._error_for(response, payload)
                return payload
        except TimeoutError as err:
            raise SessionConnectionError(
                f"Signaling request {method} {url} timed out after {self._options.request_timeout}s"
            ) from err
        except ClientError as err:
            raise SessionConnectionError(f"Signaling request {method} {url} failed: {err}") from err

    @staticmethod
    def _error_for(response: ClientResponse, payload: bytes) -> SessionConnectionError:
        text = payload.decode(errors="replace")
        body: ApiErrorBody | None = None
        try:
            parsed: Any = orjson.loads(payload) if payload else None
            if isinstance(parsed, dict):
                body = ApiErrorBody.from_dict(parsed)
        except (orjson.JSONDecodeError, MissingField, ValueError):
            body = None
        message = f"Signaling endpoint returned HTTP {response.status}: {text}"
        if (body is not None and body.is_already_connected) or ALREADY_CONNECTED in text:
            return AlreadyConnectedError(message, status=response.status)
        return SessionConnectionError(message, status=response.status)

    async def join(self, channel_id: str, *, force: bool = False) -> JoinCallResponse:
        """Request a session grant for a channel."""
        request = JoinCallRequest(node=self._options.preferred_node, force=True if force else None)
        logger.debug("Requesting grant for channel %s (node=%s, force=%s)", channel_id, request.node, force)
        payload = await self._request("POST", self._options.join_url(channel_id), request.to_json())
        try:
            return JoinCallResponse.from_json(payload)
        except (MissingField, ValueError, orjson.JSONDecodeError) as err:
            raise SessionConnectionError(f"Invalid grant response: {err}") from err

    async def release(self, channel_id: str) -> None:
        """Release an existing grant for a channel."""
        logger.debug("Releasing grant for channel %s", channel_id)
        await self._request("DELETE", self._options.join_url(channel_id))

    async def _release_and_retry(self, channel_id: str) -> JoinCallResponse:
        await self.release(channel_id)
        return await self.join(channel_id)

    async def negotiate(self, channel_id: str) -> JoinCallResponse:
        """
        Obtain a grant, recovering from an 'already connected' conflict.

        Raises:
            ConnectionConflictError: If the conflict persists after every recovery.
            SessionConnectionError: On any other failure.
        """
        try:
            return await self.join(channel_id)
        except AlreadyConnectedError:
            logger.warning("Channel %s reports an existing grant, attempting recovery", channel_id)

        strategies = [
            Strategy("release-and-retry", lambda: self._release_and_retry(channel_id)),
            Strategy("force", lambda: self.join(channel_id, force=True)),
        ]
        try:
            grant: JoinCallResponse = await first_success(strategies)
        except StrategiesExhaustedError as err:
            raise ConnectionConflictError(channel_id) from err.last_error
        return grant

    async def close(self) -> None:
        """Close the aiohttp session if this client owns it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
