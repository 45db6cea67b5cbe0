"""HTTP client for the webinar endpoints the engine talks to."""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any, Self

import orjson
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aiowebinar.config import (
    BEACON_TIMEOUT_SECONDS,
    KEEPALIVE_TIMEOUT_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
)
from aiowebinar.errors import (
    AccessDeniedError,
    AccessError,
    ChatSendError,
    InteractionSubmitError,
    ReplayDisabledError,
    ReplayExpiredError,
    SessionEndedError,
)
from aiowebinar.models.access import AccessDenied, AccessGranted, WaitingRoom
from aiowebinar.models.chat import ChatMessage, ChatSendRequest, SimulatedChatWindow
from aiowebinar.models.interaction import (
    InteractionResponseRequest,
    PollResults,
    PollResultsEnvelope,
)
from aiowebinar.models.reports import AnalyticsEvent, ProgressReport
from aiowebinar.models.types import InteractionEventType

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}


class WebinarApiClient:
    """Talks to the webinar HTTP API on behalf of one viewer.

    The client owns an `aiohttp.ClientSession` unless one is passed in. All
    request bodies and responses go through the mashumaro models.
    """

    def __init__(
        self,
        base_url: str,
        slug: str,
        token: str,
        *,
        session: ClientSession | None = None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        beacon_timeout: float = BEACON_TIMEOUT_SECONDS,
        keepalive_timeout: float = KEEPALIVE_TIMEOUT_SECONDS,
    ) -> None:
        """Create a client for the webinar identified by `slug`."""
        self._base_url = base_url.rstrip("/")
        self._slug = slug
        self._token = token
        self._session = session
        self._owns_session = session is None
        self._request_timeout = ClientTimeout(total=request_timeout)
        self._beacon_timeout = ClientTimeout(total=beacon_timeout)
        self._keepalive_timeout = ClientTimeout(total=keepalive_timeout)

    @property
    def token(self) -> str:
        """Return the viewer's access token."""
        return self._token

    @property
    def slug(self) -> str:
        """Return the webinar slug."""
        return self._slug

    def url(self, path: str) -> str:
        """Return the absolute url of an endpoint below the webinar."""
        return f"{self._base_url}/api/webinars/{self._slug}/{path.lstrip('/')}"

    async def close(self) -> None:
        """Close the owned HTTP session."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ---------------------------------------------------------------------
    # Endpoints
    # ---------------------------------------------------------------------
    async def get_access(self) -> AccessGranted | WaitingRoom:
        """Validate the token and load the playback payload.

        Raises an `AccessError` subclass when the viewer cannot watch.
        """
        session = self._get_session()
        try:
            async with session.get(
                self.url("access"), params={"token": self._token}, timeout=self._request_timeout
            ) as resp:
                body = await resp.read()
                if resp.ok:
                    return AccessGranted.from_json(body)
                denied = _parse_denied(body)
        except (ClientError, TimeoutError) as err:
            raise AccessDeniedError(f"Failed to validate access: {err}") from err

        if denied.waiting_room and denied.starts_at is not None:
            return WaitingRoom(starts_at=denied.starts_at)
        raise access_error_from(denied)

    async def report_progress(self, report: ProgressReport) -> None:
        """Post a heartbeat; raises on transport failure."""
        await self._post("access", report)

    async def track_event(self, event: AnalyticsEvent) -> None:
        """Post an analytics event; raises on transport failure."""
        await self._post("analytics", event)

    async def submit_interaction(
        self,
        interaction_id: str,
        response: dict[str, Any],
        event_type: InteractionEventType,
    ) -> None:
        """Record a view, dismissal or answer of an interaction."""
        request = InteractionResponseRequest(
            token=self._token,
            interaction_id=interaction_id,
            response=response,
            event_type=event_type,
        )
        try:
            await self._post("interactions/respond", request)
        except (ClientError, TimeoutError) as err:
            raise InteractionSubmitError(
                f"Failed to submit {event_type.value} for {interaction_id}"
            ) from err

    async def fetch_results(self, interaction_id: str) -> PollResults | None:
        """Return the aggregate answers of a poll or quiz."""
        session = self._get_session()
        async with session.get(
            self.url(f"interactions/{interaction_id}/results"),
            params={"token": self._token},
            timeout=self._request_timeout,
        ) as resp:
            resp.raise_for_status()
            envelope = PollResultsEnvelope.from_json(await resp.read())
        return envelope.results

    async def fetch_simulated_chat(self, from_second: int, to_second: int) -> list[ChatMessage]:
        """Return transcript messages timed within `(from_second, to_second]`."""
        session = self._get_session()
        params = {"from": str(from_second), "to": str(to_second), "token": self._token}
        async with session.get(
            self.url("chat/simulated"), params=params, timeout=self._request_timeout
        ) as resp:
            resp.raise_for_status()
            window = SimulatedChatWindow.from_json(await resp.read())
        return window.messages

    async def send_chat(self, message: str) -> None:
        """Post a chat message."""
        try:
            await self._post("chat", ChatSendRequest(token=self._token, message=message))
        except (ClientError, TimeoutError) as err:
            raise ChatSendError("Failed to send message") from err

    async def send_beacon(self, path: str, payload: DataClassORJSONMixin) -> bool:
        """Deliver a report while the session is being torn down.

        A beacon is a short, non-blocking attempt on the shared session. If it
        fails, the report is retried once as a keep-alive request on a
        dedicated session that does not depend on the viewer's session
        surviving. Never raises; returns whether the server accepted it.
        """
        data = payload.to_json()
        if self._session is not None and not self._session.closed:
            try:
                async with self._session.post(
                    self.url(path), data=data, headers=JSON_HEADERS, timeout=self._beacon_timeout
                ) as resp:
                    if resp.ok:
                        return True
                    logger.debug("Beacon to %s rejected with status %s", path, resp.status)
            except (ClientError, TimeoutError) as err:
                logger.debug("Beacon to %s failed (%s), using keep-alive", path, err)

        try:
            async with ClientSession(timeout=self._keepalive_timeout) as session:
                async with session.post(
                    self.url(path),
                    data=data,
                    headers={**JSON_HEADERS, "Connection": "keep-alive"},
                ) as resp:
                    return resp.ok
        except (ClientError, TimeoutError) as err:
            logger.warning("Failed to deliver final report to %s: %s", path, err)
            return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession()
        return self._session

    async def _post(self, path: str, payload: DataClassORJSONMixin) -> None:
        session = self._get_session()
        async with session.post(
            self.url(path),
            data=payload.to_json(),
            headers=JSON_HEADERS,
            timeout=self._request_timeout,
        ) as resp:
            await _raise_for_status(resp)

    async def __aenter__(self) -> Self:
        """Enter the async context manager returning this instance."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the owned session when leaving the async context manager."""
        await self.close()


def _parse_denied(body: bytes) -> AccessDenied:
    try:
        return AccessDenied.from_dict(orjson.loads(body))
    except Exception:
        logger.debug("Unparseable access error body: %r", body[:200])
        return AccessDenied()


def access_error_from(denied: AccessDenied) -> AccessError:
    """Map the error body of the access endpoint to a typed exception."""
    if denied.session_ended:
        return SessionEndedError(denied.error)
    if denied.replay_expired:
        return ReplayExpiredError(denied.error)
    if denied.replay_disabled:
        return ReplayDisabledError(denied.error)
    return AccessDeniedError(denied.error)


async def _raise_for_status(resp: ClientResponse) -> None:
    if not resp.ok:
        text = await resp.text()
        logger.debug("%s %s failed with %s: %s", resp.method, resp.url, resp.status, text[:200])
    resp.raise_for_status()
