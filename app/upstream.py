from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx

from errors import UpstreamError
from settings import Settings, get_settings


logger = logging.getLogger("command_relay.upstream")

UNKNOWN_ERROR = "Unknown error occurred"


@dataclass(frozen=True)
class Success:
    payload: Any


@dataclass(frozen=True)
class Failure:
    message: str
    details: Any = UNKNOWN_ERROR


Outcome = Union[Success, Failure]


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return fallback


def _describe(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


class UpstreamExecutor:
    """Relays one command to the third-party execution API.

    No retries: every failure is reported back as a `Failure` so the caller
    can persist it and show it to the user.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.upstream_api_key:
            headers["Authorization"] = f"Bearer {self.settings.upstream_api_key}"
        else:
            logger.warning("RELAY_API_KEY is not set; calling upstream without credentials")
        return headers

    async def post(self, command: str, session_id: str) -> Any:
        """POST the command upstream and return the decoded body, or raise UpstreamError."""
        endpoint = self.settings.upstream_url
        timeout = self.settings.upstream_timeout
        payload = {"command": command, "session_id": session_id}

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(endpoint, json=payload, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = _response_body(exc.response)
            details = body if body not in (None, "") else UNKNOWN_ERROR
            raise UpstreamError(_error_message(body, _describe(exc)), details) from exc
        except httpx.TimeoutException as exc:
            message = str(exc) or f"Upstream request timed out after {timeout:g}s"
            raise UpstreamError(message) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(_describe(exc)) from exc

        return _response_body(response)

    async def execute(self, command: str, session_id: str) -> Outcome:
        try:
            payload = await self.post(command, session_id)
        except UpstreamError as exc:
            logger.warning("Upstream execution failed: %s", exc.message)
            return Failure(exc.message, exc.details)
        return Success(payload)
