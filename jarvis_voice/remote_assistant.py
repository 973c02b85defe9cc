"""
Remote assistant client

One call per utterance: `send(text, context)` either returns an
AssistantReply or raises RemoteError. Nothing is retried here; the turn
controller decides what a failure means.
"""

import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .actions import parse_actions
from .conversation_types import AssistantContext, AssistantReply, ReplySource
from .error_handling import RemoteError, RemoteErrorKind

logger = logging.getLogger(__name__)

AUDIO_DATA_URL_PREFIX = "data:audio/mpeg;base64,"


class RemoteAssistant(ABC):
    """Cloud assistant reached with a single request per utterance"""

    @abstractmethod
    async def send(self, text: str, context: AssistantContext) -> AssistantReply:
        """Return the assistant's reply or raise RemoteError"""


def decode_audio(encoded: Any) -> Optional[bytes]:
    """Decode base64 audio, accepting an optional `data:audio/mpeg;base64,` prefix"""
    if not isinstance(encoded, str) or not encoded:
        return None
    if encoded.startswith(AUDIO_DATA_URL_PREFIX):
        encoded = encoded[len(AUDIO_DATA_URL_PREFIX):]
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Discarding undecodable reply audio: {e}")
        return None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get('message') or error.get('status') or 'Unknown error')
    return str(error)


def parse_reply(body: Any) -> AssistantReply:
    """Build an AssistantReply from a decoded response body"""
    if not isinstance(body, dict):
        raise RemoteError(RemoteErrorKind.MALFORMED_RESPONSE, "Response is not an object")

    # Callable functions wrap the payload in `result` and failures in `error`
    if body.get('error'):
        raise RemoteError(RemoteErrorKind.SERVER_ERROR, _error_message(body['error']))

    result = body.get('result', body)
    if not isinstance(result, dict):
        raise RemoteError(RemoteErrorKind.MALFORMED_RESPONSE, "Result is not an object")

    if result.get('error'):
        raise RemoteError(RemoteErrorKind.SERVER_ERROR, _error_message(result['error']))

    text = result.get('text')
    if not isinstance(text, str):
        raise RemoteError(RemoteErrorKind.MALFORMED_RESPONSE, "No text in response")

    images = result.get('images') or []
    image_urls: List[str] = [str(url) for url in images] if isinstance(images, list) else []

    return AssistantReply(
        text=text,
        image_urls=image_urls,
        actions=parse_actions(result.get('actions')),
        audio=decode_audio(result.get('audio')),
        source=ReplySource.REMOTE
    )


class CallableFunctionAssistant(RemoteAssistant):
    """Client for the `onMessage` cloud callable function"""

    def __init__(
        self,
        function_url: str,
        timeout: float = 30.0,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.function_url = function_url
        self.timeout = timeout
        self.auth_token = auth_token
        self._transport = transport

    def _build_payload(self, text: str, context: AssistantContext) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "message": text,
            "timezone": context.timezone,
        }
        if context.location_description:
            data["location"] = context.location_description
        return {"data": data}

    async def send(self, text: str, context: AssistantContext) -> AssistantReply:
        if not self.function_url:
            raise RemoteError(RemoteErrorKind.NETWORK, "No function URL configured")

        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.function_url,
                    json=self._build_payload(text, context),
                    headers=headers
                )
        except httpx.HTTPError as e:
            logger.warning(f"🌐 Remote assistant unreachable: {e}")
            raise RemoteError(RemoteErrorKind.NETWORK, str(e), e)

        latency_ms = (time.time() - start_time) * 1000
        logger.debug(f"Remote assistant answered {response.status_code} in {latency_ms:.0f}ms")

        try:
            body = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                raise RemoteError(RemoteErrorKind.SERVER_ERROR, f"HTTP {response.status_code}", e)
            raise RemoteError(RemoteErrorKind.MALFORMED_RESPONSE, "Response is not JSON", e)

        if response.status_code >= 400:
            message = f"HTTP {response.status_code}"
            if isinstance(body, dict) and body.get('error'):
                message = _error_message(body['error'])
            raise RemoteError(RemoteErrorKind.SERVER_ERROR, message)

        return parse_reply(body)


__all__ = [
    'RemoteAssistant',
    'CallableFunctionAssistant',
    'parse_reply',
    'decode_audio',
    'AUDIO_DATA_URL_PREFIX',
]
