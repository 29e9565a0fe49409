"""
client.py — Chat Widget · Server Client
========================================
Widget-side view of server.py.  Speaks POST /chat and POST /speech and
presents the same contracts as the in-process components:

    ChatClient.complete(message)   →  CompletionOutcome
    ChatClient.synthesize(text)    →  SynthesizedAudio | SynthesisFailure

An unreachable server is reported as TransportFailure / SynthesisFailure,
never raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from completion import (
    FAILURE_KINDS,
    CompletionOutcome,
    MalformedResponse,
    Success,
    TransportFailure,
)
from speech import DEFAULT_MEDIA_TYPE, SynthesisFailure, SynthesisResult, SynthesizedAudio

log = logging.getLogger("chat_widget.client")


class ChatClient:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        *,
        timeout_sec: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_sec),
        )

    async def complete(self, message: str) -> CompletionOutcome:
        try:
            response = await self._client.post("/chat", json={"message": message})
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as exc:
            log.error("event=chat_network_error error=%s", exc)
            return TransportFailure(detail="network error")

        try:
            body = response.json()
        except ValueError:
            log.error("event=chat_unreadable_body status=%d", response.status_code)
            return TransportFailure(detail=f"HTTP {response.status_code}")
        if not isinstance(body, dict):
            return MalformedResponse(detail="unexpected /chat body")

        if response.is_success:
            text = body.get("response")
            if not isinstance(text, str):
                return MalformedResponse(detail="missing 'response' field")
            return Success(text=text)

        variant = FAILURE_KINDS.get(body.get("kind", ""), TransportFailure)
        log.warning(
            "event=chat_failed status=%d kind=%s", response.status_code, variant.kind,
        )
        return variant()

    async def synthesize(self, text: str) -> SynthesisResult:
        try:
            response = await self._client.post("/speech", json={"text": text})
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as exc:
            log.error("event=speech_network_error error=%s", exc)
            return SynthesisFailure(detail="network error")

        if not response.is_success:
            try:
                detail = response.json().get("error", "Voice synthesis failed")
            except (ValueError, AttributeError):
                detail = "Voice synthesis failed"
            log.warning("event=speech_failed status=%d detail=%s", response.status_code, detail)
            return SynthesisFailure(detail=str(detail))

        return SynthesizedAudio(
            content=response.content,
            media_type=response.headers.get("content-type", DEFAULT_MEDIA_TYPE),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
