"""
speech.py — Chat Widget · Speech Synthesis Proxy
=================================================
One ElevenLabs /text-to-speech call per request.  The audio payload and its
content type are handed back untouched; any failure becomes a
`SynthesisFailure` value.  Synthesis is never retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from config import ElevenLabsConfig
from voices import Voice

log = logging.getLogger("chat_widget.speech")

DEFAULT_MEDIA_TYPE = "audio/mpeg"


@dataclass(frozen=True)
class SynthesizedAudio:
    content: bytes
    media_type: str = DEFAULT_MEDIA_TYPE


@dataclass(frozen=True)
class SynthesisFailure:
    detail: str


SynthesisResult = Union[SynthesizedAudio, SynthesisFailure]


def _error_detail(response: httpx.Response) -> str:
    """Pull the provider's error message out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        return "Speech synthesis failed"
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    if isinstance(detail, str) and detail:
        return detail
    return "Speech synthesis failed"


class SpeechSynthesisProxy:
    """ElevenLabs client bound to one voice and fixed voice settings."""

    def __init__(
        self,
        config: ElevenLabsConfig,
        api_key: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                headers={
                    "xi-api-key": self._api_key or "",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self._config.timeout_sec),
            )
        return self._client

    async def synthesize(self, text: str) -> SynthesisResult:
        cfg = self._config
        payload = {
            "text": text,
            "model_id": cfg.model,
            "voice_settings": {
                "stability": cfg.stability,
                "similarity_boost": cfg.similarity_boost,
            },
        }
        started = time.perf_counter()
        log.info("event=synthesis_start voice=%s text_len=%d", cfg.voice_id, len(text))

        try:
            response = await self._get_client().post(f"/text-to-speech/{cfg.voice_id}", json=payload)
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as exc:
            log.error("event=synthesis_transport_error voice=%s error=%s", cfg.voice_id, exc)
            return SynthesisFailure(detail=str(exc) or type(exc).__name__)

        if not response.is_success:
            detail = _error_detail(response)
            log.error(
                "event=synthesis_failed voice=%s status=%d detail=%s",
                cfg.voice_id, response.status_code, detail,
            )
            return SynthesisFailure(detail=detail)

        media_type = response.headers.get("content-type", DEFAULT_MEDIA_TYPE)
        log.info(
            "event=synthesis_end voice=%s bytes=%d media_type=%s duration_ms=%.1f",
            cfg.voice_id, len(response.content), media_type,
            (time.perf_counter() - started) * 1000.0,
        )
        return SynthesizedAudio(content=response.content, media_type=media_type)

    async def list_voices(self) -> Union[list[Voice], SynthesisFailure]:
        """Enumerate the provider's voices (GET /voices)."""
        try:
            response = await self._get_client().get("/voices")
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as exc:
            log.error("event=voice_list_transport_error error=%s", exc)
            return SynthesisFailure(detail=str(exc) or type(exc).__name__)

        if not response.is_success:
            detail = _error_detail(response)
            log.error("event=voice_list_failed status=%d detail=%s", response.status_code, detail)
            return SynthesisFailure(detail=detail)

        try:
            entries = response.json().get("voices", [])
        except (ValueError, AttributeError):
            return SynthesisFailure(detail="Unexpected voice list format")

        voices = [
            Voice(
                voice_id=entry["voice_id"],
                name=entry.get("name", ""),
                language=(entry.get("labels") or {}).get("language"),
            )
            for entry in entries
            if isinstance(entry, dict) and entry.get("voice_id")
        ]
        log.info("event=voice_list count=%d", len(voices))
        return voices

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
