"""
voice_input.py — Chat Widget · Voice Input
===========================================
Turns one spoken utterance into text.

    VoiceInputAdapter.capture()  →  str | Unsupported | NoSpeechDetected

Capture is single-shot: no continuous listening, no interim results.
`VoiceInputAdapter.supported` answers synchronously, so the session can
refuse to start recording on a host without a microphone.

MicrophoneRecognizer
--------------------
  sounddevice InputStream (16 kHz, mono, int16)
    → RMS speech gate, utterance ends after `silence_ms` of quiet
    → soundfile WAV encode (in memory)
    → Groq Whisper transcription
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import numpy as np
import soundfile as sf
from groq import AsyncGroq

from config import VoiceInputConfig

log = logging.getLogger("chat_widget.voice_input")

BLOCK_SIZE = 1280  # 80 ms at 16 kHz


@dataclass(frozen=True)
class Unsupported:
    reason: str = "speech recognition is not available on this host"


@dataclass(frozen=True)
class NoSpeechDetected:
    # Set when the recognizer raised instead of returning a transcript
    error: Optional[str] = None


CaptureResult = Union[str, Unsupported, NoSpeechDetected]


class Recognizer(Protocol):
    def is_available(self) -> bool: ...

    async def recognize_once(self) -> Optional[str]:
        """Transcript of one utterance, or None when nothing was said."""
        ...


class VoiceInputAdapter:
    def __init__(self, recognizer: Optional[Recognizer]) -> None:
        self._recognizer = recognizer

    @property
    def supported(self) -> bool:
        return self._recognizer is not None and self._recognizer.is_available()

    async def capture(self) -> CaptureResult:
        if not self.supported:
            log.info("event=capture_unsupported")
            return Unsupported()
        recognizer = self._recognizer

        try:
            text = await recognizer.recognize_once()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=capture_error error=%s", exc, exc_info=True)
            return NoSpeechDetected(error=str(exc) or type(exc).__name__)

        text = (text or "").strip()
        if not text:
            log.info("event=capture_no_speech")
            return NoSpeechDetected()
        log.info("event=capture_done chars=%d", len(text))
        return text


# ---------------------------------------------------------------------------
# Microphone + Whisper recognizer
# ---------------------------------------------------------------------------

def chunk_rms(chunk: np.ndarray) -> float:
    """Root-mean-square level of an int16 block."""
    if chunk.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(chunk.astype(np.float32) ** 2)))


def trim_utterance(
    chunks: list[np.ndarray],
    sample_rate: int,
    threshold: float,
    silence_ms: int,
) -> Optional[np.ndarray]:
    """Cut a block sequence down to the first utterance.

    Leading quiet blocks are dropped; the utterance ends once `silence_ms`
    of consecutive quiet follows speech.  Returns None when no block ever
    crossed *threshold*.
    """
    kept: list[np.ndarray] = []
    quiet_samples = 0
    heard = False
    limit = sample_rate * silence_ms // 1000

    for chunk in chunks:
        loud = chunk_rms(chunk) >= threshold
        if not heard:
            if not loud:
                continue
            heard = True
        kept.append(chunk)
        quiet_samples = 0 if loud else quiet_samples + len(chunk)
        if quiet_samples >= limit:
            break

    if not heard:
        return None
    return np.concatenate(kept).reshape(-1)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


class MicrophoneRecognizer:
    """Default-input-device capture transcribed by Groq Whisper."""

    def __init__(
        self,
        config: VoiceInputConfig,
        api_key: Optional[str] = None,
        *,
        client: Any = None,
    ) -> None:
        self._config = config
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = AsyncGroq(api_key=self._api_key)
        return self._client

    def is_available(self) -> bool:
        # PortAudio is a system library; without it sounddevice fails at import.
        try:
            import sounddevice as sd
        except OSError as exc:
            log.info("event=mic_unavailable reason=portaudio_missing error=%s", exc)
            return False
        try:
            sd.query_devices(kind="input")
        except (sd.PortAudioError, ValueError) as exc:
            log.info("event=mic_unavailable reason=no_input_device error=%s", exc)
            return False
        return True

    async def recognize_once(self) -> Optional[str]:
        samples = await self._record()
        if samples is None:
            return None

        cfg = self._config
        wav = encode_wav(samples, cfg.sample_rate)
        started = time.perf_counter()
        kwargs: dict[str, Any] = {
            "file": ("utterance.wav", wav),
            "model": cfg.transcription_model,
            "response_format": "json",
        }
        if cfg.language is not None:
            kwargs["language"] = cfg.language
        result = await self._get_client().audio.transcriptions.create(**kwargs)
        text = (getattr(result, "text", "") or "").strip()
        log.info(
            "event=transcription_done chars=%d duration_ms=%.1f",
            len(text), (time.perf_counter() - started) * 1000.0,
        )
        return text or None

    async def _record(self) -> Optional[np.ndarray]:
        """Record until trailing silence or the hard ceiling, then trim."""
        import sounddevice as sd

        cfg = self._config
        loop = asyncio.get_running_loop()
        blocks: asyncio.Queue[np.ndarray] = asyncio.Queue()

        def audio_callback(indata, frames, time_info, status):
            if status:
                log.warning("event=mic_status status=%s", status)
            loop.call_soon_threadsafe(blocks.put_nowait, indata.copy())

        chunks: list[np.ndarray] = []
        silence_limit = cfg.sample_rate * cfg.silence_ms // 1000
        quiet_samples = 0
        heard = False
        deadline = loop.time() + cfg.max_utterance_sec

        stream = sd.InputStream(
            samplerate=cfg.sample_rate,
            channels=1,
            dtype="int16",
            blocksize=BLOCK_SIZE,
            callback=audio_callback,
        )
        log.info("event=mic_started sample_rate=%d", cfg.sample_rate)
        with stream:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    log.info("event=mic_ceiling_reached limit=%.1fs", cfg.max_utterance_sec)
                    break
                try:
                    chunk = await asyncio.wait_for(blocks.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
                chunks.append(chunk)
                if chunk_rms(chunk) >= cfg.speech_rms_threshold:
                    heard = True
                    quiet_samples = 0
                elif heard:
                    quiet_samples += len(chunk)
                    if quiet_samples >= silence_limit:
                        break
        log.info("event=mic_stopped blocks=%d heard=%s", len(chunks), heard)

        return trim_utterance(chunks, cfg.sample_rate, cfg.speech_rms_threshold, cfg.silence_ms)
