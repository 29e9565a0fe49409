"""Tests for voice capture."""
import io
import logging
from types import SimpleNamespace

import numpy as np
import pytest
import soundfile as sf

from config import VoiceInputConfig
from voice_input import (
    MicrophoneRecognizer,
    NoSpeechDetected,
    Unsupported,
    VoiceInputAdapter,
    chunk_rms,
    encode_wav,
    trim_utterance,
)

SR = 16000
BLOCK = 1280  # 80 ms


def block(level: int) -> np.ndarray:
    return np.full((BLOCK, 1), level, dtype=np.int16)


class StubRecognizer:
    def __init__(self, result=None, available=True, error=None):
        self.result = result
        self.available = available
        self.error = error
        self.calls = 0

    def is_available(self):
        return self.available

    async def recognize_once(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

async def test_no_recognizer_is_unsupported():
    adapter = VoiceInputAdapter(None)

    assert adapter.supported is False
    assert isinstance(await adapter.capture(), Unsupported)


async def test_unavailable_recognizer_is_not_invoked():
    stub = StubRecognizer("hello", available=False)

    assert isinstance(await VoiceInputAdapter(stub).capture(), Unsupported)
    assert stub.calls == 0


async def test_capture_returns_stripped_text():
    assert await VoiceInputAdapter(StubRecognizer("  hello there ")).capture() == "hello there"


async def test_empty_transcript_is_no_speech():
    assert isinstance(await VoiceInputAdapter(StubRecognizer("   ")).capture(), NoSpeechDetected)
    assert isinstance(await VoiceInputAdapter(StubRecognizer(None)).capture(), NoSpeechDetected)


async def test_recognizer_error_is_no_speech_with_cause(caplog):
    stub = StubRecognizer(error=RuntimeError("401 invalid api key"))

    with caplog.at_level(logging.ERROR, logger="chat_widget.voice_input"):
        result = await VoiceInputAdapter(stub).capture()

    assert result == NoSpeechDetected(error="401 invalid api key")
    assert any("event=capture_error" in r.getMessage() for r in caplog.records)


async def test_silence_carries_no_error():
    assert await VoiceInputAdapter(StubRecognizer("")).capture() == NoSpeechDetected(error=None)


# ---------------------------------------------------------------------------
# Signal helpers
# ---------------------------------------------------------------------------

def test_chunk_rms():
    assert chunk_rms(block(0)) == 0.0
    assert chunk_rms(block(2000)) == pytest.approx(2000.0)
    assert chunk_rms(np.zeros(0, dtype=np.int16)) == 0.0


def test_trim_utterance_without_speech():
    assert trim_utterance([block(10)] * 5, SR, 1200, 800) is None


def test_trim_utterance_drops_leading_quiet_and_stops_after_silence():
    # 800 ms of silence = 10 blocks of 80 ms
    chunks = [block(0)] * 3 + [block(3000)] * 4 + [block(0)] * 10 + [block(3000)] * 2
    samples = trim_utterance(chunks, SR, 1200, 800)

    assert samples.shape == ((4 + 10) * BLOCK,)
    assert samples[0] == 3000


def test_encode_wav_roundtrip():
    samples = np.arange(-100, 100, dtype=np.int16)
    data, rate = sf.read(io.BytesIO(encode_wav(samples, SR)), dtype="int16")

    assert rate == SR
    assert np.array_equal(data, samples)


# ---------------------------------------------------------------------------
# MicrophoneRecognizer
# ---------------------------------------------------------------------------

class FakeTranscriptions:
    def __init__(self, text):
        self.text = text
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(text=self.text)


def recognizer_with(text, config=None):
    transcriptions = FakeTranscriptions(text)
    client = SimpleNamespace(audio=SimpleNamespace(transcriptions=transcriptions))
    return MicrophoneRecognizer(config or VoiceInputConfig(), "k", client=client), transcriptions


async def test_recognize_once_transcribes_recorded_wav(monkeypatch):
    recognizer, transcriptions = recognizer_with(" what's the weather ")
    samples = np.full(SR // 2, 2500, dtype=np.int16)

    async def fake_record():
        return samples

    monkeypatch.setattr(recognizer, "_record", fake_record)

    assert await recognizer.recognize_once() == "what's the weather"
    call = transcriptions.calls[0]
    assert call["model"] == "whisper-large-v3-turbo"
    name, wav = call["file"]
    assert name == "utterance.wav"
    assert wav[:4] == b"RIFF"
    assert "language" not in call


async def test_recognize_once_forwards_language(monkeypatch):
    recognizer, transcriptions = recognizer_with("bonjour", VoiceInputConfig(language="fr"))

    async def fake_record():
        return np.full(SR // 4, 2500, dtype=np.int16)

    monkeypatch.setattr(recognizer, "_record", fake_record)
    await recognizer.recognize_once()

    assert transcriptions.calls[0]["language"] == "fr"


async def test_silent_recording_skips_transcription(monkeypatch):
    recognizer, transcriptions = recognizer_with("should not be used")

    async def fake_record():
        return None

    monkeypatch.setattr(recognizer, "_record", fake_record)

    assert await recognizer.recognize_once() is None
    assert transcriptions.calls == []
