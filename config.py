"""
config.py — Chat Widget · Runtime Configuration
================================================
Pydantic models for every tunable parameter of the widget.
Deserialises from JSON.  Used by:
  • server.py  builds the completion orchestrator and speech proxy
  • widget.py  builds the terminal session (voice input, playback)

Secrets are NOT part of the JSON file.  They are read once from the
environment into an immutable `Credentials` object and injected into the
components that need them.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

log = logging.getLogger("chat_widget.config")

DEFAULT_GREETING = "Hello! How can I help?"

DEFAULT_CLARIFICATION = (
    "I understand. Could you please provide more details or rephrase that?"
)


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class CompletionConfig(BaseModel):
    """Chat-completion parameters (passed to AsyncGroq chat.completions)."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Completion model ID")
    base_url: Optional[str] = Field(default=None, description="OpenAI-compatible endpoint override")
    max_tokens: int = Field(default=512, ge=1, description="Max response tokens")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: float = Field(default=0.95, ge=0.0, le=1.0, description="Nucleus sampling")
    timeout_sec: float = Field(default=30.0, gt=0.0, description="Per-attempt request timeout")


class RetryConfig(BaseModel):
    """Rate-limit retry policy and reply normalisation."""
    max_attempts: int = Field(default=3, ge=1, le=10, description="Total attempts per message")
    backoff_ms: int = Field(default=1000, ge=0, le=60000, description="Wait before each retry (ms)")
    min_reply_chars: int = Field(default=5, ge=0, description="Replies shorter than this are replaced")
    clarification: str = Field(default=DEFAULT_CLARIFICATION, description="Substitute for empty/short replies")


class ElevenLabsConfig(BaseModel):
    """ElevenLabs TTS parameters (passed to the /text-to-speech request body)."""
    voice_id: str = Field(default="21m00Tcm4TlvDq8ikWAM", description="ElevenLabs voice ID")
    model: str = Field(default="eleven_monolingual_v1", description="TTS model")
    stability: float = Field(default=0.5, ge=0.0, le=1.0, description="Voice stability")
    similarity_boost: float = Field(default=0.75, ge=0.0, le=1.0, description="Clarity + similarity")
    base_url: str = Field(default="https://api.elevenlabs.io/v1", description="ElevenLabs REST base URL")
    timeout_sec: float = Field(default=30.0, gt=0.0, description="Request timeout")
    cache_max_age_sec: int = Field(default=3600, ge=0, description="Cache-Control max-age on /speech")
    voice_preferences: list[str] = Field(
        default_factory=lambda: ["Rachel", "Samantha", "Google US English", "Zira"],
        description="Ranked voice-name fragments used by /voices",
    )


class VoiceInputConfig(BaseModel):
    """Microphone capture + Whisper transcription parameters."""
    transcription_model: str = Field(default="whisper-large-v3-turbo", description="Groq Whisper model")
    language: Optional[str] = Field(default=None, description="Force language code (e.g. 'en')")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Capture sample rate (Hz)")
    speech_rms_threshold: float = Field(default=1200.0, ge=0.0, description="int16 RMS counted as speech")
    silence_ms: int = Field(default=800, ge=100, le=5000, description="Trailing silence that ends the utterance")
    max_utterance_sec: float = Field(default=15.0, gt=0.0, le=120.0, description="Hard ceiling per capture")


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    """API keys, read once per process.  Absence is not validated here."""
    model_config = ConfigDict(frozen=True)

    completion_api_key: Optional[str] = None
    synthesis_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Credentials":
        load_dotenv()
        creds = cls(
            completion_api_key=os.getenv("GROQ_API_KEY"),
            synthesis_api_key=os.getenv("ELEVENLABS_API_KEY"),
        )
        log.info(
            "event=credentials_loaded completion_key=%s synthesis_key=%s",
            "set" if creds.completion_api_key else "missing",
            "set" if creds.synthesis_api_key else "missing",
        )
        return creds


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class WidgetConfig(BaseModel):
    """Complete runtime configuration for the chat widget."""
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    elevenlabs: ElevenLabsConfig = Field(default_factory=ElevenLabsConfig)
    voice_input: VoiceInputConfig = Field(default_factory=VoiceInputConfig)
    greeting: str = Field(default=DEFAULT_GREETING, description="First bot message of every session")

    @classmethod
    def load(cls, path: str | Path) -> "WidgetConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", p, exc)
            return cls()

    @classmethod
    def from_env(cls) -> "WidgetConfig":
        """Load from $WIDGET_CONFIG (default ./widget_config.json)."""
        return cls.load(os.getenv("WIDGET_CONFIG", "widget_config.json"))


def configure_logging() -> None:
    """Process-wide logging setup shared by server.py and widget.py."""
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("WIDGET_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
