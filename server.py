"""
server.py — Chat Widget · FastAPI Backend
==========================================
Holds the API keys and proxies the widget's two upstream calls.

Endpoints
---------
  POST /chat     { message }  → { response } | { error, kind }
  POST /speech   { text }     → audio bytes  | { error }
  GET  /voices                → provider voices ranked by preference
  GET  /health                → liveness

Run with:
    uvicorn server:app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from completion import CompletionOrchestrator, Success, failure_reply
from config import Credentials, WidgetConfig, configure_logging
from speech import SpeechSynthesisProxy, SynthesisFailure
from voices import VoicePreferencePolicy

configure_logging()
log = logging.getLogger("chat_widget.server")

SPEECH_FAILED = "Voice synthesis failed. Please try again."


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str


class SpeechRequest(BaseModel):
    text: str


async def _parse(request: Request, model: type[BaseModel]) -> Optional[BaseModel]:
    try:
        return model.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        log.warning("event=bad_request path=%s error=%s", request.url.path, exc)
        return None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[WidgetConfig] = None,
    credentials: Optional[Credentials] = None,
    *,
    orchestrator: Optional[CompletionOrchestrator] = None,
    speech: Optional[SpeechSynthesisProxy] = None,
) -> FastAPI:
    config = config or WidgetConfig.from_env()
    credentials = credentials or Credentials.from_env()
    orchestrator = orchestrator or CompletionOrchestrator(
        config.completion, config.retry, credentials.completion_api_key,
    )
    speech = speech or SpeechSynthesisProxy(config.elevenlabs, credentials.synthesis_api_key)
    voice_policy = VoicePreferencePolicy(config.elevenlabs.voice_preferences)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info(
            "event=server_start model=%s voice=%s",
            config.completion.model, config.elevenlabs.voice_id,
        )
        yield
        await orchestrator.aclose()
        await speech.aclose()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Chat Widget",
        version="1.0.0",
        description="Completion and speech proxy for the chat widget",
        lifespan=_lifespan,
    )

    # The widget may be served from anywhere during development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/chat")
    async def chat(request: Request) -> JSONResponse:
        body = await _parse(request, ChatRequest)
        if body is None:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Request body must be JSON with a 'message' string.", "kind": "malformed_request"},
            )

        outcome = await orchestrator.complete(body.message)
        if isinstance(outcome, Success):
            return JSONResponse({"response": outcome.text})

        log.warning("event=chat_failed kind=%s", outcome.kind)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": failure_reply(outcome), "kind": outcome.kind},
        )

    @app.post("/speech")
    async def speech_endpoint(request: Request) -> Response:
        body = await _parse(request, SpeechRequest)
        if body is None:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Request body must be JSON with a 'text' string."},
            )

        result = await speech.synthesize(body.text)
        if isinstance(result, SynthesisFailure):
            log.warning("event=speech_failed detail=%s", result.detail)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": SPEECH_FAILED},
            )

        return Response(
            content=result.content,
            media_type=result.media_type,
            headers={"Cache-Control": f"public, max-age={config.elevenlabs.cache_max_age_sec}"},
        )

    @app.get("/voices")
    async def voices() -> JSONResponse:
        """Provider voices, best match for the preference list first."""
        result = await speech.list_voices()
        if isinstance(result, SynthesisFailure):
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"error": result.detail},
            )
        ranked = voice_policy.rank(result)
        return JSONResponse({
            "voices": [v.as_dict() for v in ranked],
            "preferred": ranked[0].voice_id if ranked else None,
        })

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status": "ok",
            "model": config.completion.model,
            "voice": config.elevenlabs.voice_id,
        })

    return app


app = create_app()
