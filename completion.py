"""
completion.py — Chat Widget · Completion Orchestrator
======================================================
Sends one user message to the chat-completion service and turns whatever
comes back into exactly one `CompletionOutcome`:

    Success(text)        usable reply, trimmed (short replies → clarification)
    RateLimited          every attempt was rate-limited
    MalformedResponse    well-formed answer without a completion string
    TransportFailure     network error, non-2xx error, missing credentials

Nothing raises across `CompletionOrchestrator.complete()`; callers map a
failure to user-visible text with `failure_reply()`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import groq
from groq import AsyncGroq

from config import CompletionConfig, RetryConfig

log = logging.getLogger("chat_widget.completion")

_RATE_LIMIT_MARKERS: frozenset[str] = frozenset({"rate_limit_exceeded", "rate_limit_error"})


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Success:
    text: str
    kind = "success"


@dataclass(frozen=True)
class RateLimited:
    attempts: int = 0
    kind = "rate_limited"


@dataclass(frozen=True)
class MalformedResponse:
    detail: str = ""
    kind = "malformed_response"


@dataclass(frozen=True)
class TransportFailure:
    detail: str = ""
    kind = "transport_failure"


CompletionOutcome = Union[Success, RateLimited, MalformedResponse, TransportFailure]

# One phrase per failure variant.  Substrings are stable; the widget and
# its tests key on them.
FAILURE_REPLIES: dict[type, str] = {
    RateLimited: "I've been thinking too much! Please wait a moment before trying again.",
    MalformedResponse: "I didn't quite catch that. Could you rephrase your question?",
    TransportFailure: "Sorry, a network error kept me from reaching my brain. Please try again later.",
}

FAILURE_KINDS: dict[str, type] = {
    RateLimited.kind: RateLimited,
    MalformedResponse.kind: MalformedResponse,
    TransportFailure.kind: TransportFailure,
}


def failure_reply(outcome: CompletionOutcome) -> str:
    """User-visible text for a non-success outcome."""
    return FAILURE_REPLIES[type(outcome)]


def normalize_reply(raw: str, retry: RetryConfig) -> str:
    """Trim *raw*; replace empty or too-short replies with the clarification."""
    cleaned = raw.strip()
    if len(cleaned) < retry.min_reply_chars:
        log.info("event=reply_too_short chars=%d substituted=clarification", len(cleaned))
        return retry.clarification
    return cleaned


# ---------------------------------------------------------------------------
# Retry bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class RetryState:
    """Per-call retry counter.  Never outlives one `complete()` call."""
    max_attempts: int = 3
    backoff_ms: int = 1000
    attempt: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


def _is_rate_limit_body(body: Any) -> bool:
    """Does an error body carry a rate-limit type/code?"""
    if not isinstance(body, dict):
        return False
    err = body.get("error", body)
    if not isinstance(err, dict):
        return False
    return err.get("type") in _RATE_LIMIT_MARKERS or err.get("code") in _RATE_LIMIT_MARKERS


def _extract_content(response: Any) -> Optional[str]:
    """Return choices[0].message.content when it is a string, else None."""
    choices = getattr(response, "choices", None)
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    return content if isinstance(content, str) else None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class CompletionOrchestrator:
    """Bounded-retry chat completion with classified outcomes.

    The AsyncGroq client is built lazily with SDK-level retries disabled,
    so the retry budget here is the only one in play.  Tests inject *client*
    and *sleep* directly.
    """

    def __init__(
        self,
        config: CompletionConfig,
        retry: RetryConfig,
        api_key: Optional[str] = None,
        *,
        client: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._retry = retry
        self._api_key = api_key
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = AsyncGroq(
                api_key=self._api_key,
                base_url=self._config.base_url,
                max_retries=0,
                timeout=self._config.timeout_sec,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the AsyncGroq client if this orchestrator built it."""
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None

    async def complete(self, message: str) -> CompletionOutcome:
        state = RetryState(
            max_attempts=self._retry.max_attempts,
            backoff_ms=self._retry.backoff_ms,
        )
        started = time.perf_counter()
        log.info("event=completion_start message_len=%d", len(message))

        while not state.exhausted:
            if state.attempt > 0:
                await self._sleep(state.backoff_ms / 1000.0)
            state.attempt += 1

            outcome = await self._attempt(message, state)
            if outcome is None:
                log.warning(
                    "event=rate_limited attempt=%d max_attempts=%d",
                    state.attempt, state.max_attempts,
                )
                continue

            log.info(
                "event=completion_end outcome=%s attempts=%d duration_ms=%.1f",
                outcome.kind, state.attempt, (time.perf_counter() - started) * 1000.0,
            )
            return outcome

        log.warning("event=completion_end outcome=rate_limited attempts=%d", state.attempt)
        return RateLimited(attempts=state.attempt)

    async def _attempt(self, message: str, state: RetryState) -> Optional[CompletionOutcome]:
        """One upstream call.  Returns None when the call was rate-limited."""
        try:
            response = await self._get_client().chat.completions.create(
                model=self._config.model,
                messages=[{"role": "user", "content": message}],
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                top_p=self._config.top_p,
            )
        except asyncio.CancelledError:
            raise
        except groq.RateLimitError:
            return None
        except groq.APIStatusError as exc:
            if _is_rate_limit_body(exc.body):
                return None
            log.error("event=completion_http_error status=%d attempt=%d", exc.status_code, state.attempt)
            return TransportFailure(detail=f"HTTP {exc.status_code}")
        except groq.APIResponseValidationError as exc:
            log.error("event=completion_invalid_body attempt=%d error=%s", state.attempt, exc)
            return MalformedResponse(detail=str(exc))
        except groq.APIConnectionError as exc:
            log.error("event=completion_transport_error attempt=%d error=%s", state.attempt, exc)
            return TransportFailure(detail=str(exc))
        except Exception as exc:
            log.error("event=completion_error attempt=%d error=%s", state.attempt, exc, exc_info=True)
            return TransportFailure(detail=str(exc))

        content = _extract_content(response)
        if content is None:
            log.error("event=completion_malformed attempt=%d", state.attempt)
            return MalformedResponse(detail="response carried no completion text")
        return Success(text=normalize_reply(content, self._retry))
