"""
session.py — Chat Widget · Session State Machine
=================================================
Owns the transcript, the input buffer and the single live playback, and
keeps the three activities of the widget apart:

    IDLE ─start_recording()─▶ RECORDING ─capture done─▶ IDLE
    IDLE ─send_message()────▶ AWAITING_REPLY ─reply──▶ IDLE
    IDLE ─play()────────────▶ SPEAKING ─end / stop()─▶ IDLE

Guards
------
  • at most one network call in flight; nothing new starts while a completion
    or synthesis request is outstanding
  • stop() wins over a synthesis that was already in flight
  • at most one PlaybackSession; the old one is released before a new one opens
  • every exit from SPEAKING releases the playback resource

Everything runs on one event loop.  The only awaits are the completer,
the synthesizer and the voice capture.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from completion import CompletionOutcome, Success, TransportFailure, failure_reply
from config import DEFAULT_GREETING
from speech import SynthesisFailure, SynthesisResult, SynthesizedAudio
from voice_input import CaptureResult, Unsupported, VoiceInputAdapter

log = logging.getLogger("chat_widget.session")


class Sender(str, Enum):
    USER = "user"
    BOT = "bot"


@dataclass(frozen=True)
class Message:
    text: str
    sender: Sender
    is_error: bool = False


class SessionState(Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    AWAITING_REPLY = "AWAITING_REPLY"
    SPEAKING = "SPEAKING"


class PlaybackStatus(Enum):
    IDLE = "idle"
    PLAYING = "playing"


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------

class Completer(Protocol):
    async def complete(self, message: str) -> CompletionOutcome: ...


class Synthesizer(Protocol):
    async def synthesize(self, text: str) -> SynthesisResult: ...


class PlaybackHandle(Protocol):
    async def finished(self) -> None: ...

    def release(self) -> None: ...


class AudioPlayer(Protocol):
    def open(self, audio: SynthesizedAudio) -> PlaybackHandle: ...


@dataclass
class PlaybackSession:
    handle: PlaybackHandle
    text: str
    status: PlaybackStatus = PlaybackStatus.PLAYING

    def release(self) -> None:
        if self.status is PlaybackStatus.IDLE:
            return
        self.status = PlaybackStatus.IDLE
        self.handle.release()


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class SessionStateMachine:
    def __init__(
        self,
        completer: Completer,
        synthesizer: Synthesizer,
        player: AudioPlayer,
        voice_input: VoiceInputAdapter,
        greeting: Optional[str] = DEFAULT_GREETING,
    ) -> None:
        self._completer = completer
        self._synthesizer = synthesizer
        self._player = player
        self._voice_input = voice_input

        self.state = SessionState.IDLE
        self.input_text = ""
        self._transcript: list[Message] = []
        if greeting:
            self._transcript.append(Message(greeting, Sender.BOT))

        self._playback: Optional[PlaybackSession] = None
        self._playback_watch: Optional[asyncio.Task] = None
        self._synthesizing = False
        # Bumped by stop/close; a synthesis started under an older value is dropped
        self._playback_epoch = 0

    # -- read-only views -----------------------------------------------------

    @property
    def transcript(self) -> tuple[Message, ...]:
        return tuple(self._transcript)

    @property
    def playback(self) -> Optional[PlaybackSession]:
        return self._playback

    @property
    def synthesizing(self) -> bool:
        return self._synthesizing

    def _set_state(self, new_state: SessionState) -> None:
        prev = self.state
        self.state = new_state
        log.info("event=state_change from=%s to=%s", prev.value, new_state.value)

    def _append(self, message: Message) -> None:
        self._transcript.append(message)
        log.debug(
            "event=transcript_append sender=%s error=%s length=%d",
            message.sender.value, message.is_error, len(self._transcript),
        )

    # -- voice capture -------------------------------------------------------

    async def start_recording(self) -> Optional[CaptureResult]:
        """Capture one utterance into the input buffer.  None when refused."""
        if self.state is not SessionState.IDLE:
            log.info("event=record_ignored state=%s", self.state.value)
            return None
        if self._synthesizing:
            log.info("event=record_ignored reason=synthesis_in_flight")
            return None
        if not self._voice_input.supported:
            log.info("event=record_unsupported")
            return Unsupported()

        self._set_state(SessionState.RECORDING)
        try:
            result = await self._voice_input.capture()
        finally:
            if self.state is SessionState.RECORDING:
                self._set_state(SessionState.IDLE)

        if isinstance(result, str):
            self.input_text = result
        return result

    # -- message send --------------------------------------------------------

    async def send_message(self, text: Optional[str] = None) -> Optional[Message]:
        """Send *text* (or the input buffer).  Returns the bot reply, or None when ignored."""
        if self.state in (SessionState.AWAITING_REPLY, SessionState.RECORDING):
            log.info("event=send_ignored state=%s", self.state.value)
            return None
        if self._synthesizing:
            log.info("event=send_ignored reason=synthesis_in_flight")
            return None

        text = self.input_text if text is None else text
        if not text.strip():
            log.debug("event=send_ignored reason=blank")
            return None

        if self.state is SessionState.SPEAKING:
            self.stop()

        self.input_text = ""
        self._append(Message(text, Sender.USER))
        self._set_state(SessionState.AWAITING_REPLY)
        try:
            try:
                outcome = await self._completer.complete(text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=completer_error error=%s", exc, exc_info=True)
                outcome = TransportFailure(detail=str(exc))

            if isinstance(outcome, Success):
                reply = Message(outcome.text, Sender.BOT)
            else:
                reply = Message(failure_reply(outcome), Sender.BOT, is_error=True)
            self._append(reply)
            return reply
        finally:
            self._set_state(SessionState.IDLE)

    # -- playback ------------------------------------------------------------

    async def play(self, text: str) -> bool:
        """Speak *text*.  Replaying the text already speaking stops it.

        Returns True when a new PlaybackSession started.
        """
        if (
            self.state is SessionState.SPEAKING
            and self._playback is not None
            and self._playback.text == text
        ):
            self.stop()
            return False
        if self.state not in (SessionState.IDLE, SessionState.SPEAKING):
            log.info("event=play_ignored state=%s", self.state.value)
            return False
        if self._synthesizing:
            log.info("event=play_ignored reason=synthesis_in_flight")
            return False

        epoch = self._playback_epoch
        self._synthesizing = True
        try:
            audio = await self._synthesizer.synthesize(text)
        finally:
            self._synthesizing = False

        if isinstance(audio, SynthesisFailure):
            log.warning("event=play_failed detail=%s state=%s", audio.detail, self.state.value)
            return False
        if epoch != self._playback_epoch:
            log.info("event=play_discarded reason=stopped")
            return False
        if self.state not in (SessionState.IDLE, SessionState.SPEAKING):
            log.info("event=play_discarded state=%s", self.state.value)
            return False

        self._release_playback()
        try:
            handle = self._player.open(audio)
        except Exception as exc:
            log.error("event=playback_open_failed error=%s", exc, exc_info=True)
            if self.state is SessionState.SPEAKING:
                self._set_state(SessionState.IDLE)
            return False

        session = PlaybackSession(handle=handle, text=text)
        self._playback = session
        if self.state is not SessionState.SPEAKING:
            self._set_state(SessionState.SPEAKING)
        self._playback_watch = asyncio.create_task(
            self._watch_playback(session), name="playback_watch",
        )
        return True

    def stop(self) -> None:
        """Halt output and release the resource before returning.

        Also cancels a pending play(): its audio is dropped on arrival.
        """
        self._playback_epoch += 1
        if self.state is not SessionState.SPEAKING:
            return
        self._release_playback()
        self._set_state(SessionState.IDLE)

    async def _watch_playback(self, session: PlaybackSession) -> None:
        try:
            await session.handle.finished()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=playback_error error=%s", exc)

        if self._playback is not session:
            return  # superseded or stopped; already released
        self._playback_watch = None
        self._release_playback()
        if self.state is SessionState.SPEAKING:
            self._set_state(SessionState.IDLE)

    def _release_playback(self) -> None:
        session, self._playback = self._playback, None
        watch, self._playback_watch = self._playback_watch, None
        if watch is not None and watch is not asyncio.current_task() and not watch.done():
            watch.cancel()
        if session is not None:
            session.release()
            log.info("event=playback_session_released")

    async def close(self) -> None:
        """Release any live playback (shutdown path)."""
        watch = self._playback_watch
        self.stop()
        self._release_playback()
        if watch is not None:
            try:
                await watch
            except asyncio.CancelledError:
                pass
