"""
playback.py — Chat Widget · Audio Playback
===========================================
Plays one synthesized payload through the default output device.

`SoundDevicePlayer.open()` decodes the payload and starts an OutputStream;
the returned `SoundDevicePlayback` handle is the playable resource:

    await handle.finished()   resolves on end-of-stream, error or release
    handle.release()          stops output and closes the stream (idempotent)
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading

import numpy as np
import soundfile as sf

from speech import SynthesizedAudio

log = logging.getLogger("chat_widget.playback")


def decode_audio(content: bytes) -> tuple[np.ndarray, int]:
    """Decode an encoded payload (MP3/WAV/OGG) to float32 mono samples."""
    data, samplerate = sf.read(io.BytesIO(content), dtype="float32")
    if data.ndim == 2:
        data = data[:, 0]  # mono
    return data, samplerate


class SoundDevicePlayback:
    """One OutputStream fed from a decoded buffer.

    The sounddevice callback runs on the audio thread; completion is handed
    back to the event loop with call_soon_threadsafe.
    """

    def __init__(self, samples: np.ndarray, samplerate: int, loop: asyncio.AbstractEventLoop) -> None:
        self._samples = samples
        self._pos = 0
        self._lock = threading.Lock()
        self._loop = loop
        self._done = asyncio.Event()
        self._released = False
        self._stream = None
        self._samplerate = samplerate

    def start(self) -> None:
        import sounddevice as sd

        self._stream = sd.OutputStream(
            samplerate=self._samplerate,
            channels=1,
            dtype="float32",
            blocksize=1024,
            callback=self._callback,
            finished_callback=self._on_finished,
        )
        self._stream.start()
        log.info(
            "event=playback_start samples=%d samplerate=%d",
            len(self._samples), self._samplerate,
        )

    @property
    def released(self) -> bool:
        return self._released

    async def finished(self) -> None:
        await self._done.wait()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        with self._lock:
            self._samples = self._samples[:0]
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                log.warning("event=playback_close_error error=%s", exc)
        self._done.set()
        log.info("event=playback_released")

    # -- sounddevice audio-thread callbacks --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status):
        import sounddevice as sd

        if status:
            log.warning("event=playback_status status=%s", status)
        with self._lock:
            chunk = self._samples[self._pos:self._pos + frames]
            self._pos += len(chunk)
        outdata[:len(chunk), 0] = chunk
        if len(chunk) < frames:
            outdata[len(chunk):, 0] = 0.0
            raise sd.CallbackStop

    def _on_finished(self):
        self._loop.call_soon_threadsafe(self._done.set)


class SoundDevicePlayer:
    def open(self, audio: SynthesizedAudio) -> SoundDevicePlayback:
        samples, samplerate = decode_audio(audio.content)
        handle = SoundDevicePlayback(samples, samplerate, asyncio.get_running_loop())
        handle.start()
        return handle
