"""
widget.py — Chat Widget · Terminal Front End
=============================================
Drives one SessionStateMachine from the keyboard, talking to a running
server.py.

Usage
-----
    python widget.py [server_url]

Commands
--------
    <text>        send a message
    /mic          capture one utterance into the input buffer
    /send         send the input buffer
    /play [n]     speak message n (default: last bot message); again to stop
    /stop         stop playback
    /quit         exit
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from client import ChatClient
from config import Credentials, WidgetConfig, configure_logging
from playback import SoundDevicePlayer
from session import Message, Sender, SessionStateMachine
from voice_input import MicrophoneRecognizer, NoSpeechDetected, Unsupported, VoiceInputAdapter

configure_logging()
log = logging.getLogger("chat_widget.widget")


def _render(index: int, message: Message) -> str:
    who = "you" if message.sender is Sender.USER else "bot"
    flag = " [error]" if message.is_error else ""
    return f"  {index:>3} {who}{flag}: {message.text}"


def _last_bot_text(session: SessionStateMachine) -> Optional[str]:
    for message in reversed(session.transcript):
        if message.sender is Sender.BOT and not message.is_error:
            return message.text
    return None


async def _send(session: SessionStateMachine, text: Optional[str]) -> None:
    before = len(session.transcript)
    await session.send_message(text)
    for index, message in enumerate(session.transcript[before:], start=before):
        print(_render(index, message), flush=True)


async def _record(session: SessionStateMachine) -> None:
    result = await session.start_recording()
    if isinstance(result, Unsupported):
        print("  Speech recognition is not supported on this machine.", flush=True)
    elif isinstance(result, NoSpeechDetected) and result.error:
        print(f"  Voice input failed: {result.error}", flush=True)
    elif isinstance(result, NoSpeechDetected):
        print("  No speech detected.", flush=True)
    elif isinstance(result, str):
        print(f"  heard: {result}   (/send to send it)", flush=True)


async def _play(session: SessionStateMachine, arg: str) -> None:
    if arg:
        try:
            text = session.transcript[int(arg)].text
        except (ValueError, IndexError):
            print(f"  no message {arg!r}", flush=True)
            return
    else:
        text = _last_bot_text(session)
        if text is None:
            return
    await session.play(text)


async def main(server_url: str) -> None:
    config = WidgetConfig.from_env()
    credentials = Credentials.from_env()

    client = ChatClient(server_url)
    session = SessionStateMachine(
        completer=client,
        synthesizer=client,
        player=SoundDevicePlayer(),
        voice_input=VoiceInputAdapter(
            MicrophoneRecognizer(config.voice_input, credentials.completion_api_key)
        ),
        greeting=config.greeting,
    )
    log.info("event=widget_start server=%s", server_url)
    for index, message in enumerate(session.transcript):
        print(_render(index, message), flush=True)

    loop = asyncio.get_running_loop()
    tasks: set[asyncio.Task] = set()

    def spawn(coro) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue

            command, _, arg = line.partition(" ")
            if command == "/quit":
                break
            elif command == "/mic":
                spawn(_record(session))
            elif command == "/send":
                spawn(_send(session, None))
            elif command == "/play":
                spawn(_play(session, arg.strip()))
            elif command == "/stop":
                session.stop()
            else:
                spawn(_send(session, line))
    finally:
        for task in list(tasks):
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await session.close()
        await client.aclose()
        log.info("event=widget_stopped messages=%d", len(session.transcript))


if __name__ == "__main__":
    url = sys.argv[1] if len(sys.argv) > 1 else "http://127.0.0.1:8000"
    try:
        asyncio.run(main(url))
    except KeyboardInterrupt:
        print("\nShutdown requested")
