"""
Client websocket bridge for a realtime interview.

The browser streams microphone audio, editor contents, code runs and
whiteboard snapshots as JSON messages; the bridge feeds them to an
``InterviewSessionRunner`` and forwards the runner's audio and transcript
events back. The session ends when the agents end it or the client hangs up.

Client messages:
    {"type": "audio", "data": "<base64 pcm16>"}
    {"type": "code", "code": "..."}
    {"type": "run", "source": "..."}
    {"type": "whiteboard", "image": "data:image/png;base64,..."}
    {"type": "hangup"}
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ..errors import InterviewServiceError


__all__ = ["SessionBridge", "SnapshotWhiteboard"]


logger = logging.getLogger(__name__)


class SnapshotWhiteboard:
    """``WhiteboardSource`` holding the latest snapshot the client pushed."""

    def __init__(self) -> None:
        self.image: Optional[str] = None

    def update(self, image: str) -> None:
        self.image = image

    async def capture(self) -> str:
        return self.image or ""


class SessionBridge:
    """
    Pumps one websocket to and from an interview session runner.

    Args:
        runner: An ``InterviewSessionRunner`` (or anything with ``run``,
            ``send_audio``, ``submit_code``, ``context`` and ``outbound``).
        websocket: An accepted websocket.
        whiteboard: Receives the client's whiteboard snapshots.
    """

    def __init__(self, runner: Any, websocket: WebSocket, whiteboard: SnapshotWhiteboard) -> None:
        self.runner = runner
        self.websocket = websocket
        self.whiteboard = whiteboard
        self._send_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.websocket.client_state == WebSocketState.CONNECTED

    async def send(self, payload: dict[str, Any]) -> None:
        async with self._send_lock:
            if not self.connected:
                return
            try:
                await self.websocket.send_json(payload)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Dropped %s message after disconnect: %s", payload.get("type"), e)

    async def run(self) -> None:
        interview_id = self.runner.context.interview_id
        self.runner.outbound = self.send
        session = asyncio.create_task(self.runner.run(), name=f"session-{interview_id}")
        reader = asyncio.create_task(self._read(), name=f"reader-{interview_id}")

        done, pending = await asyncio.wait({session, reader}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Session %s %s failed: %s", interview_id, task.get_name(), task.exception(),
                    exc_info=task.exception(),
                )

        await self.send({"type": "ended", "interview_id": interview_id})
        if self.connected:
            await self.websocket.close()
        logger.info("Session bridge for interview %s closed", interview_id)

    async def _read(self) -> None:
        while True:
            try:
                message = await self.websocket.receive_json()
            except WebSocketDisconnect:
                logger.info("Client left interview %s", self.runner.context.interview_id)
                return
            except ValueError:
                await self.send({"type": "error", "error": "Messages must be JSON objects."})
                continue

            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "hangup":
                return
            await self._dispatch(kind, message)

    async def _dispatch(self, kind: Optional[str], message: dict[str, Any]) -> None:
        if kind == "audio":
            try:
                audio = base64.b64decode(message.get("data") or "", validate=True)
            except (binascii.Error, ValueError):
                await self.send({"type": "error", "error": "Audio must be base64 encoded."})
                return
            await self.runner.send_audio(audio)
        elif kind == "code":
            self.runner.context.set_code(str(message.get("code", "")))
        elif kind == "whiteboard":
            self.whiteboard.update(str(message.get("image", "")))
        elif kind == "run":
            try:
                summary = await self.runner.submit_code(str(message.get("source", "")))
            except InterviewServiceError as e:
                await self.send({"type": "error", "error": e.message, "error_code": e.error_code})
                return
            except RuntimeError as e:
                await self.send({"type": "error", "error": str(e)})
                return
            await self.send({"type": "run_result", **summary})
        else:
            await self.send({"type": "error", "error": f"Unknown message type: {kind!r}"})
