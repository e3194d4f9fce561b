from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from companion_memory.services.chat_history import ChatHistoryService, message_payload

router = APIRouter()

HISTORY_WINDOW = 50
SESSION_NOT_FOUND_CODE = 4404


def get_ws_history(websocket: WebSocket) -> ChatHistoryService:
    """Dependency to access the chat history service from app state."""

    return websocket.app.state.chat_history


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        payload = await queue.get()
        await websocket.send_json(payload)


@router.websocket("/ws/chat/{session_id}")
async def ws_chat(
    websocket: WebSocket,
    session_id: str,
    history: ChatHistoryService = Depends(get_ws_history),
) -> None:
    """Push the recent window, then every message appended to the session."""

    await websocket.accept()
    if await history.get_session(session_id) is None:
        await websocket.close(code=SESSION_NOT_FOUND_CODE)
        return

    async with history.feed.subscribe(session_id) as queue:
        recent = await history.get_recent_messages(session_id, HISTORY_WINDOW)
        await websocket.send_json(
            {"event": "history", "messages": [message_payload(message) for message in recent]}
        )
        forward = asyncio.create_task(_forward(websocket, queue))
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            forward.cancel()
            await asyncio.gather(forward, return_exceptions=True)
