"""Realtime unread-count WebSocket."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import suppress

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from app.db.dependencies import get_session_factory
from app.services.change_feed import ChangeBus, get_change_bus
from app.services.errors import TransientStoreError, Unauthorized
from app.services.gateway import store_guard
from app.services.identity import require_user
from app.services.session import MessagingSession, database_fetcher
from app.services.unread import UnreadSnapshot

logger = logging.getLogger(__name__)

router = APIRouter()

WS_UNAUTHORIZED = 4401
WS_TRY_AGAIN_LATER = 1013


def snapshot_message(sequence: int, snapshot: UnreadSnapshot) -> dict:
    return {
        "type": "unread",
        "sequence": sequence,
        "total_unread": snapshot.total_unread,
        "conversations": dict(snapshot.conversations),
    }


@router.websocket("/ws/unread")
async def unread_socket(
    websocket: WebSocket,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    bus: ChangeBus = Depends(get_change_bus),
) -> None:
    """Push the caller's unread state on connect and on every change."""

    user_id = websocket.query_params.get("user_id")
    try:
        await run_in_threadpool(_authenticate, session_factory, user_id)
    except Unauthorized:
        await websocket.close(code=WS_UNAUTHORIZED)
        return
    except TransientStoreError:
        await websocket.close(code=WS_TRY_AGAIN_LATER)
        return

    await websocket.accept()
    session = MessagingSession(user_id, database_fetcher(user_id, session_factory), bus=bus)
    updates: asyncio.Queue[tuple[int, UnreadSnapshot]] = asyncio.Queue()
    unsubscribe = queue_updates(session, updates)
    sender = asyncio.create_task(_forward_updates(websocket, updates))
    await session.start()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except ValueError:
                continue
            if isinstance(payload, dict) and payload.get("type") == "refresh":
                await session.force_refresh()
    except WebSocketDisconnect:
        logger.info("messaging.ws_disconnected user_id=%s", user_id)
    finally:
        unsubscribe()
        sender.cancel()
        await session.close()
        with suppress(asyncio.CancelledError):
            await sender


def queue_updates(
    session: MessagingSession,
    updates: asyncio.Queue[tuple[int, UnreadSnapshot]],
) -> Callable[[], None]:
    """Enqueue each applied snapshot with the sequence it was applied under."""

    def enqueue(snapshot: UnreadSnapshot) -> None:
        updates.put_nowait((session.state.sequence, snapshot))

    return session.subscribe(enqueue)


def _authenticate(session_factory: sessionmaker[Session], user_id: str | None) -> None:
    with session_factory() as db, store_guard(db, "authenticate"):
        require_user(db, user_id)


async def _forward_updates(websocket: WebSocket, updates: asyncio.Queue[tuple[int, UnreadSnapshot]]) -> None:
    while True:
        sequence, snapshot = await updates.get()
        try:
            await websocket.send_json(snapshot_message(sequence, snapshot))
        except WebSocketDisconnect:
            return
