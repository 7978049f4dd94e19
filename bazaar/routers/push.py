# =============================================
# File: bazaar/routers/push.py
# Purpose: Live push channel. Clients subscribe to product ids and receive
#          interaction/update events fanned out by the invalidation bus.
# =============================================
from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from ..services.bus import BUS

router = APIRouter(tags=["push"])


@router.websocket("/ws")
async def push_channel(websocket: WebSocket) -> None:
    """
    Messages from the client:
      {"subscribe": "<productId>"}
      {"unsubscribe": "<productId>"}
      {"type": "ping"}
    Every reply goes through the connection queue, so acks and events keep
    their relative order.
    """
    await websocket.accept()
    user_id = websocket.headers.get("x-user-id") or None
    conn = BUS.connect(websocket.send_json, user_id=user_id)
    logger.info(f"[push] connected conn={conn.id} user={user_id or 'anon'}")
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                conn.enqueue({"kind": "error", "message": "messages must be JSON objects"})
                continue
            if not isinstance(msg, dict):
                conn.enqueue({"kind": "error", "message": "messages must be JSON objects"})
                continue

            if msg.get("subscribe"):
                pid = str(msg["subscribe"])
                BUS.subscribe(conn, pid)
                conn.enqueue({"kind": "subscribed", "productId": pid})
            elif msg.get("unsubscribe"):
                pid = str(msg["unsubscribe"])
                BUS.unsubscribe(conn, pid)
                conn.enqueue({"kind": "unsubscribed", "productId": pid})
            elif msg.get("type") == "ping":
                conn.enqueue({"kind": "pong"})
            else:
                conn.enqueue({"kind": "error", "message": "unknown message"})
    except WebSocketDisconnect:
        logger.info(f"[push] disconnected conn={conn.id}")
    finally:
        BUS.disconnect(conn)
