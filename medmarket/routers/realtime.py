import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, HTTPException, status
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_user_from_token
from medmarket.realtime.channels import channel_manager
from medmarket.services.table_service import TableService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/realtime")
async def realtime_endpoint(
    websocket: WebSocket,
    token: str = Query(..., description="JWT access token"),
    db: Session = Depends(get_db),
):
    # Authenticate
    try:
        current_user = get_current_user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    caller = TableService.resolve_caller(db, current_user)
    await channel_manager.connect(websocket)

    try:
        while True:
            try:
                data = json.loads(await websocket.receive_text())
            except ValueError:
                await websocket.send_json({"type": "error", "detail": "Invalid JSON"})
                continue
            msg_type = data.get("type") if isinstance(data, dict) else None

            if msg_type == "ping":
                await websocket.send_json({"type": "pong"})

            elif msg_type == "subscribe":
                table = data.get("table")
                try:
                    channel_manager.subscribe(websocket, caller, table, data.get("filter"))
                except ValueError as e:
                    await websocket.send_json({"type": "error", "detail": str(e)})
                    continue
                await websocket.send_json({"type": "subscribed", "table": table, "filter": data.get("filter")})

            elif msg_type == "unsubscribe":
                channel_manager.unsubscribe(websocket, data.get("table"))
                await websocket.send_json({"type": "unsubscribed", "table": data.get("table")})

            else:
                await websocket.send_json({"type": "error", "detail": "Unknown message type"})

    except WebSocketDisconnect:
        logger.debug(f"Realtime socket closed for user {caller.user_id}")
    finally:
        channel_manager.disconnect(websocket)
