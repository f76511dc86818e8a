import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..errors import ChatError, Unauthenticated
from ..middleware_request_id import request_id_of
from ..sessions import WebSocketSession, frame


logger = logging.getLogger("chat.ws")

router = APIRouter()

CLOSE_UNAUTHENTICATED = 4401
CLOSE_INTERNAL_ERROR = 1011


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    # ws://.../ws?token=...
    gw = websocket.app.state.gateway
    token = websocket.query_params.get("token") or ""
    await websocket.accept()
    try:
        identity = gw.authenticate(token)
        await gw.users.ensure(identity.user_id, identity.claims)
    except ChatError as e:
        code = CLOSE_UNAUTHENTICATED if isinstance(e, Unauthenticated) or e.http_status in (400, 404) else CLOSE_INTERNAL_ERROR
        await websocket.close(code=code, reason=e.message)
        return

    session = WebSocketSession(websocket, identity.user_id, queue_size=gw.settings.SESSION_QUEUE_SIZE)
    session.start()
    close_code = None
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                session.push(frame("error", {"code": "validation_error", "message": "Frame is not valid JSON", "event": None}))
                continue
            try:
                await gw.dispatch(session, token, message)
            except Unauthenticated as e:
                logger.info(json.dumps({"event": "ws_token_rejected", "request_id": request_id_of(websocket), "user_id": session.user_id, "reason": e.message}))
                close_code = CLOSE_UNAUTHENTICATED
                break
            except ChatError as e:
                event = message.get("type") if isinstance(message, dict) else None
                session.push(frame("error", dict(e.to_dict(), event=event)))
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("live channel failed for session %s (request %s)", session.id, request_id_of(websocket))
        close_code = CLOSE_INTERNAL_ERROR
    finally:
        await gw.disconnect(session)
    if close_code is not None:
        await websocket.close(code=close_code)
