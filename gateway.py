# gateway.py — FastAPI app: /ws/match real-time channel + /api REST surface
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from auth import AuthError, bearer_from_header, decode_token
from matchmaking.database import init_db
from matchmaking.models import EnqueueStatus, Gender, QueueEntry, iso
from matchmaking.notify import Event, NotificationDispatcher
from matchmaking.pairing import PairingEngine
from matchmaking.sessions import SessionRegistry
from matchmaking.waitlist import CancelStatus, MatchQueue, MatchStatus

log = logging.getLogger(__name__)

WS_AUTH_FAILED = 4401

MSG_QUEUED = "Added to the matching queue."
MSG_CANCELED = "Match request canceled."
MSG_NOT_WAITING = "No pending match request."
MSG_BAD_GENDER = "Set your gender to male or female before matching."
ENQUEUE_ERRORS = {
    EnqueueStatus.ALREADY_WAITING: "Already waiting in the matching queue.",
    EnqueueStatus.INSUFFICIENT_BALANCE: "Not enough credit.",
    EnqueueStatus.UNKNOWN_USER: "User not found.",
}


class MatchService:
    """Wires the engine parts around one store; one instance per app."""

    def __init__(self, store, *, cost: int = config.MATCH_CREDIT_COST,
                 sweep_interval: float = config.SWEEP_INTERVAL):
        self.store = store
        self.sessions = SessionRegistry()
        self.dispatcher = NotificationDispatcher(self.sessions)
        self.pairing = PairingEngine(store, self.dispatcher, sweep_interval=sweep_interval)
        self.queue = MatchQueue(store, self.pairing, cost=cost)
        self.live_window = config.LIVE_STATUS_WINDOW
        self.poll_window = config.POLL_STATUS_WINDOW


def status_payload(st: MatchStatus) -> Dict[str, Any]:
    if st.is_waiting:
        return {"isWaiting": True, "matchedUser": None, "queuedAt": iso(st.entry.enqueued_at)}
    return {"isWaiting": False, "matchedUser": st.matched_payload()}


def create_app(store=None, *, start_sweeper: bool = True) -> FastAPI:
    # an injected store must already be initialised and stays open after shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backend = store if store is not None else await init_db()
        svc = MatchService(backend)
        app.state.match = svc
        sweeper = asyncio.create_task(svc.pairing.run_sweep_loop()) if start_sweeper else None
        log.info("matching service up (sweep=%s, cost=%s)", start_sweeper, svc.queue.cost)
        yield
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        if store is None:
            await backend.close()
        log.info("matching service down")

    app = FastAPI(title="Blind-date Matching", version="1.0.0", lifespan=lifespan)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})

    app.include_router(router, prefix="/api")
    app.add_api_websocket_route("/ws/match", match_socket)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    return app


# ===================== REST =====================
router = APIRouter()


class ChargeRequest(BaseModel):
    amount: int


def _service(request: Request) -> MatchService:
    return request.app.state.match


def _fail(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def current_user(request: Request) -> Dict[str, Any]:
    token = bearer_from_header(request.headers.get("authorization"))
    try:
        user_id = decode_token(token)
    except AuthError as e:
        raise StarletteHTTPException(status_code=401, detail=str(e))
    user = await _service(request).store.get_user(user_id)
    if user is None:
        raise StarletteHTTPException(status_code=401, detail="User not found.")
    return user


@router.post("/match/request")
async def request_match(request: Request, user: Dict[str, Any] = Depends(current_user)):
    svc = _service(request)
    gender = Gender.parse(user.get("gender"))
    if gender is None:
        return _fail(400, MSG_BAD_GENDER)
    try:
        result = await svc.queue.enqueue(user["user_id"], gender)
    except Exception:
        log.exception("match request failed for %s", user["user_id"])
        return _fail(500, "Error while requesting a match.")
    if not result.ok:
        return _fail(400, ENQUEUE_ERRORS[result.status])
    return {"success": True, "message": MSG_QUEUED, "queueId": result.entry.id}


@router.get("/match/status")
async def match_status(request: Request, user: Dict[str, Any] = Depends(current_user)):
    svc = _service(request)
    try:
        st = await svc.queue.status(user["user_id"], svc.poll_window)
    except Exception:
        log.exception("status check failed for %s", user["user_id"])
        return _fail(500, "Error while checking match status.")
    return {"success": True, **status_payload(st)}


@router.post("/match/cancel")
async def cancel_match(request: Request, user: Dict[str, Any] = Depends(current_user)):
    svc = _service(request)
    try:
        status = await svc.queue.cancel(user["user_id"])
    except Exception:
        log.exception("cancel failed for %s", user["user_id"])
        return _fail(500, "Error while canceling the match request.")
    if status is CancelStatus.NOT_WAITING:
        return _fail(400, MSG_NOT_WAITING)
    return {"success": True, "message": MSG_CANCELED}


@router.get("/credits")
async def get_credit(request: Request, user: Dict[str, Any] = Depends(current_user)):
    try:
        credit = await _service(request).store.get_credit(user["user_id"])
    except Exception:
        log.exception("credit lookup failed for %s", user["user_id"])
        return _fail(500, "Error while reading the credit balance.")
    return {"success": True, "credit": credit}


@router.get("/credits/logs")
async def get_credit_logs(request: Request, user: Dict[str, Any] = Depends(current_user)):
    try:
        logs = await _service(request).store.get_credit_logs(user["user_id"])
    except Exception:
        log.exception("credit log lookup failed for %s", user["user_id"])
        return _fail(500, "Error while reading the credit history.")
    return {"success": True, "data": [{**row, "created_at": iso(row["created_at"])} for row in logs]}


@router.post("/credits/charge")
async def charge_credit(payload: ChargeRequest, request: Request, user: Dict[str, Any] = Depends(current_user)):
    if payload.amount <= 0:
        return _fail(400, "Amount must be a positive number of credits.")
    try:
        credit = await _service(request).store.charge_credit(user["user_id"], payload.amount)
    except Exception:
        log.exception("charge failed for %s", user["user_id"])
        return _fail(500, "Error while charging credit.")
    return {"success": True, "credit": credit}


# ===================== WEBSOCKET =====================
async def _ws_request_match(svc: MatchService, ws: WebSocket, user_id: str):
    user = await svc.store.get_user(user_id)
    if user is None:
        await svc.dispatcher.reply(ws, Event.MATCH_ERROR, {"message": ENQUEUE_ERRORS[EnqueueStatus.UNKNOWN_USER]})
        return
    gender = Gender.parse(user.get("gender"))
    if gender is None:
        await svc.dispatcher.reply(ws, Event.MATCH_ERROR, {"message": MSG_BAD_GENDER})
        return

    async def _ack(entry: QueueEntry):
        await svc.dispatcher.reply(ws, Event.MATCH_REQUESTED,
                                   {"success": True, "message": MSG_QUEUED, "queueId": entry.id})

    result = await svc.queue.enqueue(user_id, gender, on_queued=_ack)
    if not result.ok:
        await svc.dispatcher.reply(ws, Event.MATCH_ERROR, {"message": ENQUEUE_ERRORS[result.status]})


async def _ws_cancel_match(svc: MatchService, ws: WebSocket, user_id: str):
    if await svc.queue.cancel(user_id) is CancelStatus.OK:
        await svc.dispatcher.reply(ws, Event.MATCH_CANCELED, {"success": True, "message": MSG_CANCELED})
    else:
        await svc.dispatcher.reply(ws, Event.MATCH_CANCELED, {"success": False, "message": MSG_NOT_WAITING})


async def _ws_check_status(svc: MatchService, ws: WebSocket, user_id: str):
    st = await svc.queue.status(user_id, svc.live_window)
    await svc.dispatcher.reply(ws, Event.MATCH_STATUS, status_payload(st))


WS_HANDLERS = {
    "request-match": _ws_request_match,
    "cancel-match": _ws_cancel_match,
    "check-match-status": _ws_check_status,
}


async def _authenticate(svc: MatchService, ws: WebSocket) -> Optional[str]:
    token = bearer_from_header(ws.headers.get("authorization")) or ws.query_params.get("token")
    try:
        user_id = decode_token(token)
    except AuthError as e:
        log.warning("ws auth rejected: %s", e)
        return None
    if await svc.store.get_user(user_id) is None:
        log.warning("ws auth rejected: unknown user %s", user_id)
        return None
    return user_id


async def _on_frame(svc: MatchService, ws: WebSocket, user_id: str, raw: str):
    try:
        message = json.loads(raw)
    except ValueError:
        await svc.dispatcher.reply(ws, Event.MATCH_ERROR, {"message": "Malformed frame."})
        return
    event = message.get("event") if isinstance(message, dict) else None
    if not isinstance(event, str) or event not in WS_HANDLERS:
        await svc.dispatcher.reply(ws, Event.MATCH_ERROR, {"message": f"Unknown event: {event!r}"})
        return
    handler = WS_HANDLERS[event]
    try:
        await handler(svc, ws, user_id)
    except Exception:
        log.exception("ws %s failed for %s", event, user_id)
        await svc.dispatcher.reply(ws, Event.MATCH_ERROR, {"message": f"Error while handling {event}."})


async def match_socket(websocket: WebSocket):
    svc: MatchService = websocket.app.state.match
    user_id = await _authenticate(svc, websocket)
    if user_id is None:
        await websocket.close(code=WS_AUTH_FAILED)
        return
    await websocket.accept()
    if svc.sessions.bind(user_id, websocket) is not None:
        log.info("user %s reconnected, older connection superseded", user_id)
    log.info("user %s connected to match", user_id)
    # each frame runs as its own task so a slow request-match does not hold up cancel or status
    pending = set()
    try:
        while True:
            raw = await websocket.receive_text()
            task = asyncio.create_task(_on_frame(svc, websocket, user_id, raw))
            pending.add(task)
            task.add_done_callback(pending.discard)
    except WebSocketDisconnect:
        pass
    finally:
        log.info("user %s disconnected from match", user_id)
        # let in-flight frames settle first, so an enqueue finishing late is still cancelled
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if svc.sessions.unbind(user_id, websocket):
            try:
                await svc.queue.cancel(user_id)
            except Exception:
                log.exception("cancel on disconnect failed for %s", user_id)


async def serve(app: FastAPI, host: str = config.HOST, port: int = config.PORT):
    server_config = uvicorn.Config(app, host=host, port=port, loop="asyncio", log_level=config.LOG_LEVEL.lower())
    server = uvicorn.Server(server_config)
    await server.serve()


app = create_app()
