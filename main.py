"""FastAPI application for the DoctorQ clinic queue.

The app exposes the queue operations for the clinic dashboard, the public
check-in and patient status endpoints, and WebSocket rooms that push every
queue change to dashboards and patient pages.  Components (store, cache,
broadcast registry, services, reset worker) are built and started in the
lifespan and kept on ``app.state``; configuration comes from environment
variables (see ``config.py``).  Redis is optional: when REDIS_URL is set it
backs the cache and relays broadcasts between processes.

Authentication is handled in front of this app: routes trust the clinic id
they are given.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from broadcast import (
    DOCTOR_PRESENCE,
    PATIENT_CALLED,
    QUEUE_UPDATED,
    Broadcaster,
    ChannelRegistry,
    RedisRelay,
    Subscription,
    clinic_room,
    patient_room,
    patients_room,
)
from cache import MemoryCache, RedisCache
from directory import ClinicDirectory
from errors import QueueError
from models import CheckInMethod, Clinic
from reset_worker import NightlyResetWorker
from schemas import (
    AddPatientRequest,
    CheckInRequest,
    ClinicCreate,
    ClinicOut,
    MoveRequest,
    PresenceRequest,
    PresenceUpdate,
    QueueEntryOut,
    ReorderRequest,
)
from services import QueueService
from stats import StatsService
from store import SqlQueueStore, build_engine, init_db

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


class Components:
    """Everything the app needs, wired from ``config``."""

    def __init__(self, settings=config) -> None:
        self.settings = settings
        self.engine = build_engine(settings.DATABASE_URL)
        init_db(self.engine)

        self.redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True) if settings.REDIS_URL else None
        if self.redis is not None:
            self.cache = RedisCache(self.redis)
        else:
            self.cache = MemoryCache(sweep_interval=settings.CACHE_SWEEP_SECONDS)

        self.store = SqlQueueStore(self.engine, timeout=settings.STORE_TIMEOUT_SECONDS)
        self.directory = ClinicDirectory(self.store, self.cache, ttl=settings.CLINIC_TTL)
        self.stats = StatsService(
            self.store, self.cache, self.directory, tz=settings.CLINIC_TIMEZONE, ttl=settings.STATS_TTL
        )
        self.registry = ChannelRegistry(buffer=settings.SUBSCRIBER_BUFFER)
        self.broadcaster = Broadcaster(
            self.registry, self.store, self.stats, self.cache, redis_client=self.redis, ttl=settings.QUEUE_TTL
        )
        self.relay = RedisRelay(self.registry, self.redis, self.broadcaster.origin) if self.redis else None
        self.queue_service = QueueService(
            self.store,
            self.cache,
            self.broadcaster,
            self.directory,
            tz=settings.CLINIC_TIMEZONE,
            phone_country_code=settings.PHONE_COUNTRY_CODE,
            phone_local_digits=settings.PHONE_LOCAL_DIGITS,
        )
        self.reset_worker = None
        if settings.RESET_ENABLED:
            self.reset_worker = NightlyResetWorker(
                self.directory, self.queue_service, hour=settings.RESET_HOUR, tz=settings.CLINIC_TIMEZONE
            )

    async def start(self) -> None:
        await self.cache.start()
        await self.registry.start()
        if self.relay is not None:
            await self.relay.start()
        if self.reset_worker is not None:
            await self.reset_worker.start()

    async def stop(self) -> None:
        if self.reset_worker is not None:
            await self.reset_worker.stop()
        if self.relay is not None:
            await self.relay.stop()
        await self.registry.stop()
        await self.cache.stop()
        self.engine.dispose()


def build_components() -> Components:
    return Components(config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    components = build_components()
    await components.start()
    app.state.components = components
    logger.info("🚀 DoctorQ queue started (redis %s)", "on" if components.redis else "off")
    try:
        yield
    finally:
        await components.stop()
        logger.info("DoctorQ queue stopped")


app = FastAPI(
    title="DoctorQ",
    description="Real-time patient queue for clinics",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body: Dict[str, Any] = {"error": exc.to_dict()}
    if exc.data is not None:
        body["data"] = QueueEntryOut.model_validate(exc.data).dump()
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "VALIDATION_ERROR", "message": "Invalid request data", "details": details}},
    )


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_service(request: Request) -> QueueService:
    return request.app.state.components.queue_service


def entry_out(entry) -> Dict[str, Any]:
    return QueueEntryOut.model_validate(entry).dump()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# ----- clinics -----


@app.post("/clinics", status_code=201)
async def create_clinic(body: ClinicCreate, components: Components = Depends(get_components)) -> Dict[str, Any]:
    clinic = await components.directory.create(Clinic(**body.model_dump()))
    return {"data": ClinicOut.model_validate(clinic).dump()}


@app.get("/clinics/{clinic_id}")
async def get_clinic(clinic_id: str, components: Components = Depends(get_components)) -> Dict[str, Any]:
    clinic = await components.directory.get(clinic_id)
    return {"data": ClinicOut.model_validate(clinic).dump()}


@app.put("/clinics/{clinic_id}/presence")
async def set_presence(
    clinic_id: str, body: PresenceRequest, service: QueueService = Depends(get_service)
) -> Dict[str, Any]:
    clinic = await service.set_doctor_presence(clinic_id, body.is_doctor_present)
    return {"data": ClinicOut.model_validate(clinic).dump()}


# ----- dashboard queue -----


@app.get("/clinics/{clinic_id}/queue")
async def get_queue(clinic_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": await service.get_queue(clinic_id)}


@app.post("/clinics/{clinic_id}/queue", status_code=201)
async def add_patient(
    clinic_id: str, body: AddPatientRequest, service: QueueService = Depends(get_service)
) -> Dict[str, Any]:
    entry = await service.add_patient(
        clinic_id,
        body.patient_phone,
        body.patient_name,
        body.check_in_method,
        arrived_at=body.arrived_at,
        priority=body.priority,
    )
    return {"data": entry_out(entry)}


@app.delete("/clinics/{clinic_id}/queue")
async def clear_queue(clinic_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": {"cleared": await service.clear_queue(clinic_id)}}


@app.post("/clinics/{clinic_id}/queue/next")
async def call_next(clinic_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": entry_out(await service.call_next(clinic_id))}


@app.post("/clinics/{clinic_id}/queue/advance")
async def advance(clinic_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    entry = await service.advance(clinic_id)
    return {"data": entry_out(entry) if entry is not None else None}


@app.post("/clinics/{clinic_id}/queue/{entry_id}/complete")
async def complete(clinic_id: str, entry_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": entry_out(await service.complete_current(clinic_id, entry_id))}


@app.post("/clinics/{clinic_id}/queue/{entry_id}/no-show")
async def no_show(clinic_id: str, entry_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": entry_out(await service.mark_no_show(clinic_id, entry_id))}


@app.post("/clinics/{clinic_id}/queue/{entry_id}/cancel")
async def cancel(clinic_id: str, entry_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": entry_out(await service.cancel(clinic_id, entry_id))}


@app.post("/clinics/{clinic_id}/queue/{entry_id}/notify")
async def notify(clinic_id: str, entry_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": entry_out(await service.notify(clinic_id, entry_id))}


@app.post("/clinics/{clinic_id}/queue/{entry_id}/reorder")
async def reorder(
    clinic_id: str, entry_id: str, body: ReorderRequest, service: QueueService = Depends(get_service)
) -> Dict[str, Any]:
    return {"data": entry_out(await service.reorder(clinic_id, entry_id, body.direction))}


@app.post("/clinics/{clinic_id}/queue/{entry_id}/move")
async def move(
    clinic_id: str, entry_id: str, body: MoveRequest, service: QueueService = Depends(get_service)
) -> Dict[str, Any]:
    return {"data": entry_out(await service.move_to(clinic_id, entry_id, body.new_position))}


@app.delete("/clinics/{clinic_id}/queue/{entry_id}")
async def remove(clinic_id: str, entry_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    await service.remove(clinic_id, entry_id)
    return {"data": {"removed": entry_id}}


@app.get("/clinics/{clinic_id}/stats")
async def get_stats(clinic_id: str, components: Components = Depends(get_components)) -> Dict[str, Any]:
    await components.directory.get(clinic_id)
    stats = await components.stats.get_queue_stats(clinic_id)
    return {"data": stats.dump()}


@app.post("/clinics/{clinic_id}/stats/reset")
async def reset_stats(clinic_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"data": {"deleted": await service.reset_stats(clinic_id)}}


# ----- public patient endpoints -----


@app.post("/clinics/{clinic_id}/checkin", status_code=201)
async def self_check_in(
    clinic_id: str, body: CheckInRequest, service: QueueService = Depends(get_service)
) -> Dict[str, Any]:
    """Patient check-in from the clinic's QR code."""
    entry = await service.add_patient(clinic_id, body.patient_phone, body.patient_name, CheckInMethod.QR_CODE)
    status = await service.get_patient_status(entry.id)
    return {"data": status.dump()}


@app.get("/patients/{entry_id}")
async def patient_status(entry_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    status = await service.get_patient_status(entry_id)
    return {"data": status.dump()}


@app.post("/patients/{entry_id}/leave")
async def patient_leave(entry_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    entry = await service.leave(entry_id)
    return {"data": {"message": "Successfully left the queue", "status": entry.status.value}}


# ----- real-time rooms -----


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.get()
        if message is None:
            await websocket.close()
            return
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Dropped client in %s: %s", subscription.room, e)
            return


async def _drain(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _serve_room(websocket: WebSocket, clinic_id: str, room: str, initial) -> None:
    """Subscribe to ``room``, send the current state, then stream events.

    Subscribing and reading the current state happen under the clinic lock,
    so no update can slip between the two.
    """
    components: Components = websocket.app.state.components
    service = components.queue_service
    await websocket.accept()
    subscription = None
    try:
        async with service.lock(clinic_id):
            subscription = components.registry.subscribe(room)
            first: Optional[Dict[str, Any]] = await initial()
    except QueueError as e:
        if subscription is not None:
            components.registry.unsubscribe(subscription)
        await websocket.send_json({"event": "error", "data": e.to_dict()})
        await websocket.close(code=1008)
        return

    try:
        await websocket.send_json(first)
    except (WebSocketDisconnect, RuntimeError):
        components.registry.unsubscribe(subscription)
        return

    receiver = asyncio.create_task(_drain(websocket))
    sender = asyncio.create_task(_pump(websocket, subscription))
    try:
        await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (receiver, sender):
            task.cancel()
        components.registry.unsubscribe(subscription)


@app.websocket("/ws/clinics/{clinic_id}")
async def dashboard_room(websocket: WebSocket, clinic_id: str) -> None:
    service: QueueService = websocket.app.state.components.queue_service

    async def initial():
        return {"event": QUEUE_UPDATED, "data": await service.get_queue(clinic_id)}

    await _serve_room(websocket, clinic_id, clinic_room(clinic_id), initial)


@app.websocket("/ws/clinics/{clinic_id}/patients")
async def clinic_patients_room(websocket: WebSocket, clinic_id: str) -> None:
    directory: ClinicDirectory = websocket.app.state.components.directory

    async def initial():
        clinic = await directory.get(clinic_id)
        payload = PresenceUpdate(clinic_id=clinic.id, is_doctor_present=clinic.is_doctor_present)
        return {"event": DOCTOR_PRESENCE, "data": payload.dump()}

    await _serve_room(websocket, clinic_id, patients_room(clinic_id), initial)


@app.websocket("/ws/patients/{entry_id}")
async def patient_room_feed(websocket: WebSocket, entry_id: str) -> None:
    service: QueueService = websocket.app.state.components.queue_service
    try:
        status = await service.get_patient_status(entry_id)
    except QueueError as e:
        await websocket.accept()
        await websocket.send_json({"event": "error", "data": e.to_dict()})
        await websocket.close(code=1008)
        return

    async def initial():
        current = await service.get_patient_status(entry_id)
        return {"event": PATIENT_CALLED, "data": {"position": current.position, "status": current.status.value}}

    await _serve_room(websocket, status.clinic_id, patient_room(entry_id), initial)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=config.PORT)
