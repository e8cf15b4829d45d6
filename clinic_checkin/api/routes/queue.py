from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from clinic_checkin.api.deps import Services, get_services
from clinic_checkin.api.schemas import QueueEntryResponse, StatusUpdateRequest, snapshot_message

router = APIRouter(tags=["queue"])
logger = logging.getLogger("clinic_checkin.api.queue")


@router.get("/clinics/{clinic_id}/queue", response_model=list[QueueEntryResponse])
def live_queue(clinic_id: str, services: Services = Depends(get_services)):
    return [QueueEntryResponse.from_entry(entry) for entry in services.coordinator.active_entries(clinic_id)]


@router.get("/queue/{entry_id}", response_model=QueueEntryResponse)
def get_entry(entry_id: str, services: Services = Depends(get_services)):
    return QueueEntryResponse.from_entry(services.coordinator.get_entry(entry_id))


@router.patch("/queue/{entry_id}", response_model=QueueEntryResponse)
def update_entry_status(entry_id: str, payload: StatusUpdateRequest, services: Services = Depends(get_services)):
    entry = services.coordinator.update_status(entry_id, payload.status, payload.notes)
    return QueueEntryResponse.from_entry(entry)


async def _pump(websocket: WebSocket, outbox: asyncio.Queue, clinic_id: str) -> None:
    while True:
        entries = await outbox.get()
        await websocket.send_json(snapshot_message(clinic_id, entries))


@router.websocket("/ws/clinics/{clinic_id}/queue")
async def live_queue_socket(websocket: WebSocket, clinic_id: str):
    services: Services = websocket.app.state.services
    await websocket.accept()

    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()
    subscription = None
    sender = None
    try:
        # The initial snapshot hits the store; keep it off the event loop.
        subscription = await run_in_threadpool(
            services.coordinator.subscribe_live_queue,
            clinic_id,
            lambda entries: loop.call_soon_threadsafe(outbox.put_nowait, entries),
        )
        sender = asyncio.create_task(_pump(websocket, outbox, clinic_id))
        while True:
            message = await websocket.receive_text()
            if message.lower() == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Live queue socket for clinic %s failed", clinic_id)
        with contextlib.suppress(Exception):
            await websocket.close(code=1011)
    finally:
        if subscription is not None:
            subscription.close()
        if sender is not None:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await sender
