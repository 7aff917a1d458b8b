from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from typing import Optional
from invoice_service.core.dependencies import (
    TokenVerifier,
    get_event_publisher,
    get_job_registry,
    get_token_verifier,
)
from invoice_service.services.event_publisher import EventPublisher, Subscription
from invoice_service.services.job_registry import JobRegistry
import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)
router = APIRouter()

async def _forward_events(websocket: WebSocket, subscription: Subscription):
    async for event in subscription:
        await websocket.send_json(event.to_message())

@router.websocket("/ws/status")
async def status_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    publisher: EventPublisher = Depends(get_event_publisher),
    registry: JobRegistry = Depends(get_job_registry),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    if not verifier.verify(token):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscription = publisher.subscribe()
    forwarder = None
    try:
        await websocket.send_json({"type": "connected"})
        job = registry.latest()
        if job is not None:
            await websocket.send_json({
                "type": "status",
                "jobId": job.job_id,
                "status": job.status_store.as_dict()
            })
        forwarder = asyncio.create_task(_forward_events(websocket, subscription))
        while True:
            # Incoming messages are ignored; receiving detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Status observer disconnected")
    finally:
        subscription.close()
        if forwarder is not None:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await forwarder
