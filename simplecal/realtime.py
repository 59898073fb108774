"""WebSocket handler for the real-time claim channel.

Protocol messages:

  Client -> Server:
    {"type": "hello"}                                        -> hello_ack
    {"type": "claim_requested", "organizer_id": "...",
     "slot_start": "<iso>", "slot_end": "<iso>"}             -> claim_granted | claim_denied
    {"type": "claim_release", "claim_id": "..."}             -> slot_released (broadcast)
    {"type": "ping"}                                         -> pong

  Server -> Client (every message is an event envelope
  ``{"type", "timestamp", "data"}``):
    hello_ack        {session_id}
    claim_granted    {claim_id, organizer_id, slot_start, slot_end, expires_at}
    claim_denied     {reason, resolve_again}
    slot_claimed / slot_released / booking_created / booking_updated /
    availability_updated                                     (broadcast)
    error            {message}

The server assigns the session id when the socket opens; it is the
claimant id for every claim requested over this connection.  Claims the
connection still holds are released when it closes.

All outgoing messages go through the connection's broadcaster queue, so a
single writer task owns the socket.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session, sessionmaker

from .errors import ConflictError, SchedulingError
from .models.claim import ClaimRequest
from .reservations.coordinator import SlotReservationCoordinator

log = logging.getLogger("simplecal.realtime")


async def handle_realtime_ws(
    ws: WebSocket,
    coordinator: SlotReservationCoordinator,
    session_factory: sessionmaker[Session],
) -> None:
    """Handle one real-time WebSocket connection for its whole lifetime."""
    await ws.accept()
    session_id = secrets.token_urlsafe(18)
    broadcaster = coordinator.broadcaster
    queue = broadcaster.subscribe(session_id)
    writer = asyncio.ensure_future(_pump(ws, queue))
    held: set[str] = set()
    loop = asyncio.get_running_loop()
    log.info("Realtime WebSocket connected: %s", session_id)

    def reply(event_type: str, data: dict) -> None:
        broadcaster.send(session_id, event_type, data)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                reply("error", {"message": "Invalid JSON"})
                continue
            if not isinstance(msg, dict):
                reply("error", {"message": "Messages must be JSON objects"})
                continue

            msg_type = msg.get("type")
            log.debug("Realtime recv from %s: %s", session_id, msg_type)

            if msg_type == "hello":
                reply("hello_ack", {"session_id": session_id})

            elif msg_type == "claim_requested":
                try:
                    request = ClaimRequest.model_validate({**msg, "claimant_id": session_id})
                except PydanticValidationError as e:
                    reply("error", {"message": f"Malformed claim_requested: {e.error_count()} invalid field(s)"})
                    continue

                try:
                    claim = await loop.run_in_executor(
                        None, _request_claim, coordinator, session_factory, request
                    )
                except SchedulingError as e:
                    reply("claim_denied", {
                        "reason": e.message,
                        "resolve_again": isinstance(e, ConflictError),
                    })
                    continue
                held.add(claim.claim_id)

            elif msg_type == "claim_release":
                claim_id = msg.get("claim_id")
                if not claim_id or not isinstance(claim_id, str):
                    reply("error", {"message": "Missing claim_id in claim_release"})
                    continue
                held.discard(claim_id)
                await loop.run_in_executor(
                    None, coordinator.release_claim, claim_id, session_id
                )

            elif msg_type == "ping":
                reply("pong", {})

            else:
                reply("error", {"message": f"Unknown message type: {msg_type}"})

    except WebSocketDisconnect:
        log.info("Realtime WebSocket disconnected: %s", session_id)
    except Exception as e:
        log.error("Realtime WebSocket error for %s: %s", session_id, e)
    finally:
        broadcaster.unsubscribe(session_id)
        writer.cancel()
        if held:
            _release_held(loop, coordinator, list(held), session_id)


def _release_held(
    loop: asyncio.AbstractEventLoop,
    coordinator: SlotReservationCoordinator,
    claim_ids: list[str],
    session_id: str,
) -> None:
    """Release a closed connection's claims off the event loop.

    The job is submitted before this returns and is never awaited, so a
    cancelled teardown cannot skip it.
    """
    try:
        future = loop.run_in_executor(None, coordinator.release_all, claim_ids, session_id)
    except RuntimeError:
        # Executor already shut down (process exit): release inline.
        released = coordinator.release_all(claim_ids, session_id)
        log.info("Released %d claim(s) held by %s", released, session_id)
        return

    def _done(fut: asyncio.Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            log.error("Releasing claims held by %s failed: %s", session_id, exc)
        else:
            log.info("Released %d claim(s) held by %s", fut.result(), session_id)

    future.add_done_callback(_done)


def _request_claim(
    coordinator: SlotReservationCoordinator,
    session_factory: sessionmaker[Session],
    request: ClaimRequest,
):
    with session_factory() as db:
        return coordinator.request_claim(
            db,
            request.organizer_id,
            request.slot_start,
            request.slot_end,
            request.claimant_id,
        )


async def _pump(ws: WebSocket, queue: asyncio.Queue) -> None:
    """Drain the connection's event queue onto the socket."""
    try:
        while True:
            event = await queue.get()
            await ws.send_json(event)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.debug("Realtime writer stopped: %s", e)
