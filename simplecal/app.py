"""FastAPI application: HTTP + WebSocket endpoints for SimpleCal.

Endpoints:

  GET    /health                               Health check
  GET    /slots                                Resolve an organizer's bookable slots
  GET    /organizers/{username}/meeting-types  Public meeting type list
  POST   /claims                               Claim a slot (HTTP clients)
  DELETE /claims/{claim_id}                    Release a claim
  GET    /appointments                         Organizer appointment listing
  POST   /appointments                         Convert a claim into a booking
  PUT    /appointments/{id}                    Organizer cancel / reschedule
  POST   /appointments/cancel                  Invitee cancellation by token
  *      /availability/recurring[/{id}]        Organizer weekly rules
  *      /availability/exceptions[/{id}]       Organizer date exceptions
  WS     /ws                                   Real-time claim channel

The booking flow:
  1. Invitee page calls GET /slots
  2. Invitee picks a slot and claims it (WS claim_requested or POST /claims)
  3. Invitee submits the form with the claim handle to POST /appointments
  4. Every connected page sees slot_claimed / booking_created and refreshes
"""

from __future__ import annotations

# Load .env into os.environ before Settings is instantiated.
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Iterator, Literal, Optional

# Configure root logger early so all simplecal.* loggers have a handler
# when run via `uvicorn simplecal.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from simplecal import booking
from simplecal.auth import require_organizer
from simplecal.availability.service import local_day_bounds, resolve_slots
from simplecal.config import Settings, settings as default_settings
from simplecal.errors import NotFoundError, SchedulingError, ValidationError
from simplecal.events import EventBroadcaster
from simplecal.models import (
    AppointmentUpdate,
    BookingRequest,
    CancelRequest,
    ClaimRequest,
    ExceptionEntryIn,
    RecurringRuleIn,
)
from simplecal.realtime import handle_realtime_ws
from simplecal.reservations.claims import ClaimStore, InMemoryClaimStore, RedisClaimStore
from simplecal.reservations.coordinator import SlotReservationCoordinator, utcnow
from simplecal.store.database import (
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from simplecal.store.repository import RuleRepository
from simplecal.store.tables import User

log = logging.getLogger("simplecal.app")

_START_TIME = time.time()


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker[Session]] = None,
    claim_store: Optional[ClaimStore] = None,
    clock=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Configuration; defaults to the environment-loaded settings.
        session_factory: Rule Store sessions; built from ``database_url``
                         (tables created on first use) when omitted.
        claim_store: Claim backend; chosen by ``claim_backend`` when omitted.
        clock: Callable returning the current UTC datetime (tests inject one).
    """
    settings = settings or default_settings
    for warning in settings.validate_startup():
        log.warning(warning)

    if session_factory is None:
        engine = create_db_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
        init_db(engine)
        session_factory = create_session_factory(engine)

    if claim_store is None:
        claim_store = _build_claim_store(settings)

    broadcaster = EventBroadcaster()
    coordinator = SlotReservationCoordinator(
        claim_store,
        broadcaster,
        ttl_seconds=settings.claim_ttl_seconds,
        clock=clock or utcnow,
        fallback_timezone=settings.default_timezone,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if settings.claim_sweep_interval_seconds > 0:
            sweeper = asyncio.ensure_future(
                _sweep_forever(coordinator, settings.claim_sweep_interval_seconds)
            )
        yield
        if sweeper is not None:
            sweeper.cancel()

    app = FastAPI(
        title="SimpleCal",
        description="Appointment scheduling with real-time slot claims",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.session_factory = session_factory

    def get_db() -> Iterator[Session]:
        yield from session_scope(session_factory)

    def current_organizer(
        organizer_id: str = Depends(require_organizer),
        db: Session = Depends(get_db),
    ) -> User:
        organizer = RuleRepository.get_user(db, organizer_id)
        if organizer is None:
            raise NotFoundError("Organizer not found")
        return organizer

    # ── Error mapping ──────────────────────────────────────────

    @app.exception_handler(SchedulingError)
    async def scheduling_error(request: Request, exc: SchedulingError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse({"error": "Invalid request", "details": details}, status_code=400)

    @app.exception_handler(SQLAlchemyError)
    async def store_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        log.exception("Rule Store error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.exception_handler(RedisError)
    async def claim_store_error(request: Request, exc: RedisError) -> JSONResponse:
        log.exception("Claim store error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "claim_backend": settings.claim_backend,
            "subscribers": broadcaster.subscriber_count,
        })

    # ── Slot resolution ────────────────────────────────────────

    @app.get("/slots")
    def get_slots(
        organizer: str = Query(..., min_length=1),
        start_date: date = Query(...),
        end_date: date = Query(...),
        meeting_type_id: Optional[str] = None,
        session_id: Optional[str] = None,
        db: Session = Depends(get_db),
    ) -> dict:
        """Bookable slots for an organizer's public scheduling page."""
        listing = resolve_slots(
            db,
            organizer,
            start_date,
            end_date,
            meeting_type_id=meeting_type_id,
            claims=coordinator.store,
            session_id=session_id,
            now=coordinator.now(),
            max_range_days=settings.max_range_days,
            fallback_timezone=settings.default_timezone,
        )
        return listing.to_dict()

    @app.get("/organizers/{username}/meeting-types")
    def list_meeting_types(username: str, db: Session = Depends(get_db)) -> dict:
        organizer = RuleRepository.get_user_by_username(db, username)
        if organizer is None:
            raise NotFoundError("Organizer not found")
        types = RuleRepository.list_meeting_types(db, organizer.id)
        return {
            "organizer_id": organizer.id,
            "timezone": organizer.default_timezone,
            "meeting_types": [t.to_dict() for t in types],
        }

    # ── Claims ─────────────────────────────────────────────────

    @app.post("/claims", status_code=201)
    def create_claim(body: ClaimRequest, db: Session = Depends(get_db)) -> dict:
        claim = coordinator.request_claim(
            db, body.organizer_id, body.slot_start, body.slot_end, body.claimant_id
        )
        return {"claim_id": claim.claim_id, **claim.to_event()}

    @app.delete("/claims/{claim_id}", status_code=204)
    def delete_claim(claim_id: str, claimant_id: Optional[str] = None) -> Response:
        coordinator.release_claim(claim_id, claimant_id)
        return Response(status_code=204)

    # ── Appointments ───────────────────────────────────────────

    @app.get("/appointments")
    def list_appointments(
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[Literal["booked", "canceled", "rescheduled"]] = None,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> list[dict]:
        """Organizer dashboard listing; dates are local to the organizer."""
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        tz_name = RuleRepository.timezone_for(organizer, settings.default_timezone)
        start = local_day_bounds(tz_name, start_date, start_date)[0] if start_date else None
        end = local_day_bounds(tz_name, end_date, end_date)[1] if end_date else None
        appointments = RuleRepository.list_appointments(db, organizer.id, start, end, status)
        return [a.to_dict() for a in appointments]

    @app.post("/appointments", status_code=201)
    def create_appointment(body: BookingRequest, db: Session = Depends(get_db)) -> dict:
        appointment = coordinator.convert_to_booking(db, body.claim_handle, body)
        return appointment.to_dict()

    @app.post("/appointments/cancel")
    def cancel_appointment(body: CancelRequest, db: Session = Depends(get_db)) -> dict:
        appointment = booking.cancel_by_token(db, body.cancellation_token, broadcaster)
        return {"appointment_id": appointment.id, "status": appointment.status}

    @app.put("/appointments/{appointment_id}")
    def update_appointment(
        appointment_id: str,
        body: AppointmentUpdate,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> dict:
        appointment = booking.update_appointment(
            db, organizer.id, appointment_id, body, broadcaster
        )
        return appointment.to_dict()

    # ── Availability: recurring rules ──────────────────────────

    @app.get("/availability/recurring")
    def list_recurring(
        organizer: User = Depends(current_organizer), db: Session = Depends(get_db)
    ) -> list[dict]:
        return [r.to_dict() for r in RuleRepository.list_rules(db, organizer.id)]

    @app.post("/availability/recurring", status_code=201)
    def create_recurring(
        body: RecurringRuleIn,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> dict:
        rule = RuleRepository.create_rule(db, organizer.id, **body.model_dump())
        _publish_availability(broadcaster, organizer.id, "recurring", rule.to_dict())
        return rule.to_dict()

    @app.put("/availability/recurring/{rule_id}")
    def update_recurring(
        rule_id: str,
        body: RecurringRuleIn,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> dict:
        rule = RuleRepository.get_rule(db, rule_id, organizer.id)
        if rule is None:
            raise NotFoundError("Availability rule not found")
        rule = RuleRepository.update_rule(db, rule, **body.model_dump())
        _publish_availability(broadcaster, organizer.id, "recurring", rule.to_dict())
        return rule.to_dict()

    @app.delete("/availability/recurring/{rule_id}", status_code=204)
    def delete_recurring(
        rule_id: str,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> Response:
        rule = RuleRepository.get_rule(db, rule_id, organizer.id)
        if rule is None:
            raise NotFoundError("Availability rule not found")
        RuleRepository.delete_rule(db, rule)
        _publish_availability(
            broadcaster, organizer.id, "recurring", {"id": rule_id, "deleted": True}
        )
        return Response(status_code=204)

    # ── Availability: date exceptions ──────────────────────────

    @app.get("/availability/exceptions")
    def list_exceptions(
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> list[dict]:
        entries = RuleRepository.list_exceptions(db, organizer.id, start_date, end_date)
        return [e.to_dict() for e in entries]

    @app.post("/availability/exceptions", status_code=201)
    def create_exception(
        body: ExceptionEntryIn,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> dict:
        entry = RuleRepository.create_exception(db, organizer.id, **_exception_fields(body))
        _publish_availability(broadcaster, organizer.id, "exception", entry.to_dict())
        return entry.to_dict()

    @app.put("/availability/exceptions/{exception_id}")
    def update_exception(
        exception_id: str,
        body: ExceptionEntryIn,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> dict:
        entry = RuleRepository.get_exception(db, exception_id, organizer.id)
        if entry is None:
            raise NotFoundError("Availability exception not found")
        entry = RuleRepository.update_exception(db, entry, **_exception_fields(body))
        _publish_availability(broadcaster, organizer.id, "exception", entry.to_dict())
        return entry.to_dict()

    @app.delete("/availability/exceptions/{exception_id}", status_code=204)
    def delete_exception(
        exception_id: str,
        organizer: User = Depends(current_organizer),
        db: Session = Depends(get_db),
    ) -> Response:
        entry = RuleRepository.get_exception(db, exception_id, organizer.id)
        if entry is None:
            raise NotFoundError("Availability exception not found")
        RuleRepository.delete_exception(db, entry)
        _publish_availability(
            broadcaster, organizer.id, "exception", {"id": exception_id, "deleted": True}
        )
        return Response(status_code=204)

    # ── Real-time channel ──────────────────────────────────────

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        await handle_realtime_ws(websocket, coordinator, session_factory)

    return app


# ── Helper functions ──────────────────────────────────────────────

def _build_claim_store(settings: Settings) -> ClaimStore:
    if settings.claim_backend == "redis":
        log.info("Using Redis claim store at %s", settings.redis_url)
        return RedisClaimStore.from_url(settings.redis_url)
    return InMemoryClaimStore()


async def _sweep_forever(coordinator: SlotReservationCoordinator, interval: float) -> None:
    """Periodically drop expired claims so other pages see the slot free up."""
    loop = asyncio.get_running_loop()
    while True:
        await asyncio.sleep(interval)
        try:
            await loop.run_in_executor(None, coordinator.sweep_expired)
        except Exception:
            log.exception("Claim sweep failed")


def _publish_availability(
    broadcaster: EventBroadcaster, user_id: str, entry_type: str, entry: dict
) -> None:
    broadcaster.publish("availability_updated", {
        "user_id": user_id,
        "type": entry_type,
        "updated_entry": entry,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    log.info("Availability updated for %s (%s %s)", user_id, entry_type, entry.get("id"))


def _exception_fields(body: ExceptionEntryIn) -> dict:
    fields = body.model_dump()
    fields["exception_date"] = body.exception_date.isoformat()
    return fields


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "simplecal.app:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        log_config=log_config,
    )
