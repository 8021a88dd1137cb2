import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Literal

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from xrpl.asyncio.clients import AsyncJsonRpcClient

import payd.constants as C
from payd.autosave import Autosaver
from payd.config import cfg
from payd.errors import (
    AlreadyBroadcasting,
    DraftValidationError,
    InvalidTransition,
    NetworkError,
    NotValidated,
    RecordNotFound,
)
from payd.gateway import XrplGateway
from payd.lifecycle import allowed_events, can_broadcast
from payd.logging_config import setup_logging
from payd.models import Ack, PayrollForm, TransactionRecord, WebhookEvent
from payd.orchestrator import Orchestrator
from payd.schedule import upcoming_runs
from payd.store import InMemoryStore, SQLiteStore, Store

setup_logging()
log = logging.getLogger("payd.app")

TIMEOUT = 3.0


async def _probe_settlement(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Probe the rippled RPC endpoint with retries until it responds."""
    payload = {"method": "server_info", "params": [{}]}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries})")
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC failed after {max_retries} attempts")
                raise


def build_store(store_cfg: dict) -> Store:
    if store_cfg.get("backend") == "memory":
        return InMemoryStore()
    return SQLiteStore(db_path=store_cfg.get("db_path", "payd_state.db"))


def build_orchestrator(config: dict) -> Orchestrator:
    settlement = config["settlement"]
    gateway = XrplGateway(
        AsyncJsonRpcClient(settlement["rpc_url"]),
        webhook_secrets=config["webhooks"]["providers"],
        simulate_timeout=settlement.get("simulate_timeout", C.SIMULATE_TIMEOUT),
        submit_timeout=settlement.get("submit_timeout", C.SUBMIT_TIMEOUT),
    )
    return Orchestrator(gateway, store=build_store(config["store"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.orchestrator is None:
        settlement = cfg["settlement"]
        if settlement.get("probe_on_startup", True):
            log.info("Probing settlement RPC endpoint %s ...", settlement["rpc_url"])
            await _probe_settlement(
                settlement["rpc_url"],
                max_retries=settlement.get("probe_retries", 30),
                retry_delay=settlement.get("probe_delay", 2.0),
            )
        app.state.orchestrator = build_orchestrator(cfg)

    if app.state.autosaver is None:
        autosave = cfg["autosave"]
        app.state.autosaver = Autosaver(
            app.state.orchestrator.store,
            autosave.get("key", C.DRAFT_KEY),
            debounce=autosave.get("debounce_seconds", C.AUTOSAVE_DEBOUNCE),
        )

    log.info("PayD orchestrator ready")
    try:
        yield
    finally:
        log.info("Shutting down...")
        await app.state.autosaver.close()
    log.info("Shutdown complete")


class FormReq(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    employee_name: str = ""
    amount: str = ""
    frequency: Literal["weekly", "monthly"] = "monthly"
    start_date: date | None = None
    memo: str = ""

    def to_form(self) -> PayrollForm:
        return PayrollForm.from_dict(self.model_dump(mode="json"))


class CreateDraftReq(FormReq):
    envelope: str
    id: str | None = None


class EditDraftReq(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    employee_name: str | None = None
    amount: str | None = None
    frequency: Literal["weekly", "monthly"] | None = None
    start_date: date | None = None
    memo: str | None = None
    envelope: str | None = None


class WebhookReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId", min_length=1)
    transaction_id: str = Field(alias="transactionId", min_length=1)
    status: str
    signature: str = ""


def _view(rec: TransactionRecord) -> dict:
    data = rec.to_dict()
    data["can_broadcast"] = can_broadcast(rec)
    data["allowed_events"] = [str(e) for e in allowed_events(rec.state)]
    return data


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


r_drafts = APIRouter(prefix="/drafts", tags=["Drafts"])
r_webhooks = APIRouter(prefix="/webhooks", tags=["Webhooks"])
r_state = APIRouter(prefix="/state", tags=["State"])
r_autosave = APIRouter(prefix="/autosave", tags=["Autosave"])


@r_drafts.post("", status_code=201)
async def create_draft(req: CreateDraftReq, request: Request):
    rec = await _orchestrator(request).create_draft(req.to_form(), req.envelope, record_id=req.id)
    return _view(rec)


@r_drafts.get("/{record_id}")
async def get_draft(record_id: str, request: Request):
    return _view(await _orchestrator(request).require(record_id))


@r_drafts.patch("/{record_id}")
async def edit_draft(record_id: str, req: EditDraftReq, request: Request):
    changes = req.model_dump(mode="json", exclude_unset=True)
    envelope = changes.pop("envelope", None)
    rec = await _orchestrator(request).edit_draft(record_id, envelope=envelope, fields=changes)
    return _view(rec)


@r_drafts.delete("/{record_id}", status_code=204)
async def archive_draft(record_id: str, request: Request):
    await _orchestrator(request).archive(record_id)


@r_drafts.post("/{record_id}/simulate")
async def simulate_draft(record_id: str, request: Request):
    o = _orchestrator(request)
    outcome = await o.simulate(record_id)
    rec = await o.require(record_id)
    body = {"id": record_id, "state": str(rec.state), **outcome.to_wire()}
    if outcome.unavailable:
        return JSONResponse(status_code=503, content=body)
    return body


@r_drafts.post("/{record_id}/broadcast", status_code=202)
async def broadcast_draft(record_id: str, request: Request):
    accepted = await _orchestrator(request).broadcast(record_id)
    return {
        "id": accepted.record_id,
        "state": str(C.TxState.BROADCASTING),
        "engine_result": accepted.engine_result,
        "submitted_at": accepted.submitted_at,
    }


@r_drafts.get("/{record_id}/schedule")
async def draft_schedule(record_id: str, request: Request, count: int = 6):
    rec = await _orchestrator(request).require(record_id)
    runs = upcoming_runs(rec.form, min(max(count, 0), 120))
    return {"id": record_id, "frequency": str(rec.form.frequency), "dates": [d.isoformat() for d in runs]}


@r_webhooks.post("/{provider}")
async def receive_webhook(provider: str, request: Request):
    """Acknowledge with 200 whenever the delivery was processed, including every ignored case."""
    raw = await request.body()
    try:
        body = WebhookReq.model_validate_json(raw)
    except ValidationError as e:
        log.warning("Malformed webhook from %s: %s", provider, e.errors(include_url=False))
        return Ack(C.IngestOutcome.MALFORMED).to_dict()

    event = WebhookEvent(id=body.event_id, transaction_id=body.transaction_id, status=body.status, signature=body.signature)
    # The sender hanging up must not abandon a delivery halfway.
    ack = await asyncio.shield(_orchestrator(request).ingest(provider, event))
    return ack.to_dict()


@r_state.get("/summary")
async def state_summary(request: Request):
    return _orchestrator(request).snapshot_stats()


@r_state.get("/records")
async def state_records(request: Request, state: C.TxState | None = None):
    o = _orchestrator(request)
    recs = await (o.snapshot_records(state) if state else o.snapshot_records())
    return {"records": recs}


@r_autosave.put("", status_code=202)
async def autosave_put(req: FormReq, request: Request):
    saver: Autosaver = request.app.state.autosaver
    saver.schedule(req.model_dump(mode="json"))
    return saver.status()


@r_autosave.get("")
async def autosave_get(request: Request):
    saver: Autosaver = request.app.state.autosaver
    return {"value": await saver.load(), **saver.status()}


@r_autosave.post("/flush")
async def autosave_flush(request: Request):
    saver: Autosaver = request.app.state.autosaver
    written = await saver.flush()
    return {"written": written, **saver.status()}


def _error(status: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__, **extra})


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RecordNotFound)
    async def _not_found(request: Request, exc: RecordNotFound):
        return _error(404, exc)

    @app.exception_handler(DraftValidationError)
    async def _invalid_draft(request: Request, exc: DraftValidationError):
        return _error(422, exc, fields=exc.fields)

    @app.exception_handler(AlreadyBroadcasting)
    async def _already(request: Request, exc: AlreadyBroadcasting):
        return _error(409, exc)

    @app.exception_handler(NotValidated)
    async def _not_validated(request: Request, exc: NotValidated):
        return _error(409, exc, state=str(exc.state))

    @app.exception_handler(InvalidTransition)
    async def _invalid_transition(request: Request, exc: InvalidTransition):
        return _error(409, exc, state=str(exc.state), event=str(exc.event))

    @app.exception_handler(NetworkError)
    async def _network(request: Request, exc: NetworkError):
        return _error(504 if exc.ambiguous else 502, exc, ambiguous=exc.ambiguous)


def create_app(orchestrator: Orchestrator | None = None, autosaver: Autosaver | None = None) -> FastAPI:
    app = FastAPI(
        title="PayD",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Drafts", "description": "Create, simulate and broadcast payroll payments"},
            {"name": "Webhooks", "description": "Settlement confirmations"},
            {"name": "State", "description": "Record snapshots"},
            {"name": "Autosave", "description": "Debounced form autosave"},
        ],
    )
    app.state.orchestrator = orchestrator
    app.state.autosaver = autosaver
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(r_drafts)
    app.include_router(r_webhooks)
    app.include_router(r_webhooks, prefix="/api", include_in_schema=False)  # original backend mounted webhooks under /api
    app.include_router(r_state)
    app.include_router(r_autosave)
    install_error_handlers(app)
    return app


app = create_app()
