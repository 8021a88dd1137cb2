import asyncio
import logging
import time
import weakref
from uuid import uuid4

import payd.constants as C
from payd.errors import (
    AlreadyBroadcasting,
    BroadcastRefused,
    DraftValidationError,
    InvalidTransition,
    NetworkError,
    NotValidated,
    RecordNotFound,
    TerminalStateViolation,
    UnknownTransaction,
    UnverifiedSource,
)
from payd.gateway import SettlementGateway
from payd.lifecycle import can_broadcast, transition
from payd.models import (
    Ack,
    BroadcastAccepted,
    PayrollForm,
    SimulationOutcome,
    TransactionRecord,
    WebhookEvent,
    record_key,
)
from payd.notifier import LogNotifier, Notifier
from payd.store import InMemoryStore, Store

log = logging.getLogger("payd.orchestrator")

WEBHOOK_EVENTS = {
    "confirmed": C.TxEvent.WEBHOOK_CONFIRMED,
    "failed": C.TxEvent.WEBHOOK_FAILED,
}


class Orchestrator:
    """Drives payment drafts from creation through simulation, broadcast and confirmation.

    Every mutation of a record happens under that record's lock and ends with a
    single ``store.save`` of the whole record. Network calls run outside the
    lock; the record's state (SIMULATING / BROADCASTING) is the claim that
    keeps other writers out while they are in flight.
    """

    def __init__(self, gateway: SettlementGateway, *, store: Store | None = None, notifier: Notifier | None = None):
        self.gateway = gateway
        self.store: Store = store or InMemoryStore()
        self.notifier: Notifier = notifier or LogNotifier()

        # Locks live as long as someone is waiting on them.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._in_flight: set[str] = set()

    def _lock_for(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[record_id] = lock
        return lock

    def _notify(self, message: str) -> None:
        try:
            self.notifier.notify(message)
        except Exception:
            log.exception("Notifier failed for message %r", message)

    async def get(self, record_id: str) -> TransactionRecord | None:
        data = await self.store.load(record_key(record_id))
        return TransactionRecord.from_dict(data) if data else None

    async def require(self, record_id: str) -> TransactionRecord:
        rec = await self.get(record_id)
        if rec is None:
            raise RecordNotFound(record_id)
        return rec

    async def _persist(self, record: TransactionRecord) -> None:
        await self.store.save(record.key, record.to_dict())

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    async def create_draft(self, form: PayrollForm, envelope: str, *, record_id: str | None = None) -> TransactionRecord:
        form.validate()
        if not envelope:
            raise DraftValidationError("A signed envelope is required.", ["envelope"])
        record_id = record_id or uuid4().hex
        async with self._lock_for(record_id):
            if await self.get(record_id) is not None:
                raise DraftValidationError(f"Draft {record_id} already exists.", ["id"])
            rec = TransactionRecord(id=record_id, envelope=envelope, form=form)
            await self._persist(rec)
        log.info("Created draft %s", rec)
        return rec

    async def edit_draft(
        self,
        record_id: str,
        *,
        form: PayrollForm | None = None,
        envelope: str | None = None,
        fields: dict | None = None,
    ) -> TransactionRecord:
        """Apply operator edits. Always returns the record to DRAFT and drops the last simulation.

        ``fields`` is a partial form, merged over the stored one while the record lock is held.
        """
        async with self._lock_for(record_id):
            rec = await self.require(record_id)
            if fields:
                merged = (form or rec.form).to_dict()
                merged.update(fields)
                form = PayrollForm.from_dict(merged)
            changes = {}
            if form is not None:
                form.validate()
                changes["form"] = form
            if envelope:
                changes["envelope"] = envelope
            new = transition(rec, C.TxEvent.FIELDS_EDITED, **changes)
            await self._persist(new)
        if rec.state != new.state:
            log.info("Draft %s edited: %s -> %s", record_id, rec.state, new.state)
        return new

    async def archive(self, record_id: str) -> None:
        """Explicit operator removal. Refused while a broadcast is in flight."""
        async with self._lock_for(record_id):
            rec = await self.require(record_id)
            if rec.state == C.TxState.BROADCASTING or record_id in self._in_flight:
                raise AlreadyBroadcasting(record_id)
            await self.store.delete(rec.key)
        log.info("Archived %s in state %s", record_id, rec.state)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    async def simulate(self, record_id: str) -> SimulationOutcome:
        async with self._lock_for(record_id):
            rec = await self.require(record_id)
            started = transition(rec, C.TxEvent.SIMULATE_STARTED)
            await self._persist(started)

        try:
            outcome = await self.gateway.simulate(started.envelope)
        except Exception:
            log.exception("simulate raised for %s; returning it to DRAFT", record_id)
            await self._finish_simulation(started, SimulationOutcome(status=C.SimulationStatus.UNAVAILABLE))
            raise

        await self._finish_simulation(started, outcome)
        return outcome

    async def _finish_simulation(self, started: TransactionRecord, outcome: SimulationOutcome) -> None:
        async with self._lock_for(started.id):
            rec = await self.require(started.id)
            if rec.state != C.TxState.SIMULATING or rec.revision != started.revision:
                # Edited while the dry run was in flight; this outcome describes an old envelope.
                log.info("Discarding stale simulation for %s (revision %s, now %s/%s)",
                         started.id, started.revision, rec.state, rec.revision)
                return

            if outcome.unavailable:
                new = transition(rec, C.TxEvent.SIMULATE_UNAVAILABLE, last_error="Settlement network unavailable")
            elif outcome.success:
                new = transition(rec, C.TxEvent.SIMULATE_OK, simulation_result=outcome)
            else:
                new = transition(rec, C.TxEvent.SIMULATE_FAILED, simulation_result=outcome, last_error=str(outcome.reason))
            await self._persist(new)

        if outcome.unavailable:
            self._notify("Simulation could not reach the settlement network. Please try again.")
        elif outcome.success:
            self._notify("Simulation passed. Ready to broadcast.")
        else:
            self._notify(f"Simulation failed: {outcome.reason}.")
        log.info("Simulation for %s: %s (%s)", started.id, outcome.status, outcome.engine_result)

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def broadcast(self, record_id: str) -> BroadcastAccepted:
        if record_id in self._in_flight:
            log.warning("Broadcast for %s already in flight", record_id)
            raise AlreadyBroadcasting(record_id)

        async with self._lock_for(record_id):
            rec = await self.require(record_id)
            if rec.state == C.TxState.BROADCASTING or record_id in self._in_flight:
                log.warning("Broadcast for %s already in flight", record_id)
                raise AlreadyBroadcasting(record_id)
            if not can_broadcast(rec):
                log.error("Protocol violation: broadcast requested for %s in state %s", record_id, rec.state)
                raise NotValidated(record_id, rec.state)
            claimed = transition(rec, C.TxEvent.BROADCAST_REQUESTED)
            await self._persist(claimed)
            self._in_flight.add(record_id)

        try:
            resp = await self.gateway.broadcast_submit(claimed.envelope)
        except NetworkError as e:
            log.error("Broadcast of %s failed (ambiguous=%s): %s", record_id, e.ambiguous, e)
            await self._revert_broadcast(record_id, str(e))
            self._notify("Broadcast failed. Please check your connection.")
            raise
        except Exception as e:
            log.exception("Broadcast of %s raised unexpectedly", record_id)
            await self._revert_broadcast(record_id, str(e))
            self._notify("Broadcast failed. Please check your connection.")
            raise NetworkError(f"broadcast error: {type(e).__name__}: {e}", ambiguous=True) from e
        finally:
            self._in_flight.discard(record_id)

        if not resp.accepted:
            log.warning("Broadcast of %s refused: %s %s", record_id, resp.engine_result, resp.message)
            await self._revert_broadcast(record_id, f"refused: {resp.engine_result}")
            self._notify(f"Broadcast refused by the network ({resp.engine_result}).")
            raise BroadcastRefused(f"network did not accept {record_id}: {resp.engine_result}", resp.engine_result)

        log.info("Broadcast of %s accepted (%s)", record_id, resp.engine_result)
        self._notify("Payroll stream successfully broadcast to the settlement network!")
        return BroadcastAccepted(record_id=record_id, engine_result=resp.engine_result, submitted_at=time.time())

    async def _revert_broadcast(self, record_id: str, error: str) -> None:
        async with self._lock_for(record_id):
            rec = await self.require(record_id)
            if rec.state != C.TxState.BROADCASTING:
                # A webhook already settled it while the submit was in flight.
                log.info("Not reverting %s: already %s", record_id, rec.state)
                return
            await self._persist(transition(rec, C.TxEvent.BROADCAST_ERRORED, last_error=error))

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def ingest(self, provider: str, event: WebhookEvent) -> Ack:
        """Process one webhook delivery. Always returns an Ack; anomalies are absorbed here."""
        try:
            return await self._ingest(provider, event)
        except UnverifiedSource as e:
            log.warning("Unverified webhook from %s: %s", provider, e)
            return Ack(C.IngestOutcome.UNVERIFIED_SOURCE, event.id, event.transaction_id)
        except UnknownTransaction as e:
            log.info("Webhook for unknown transaction: %s", e)
            return Ack(C.IngestOutcome.UNKNOWN_TRANSACTION, event.id, event.transaction_id)

    async def _ingest(self, provider: str, event: WebhookEvent) -> Ack:
        if not self.gateway.verify_signature(provider, event.signing_payload(), event.signature):
            raise UnverifiedSource(f"bad signature on event {event.id}")

        tx_event = WEBHOOK_EVENTS.get(event.status)
        if tx_event is None:
            log.warning("Webhook %s has unknown status %r", event.id, event.status)
            return Ack(C.IngestOutcome.MALFORMED, event.id, event.transaction_id)

        async with self._lock_for(event.transaction_id):
            rec = await self.get(event.transaction_id)
            if rec is None:
                raise UnknownTransaction(f"event {event.id} references {event.transaction_id}")

            if event.id == rec.last_webhook_event_id:
                log.info("Duplicate webhook %s for %s", event.id, rec.id)
                return Ack(C.IngestOutcome.DUPLICATE, event.id, rec.id, rec.state)

            try:
                new = transition(rec, tx_event, last_webhook_event_id=event.id)
            except TerminalStateViolation:
                return Ack(C.IngestOutcome.ALREADY_TERMINAL, event.id, rec.id, rec.state)
            except InvalidTransition:
                log.warning("Webhook %s (%s) arrived for %s in state %s; ignored",
                            event.id, event.status, rec.id, rec.state)
                return Ack(C.IngestOutcome.IGNORED, event.id, rec.id, rec.state)

            # State and event id land in the same write.
            await self._persist(new)

        if new.state == C.TxState.CONFIRMED:
            self._notify(f"Payment to {new.form.employee_name or new.id} confirmed.")
        else:
            self._notify(f"Payment to {new.form.employee_name or new.id} failed to settle.")
        log.info("Webhook %s applied: %s -> %s", event.id, rec.state, new.state)
        return Ack(C.IngestOutcome.APPLIED, event.id, new.id, new.state)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def snapshot_records(self, *states: C.TxState) -> list[dict]:
        if states:
            return await self.store.find_by_state(*states)
        return await self.store.all_records()

    def snapshot_stats(self) -> dict:
        stats = self.store.snapshot_stats()
        stats["in_flight"] = sorted(self._in_flight)
        return stats
