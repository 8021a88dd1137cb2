"""Lifecycle state machine for payment drafts.

``transition`` is the only place a record's state changes. It never mutates
its input: callers get a new record back and persist it themselves, so a
failed write leaves the stored record untouched.
"""

import dataclasses
import logging
import time

import payd.constants as C
from payd.errors import EnvelopeLocked, InvalidTransition, TerminalStateViolation
from payd.models import TransactionRecord

log = logging.getLogger("payd.lifecycle")

S, E = C.TxState, C.TxEvent

TRANSITIONS: dict[tuple[C.TxState, C.TxEvent], C.TxState] = {
    (S.DRAFT, E.SIMULATE_STARTED): S.SIMULATING,
    (S.DRAFT, E.FIELDS_EDITED): S.DRAFT,
    (S.SIMULATING, E.SIMULATE_OK): S.VALIDATED,
    (S.SIMULATING, E.SIMULATE_FAILED): S.REJECTED,
    (S.SIMULATING, E.SIMULATE_UNAVAILABLE): S.DRAFT,
    (S.SIMULATING, E.FIELDS_EDITED): S.DRAFT,
    (S.VALIDATED, E.FIELDS_EDITED): S.DRAFT,
    (S.VALIDATED, E.BROADCAST_REQUESTED): S.BROADCASTING,
    (S.BROADCASTING, E.WEBHOOK_CONFIRMED): S.CONFIRMED,
    (S.BROADCASTING, E.WEBHOOK_FAILED): S.FAILED,
    (S.BROADCASTING, E.BROADCAST_ERRORED): S.VALIDATED,
    # Late outcome for a broadcast whose submit timed out and was reverted.
    (S.VALIDATED, E.WEBHOOK_CONFIRMED): S.CONFIRMED,
    (S.VALIDATED, E.WEBHOOK_FAILED): S.FAILED,
    # The operator may fix a rejected draft; nothing else leaves REJECTED.
    (S.REJECTED, E.FIELDS_EDITED): S.DRAFT,
}

# Fields that may only change together with an edit.
EDIT_ONLY_FIELDS = frozenset({"envelope", "form"})

# States in which the envelope has been validated at least once.
ENVELOPE_LOCKED_STATES = frozenset({S.VALIDATED, S.BROADCASTING, S.CONFIRMED, S.FAILED})


def allowed_events(state: C.TxState) -> list[C.TxEvent]:
    return [e for (s, e) in TRANSITIONS if s == state]


def can_broadcast(record: TransactionRecord) -> bool:
    """Single answer to "may this record be broadcast right now"."""
    return (
        record.state == S.VALIDATED
        and record.simulation_result is not None
        and record.simulation_result.success
    )


def envelope_locked(record: TransactionRecord) -> bool:
    """True once the envelope was validated or submitted; it may not be replaced after that."""
    return (
        record.validated_at is not None
        or record.broadcast_attempted_at is not None
        or record.state in ENVELOPE_LOCKED_STATES
    )


def _guard(record: TransactionRecord, event: C.TxEvent) -> bool:
    if record.state == S.VALIDATED and event in (E.WEBHOOK_CONFIRMED, E.WEBHOOK_FAILED):
        return record.broadcast_attempted_at is not None
    return True


def transition(record: TransactionRecord, event: C.TxEvent, *, now: float | None = None, **changes) -> TransactionRecord:
    """Apply ``event`` to ``record`` and return the updated copy.

    changes:
        Extra field updates applied atomically with the transition
        (``simulation_result``, ``last_webhook_event_id``, ``last_error``, ...).
        ``envelope`` and ``form`` are accepted only with FIELDS_EDITED, and
        a different ``envelope`` only until the record was first validated.

    Raises TerminalStateViolation for events on a terminal record,
    EnvelopeLocked for a late envelope swap and InvalidTransition for any
    other illegal event.
    """
    target = TRANSITIONS.get((record.state, event))
    if target is None or not _guard(record, event):
        if record.is_terminal:
            log.info("Ignoring %s for %s: already %s", event, record.id, record.state)
            raise TerminalStateViolation(record.id, record.state, event)
        log.error("Illegal transition %s --%s--> ? for %s", record.state, event, record.id)
        raise InvalidTransition(record.id, record.state, event)

    frozen = EDIT_ONLY_FIELDS & changes.keys()
    if frozen and event != E.FIELDS_EDITED:
        raise ValueError(f"{sorted(frozen)} can only change with {E.FIELDS_EDITED}")
    if "envelope" in changes and changes["envelope"] != record.envelope and envelope_locked(record):
        log.error("Refusing new envelope for %s: already validated in an earlier revision", record.id)
        raise EnvelopeLocked(record.id, record.state, event)

    now = now or time.time()
    updates = dict(changes)
    updates["state"] = target
    updates["updated_at"] = now

    if event == E.FIELDS_EDITED:
        # A stale simulation must never gate a broadcast.
        updates["simulation_result"] = None
        updates["revision"] = record.revision + 1
        updates["finalized_at"] = None
        updates.setdefault("last_error", None)
    elif event == E.BROADCAST_REQUESTED and record.broadcast_attempted_at is None:
        updates["broadcast_attempted_at"] = now
    elif event == E.WEBHOOK_CONFIRMED and record.confirmed_at is None:
        updates["confirmed_at"] = now

    if target == S.VALIDATED and record.validated_at is None:
        updates["validated_at"] = now

    if target in C.TERMINAL_STATE and record.finalized_at is None:
        updates["finalized_at"] = now

    new = dataclasses.replace(record, **updates)
    log.debug("%s --%s--> %s  %s", record.state, event, new.state, record.id)
    return new
