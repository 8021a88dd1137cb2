"""Lifecycle data structures.

Records are persisted as flat JSON dicts through the draft store, so every
type here round-trips through ``to_dict``/``from_dict``.
"""

import time
from dataclasses import dataclass, field, asdict
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import payd.constants as C
from payd.errors import DraftValidationError


@dataclass(slots=True)
class PayrollForm:
    employee_name: str = ""
    amount: str = ""
    frequency: C.Frequency = C.Frequency.MONTHLY
    start_date: date | None = None
    memo: str = ""

    def missing_fields(self) -> list[str]:
        return [name for name in ("employee_name", "amount") if not str(getattr(self, name)).strip()]

    def validate(self) -> None:
        missing = self.missing_fields()
        if missing:
            raise DraftValidationError("Please fill in all required fields.", missing)
        try:
            amount = Decimal(self.amount)
        except InvalidOperation:
            raise DraftValidationError(f"Amount is not a number: {self.amount!r}", ["amount"]) from None
        if not amount.is_finite() or amount <= 0:
            raise DraftValidationError("Amount must be greater than zero.", ["amount"])

    def to_dict(self) -> dict:
        return {
            "employee_name": self.employee_name,
            "amount": self.amount,
            "frequency": str(self.frequency),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "memo": self.memo,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PayrollForm":
        start = d.get("start_date")
        return cls(
            employee_name=d.get("employee_name", ""),
            amount=str(d.get("amount", "")),
            frequency=C.Frequency(d.get("frequency") or C.Frequency.MONTHLY),
            start_date=date.fromisoformat(start) if start else None,
            memo=d.get("memo") or "",
        )


@dataclass(slots=True)
class Preconditions:
    """What the network would require to apply the envelope."""

    minimum_fee: str | None = None  # drops
    required_sequence: int | None = None
    missing_trustline: bool = False


@dataclass(slots=True)
class SimulationOutcome:
    status: C.SimulationStatus
    reason: C.RejectReason | None = None
    preconditions: Preconditions = field(default_factory=Preconditions)
    engine_result: str | None = None
    message: str | None = None

    @property
    def success(self) -> bool:
        return self.status == C.SimulationStatus.SUCCESS

    @property
    def unavailable(self) -> bool:
        return self.status == C.SimulationStatus.UNAVAILABLE

    def to_wire(self) -> dict:
        """Shape returned to the UI: ``{success, preconditions?, reason?}``."""
        wire: dict[str, Any] = {"success": self.success, "preconditions": asdict(self.preconditions)}
        if self.reason is not None:
            wire["reason"] = str(self.reason)
        if self.unavailable:
            wire["unavailable"] = True
        return wire

    def to_dict(self) -> dict:
        return {
            "status": str(self.status),
            "reason": str(self.reason) if self.reason else None,
            "preconditions": asdict(self.preconditions),
            "engine_result": self.engine_result,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SimulationOutcome":
        reason = d.get("reason")
        return cls(
            status=C.SimulationStatus(d["status"]),
            reason=C.RejectReason(reason) if reason else None,
            preconditions=Preconditions(**(d.get("preconditions") or {})),
            engine_result=d.get("engine_result"),
            message=d.get("message"),
        )


@dataclass(slots=True)
class TransactionRecord:
    id: str
    envelope: str
    form: PayrollForm = field(default_factory=PayrollForm)
    state: C.TxState = C.TxState.DRAFT
    simulation_result: SimulationOutcome | None = None
    revision: int = 0
    validated_at: float | None = None
    broadcast_attempted_at: float | None = None
    confirmed_at: float | None = None
    finalized_at: float | None = None
    last_webhook_event_id: str | None = None
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __str__(self):
        return f"{self.id} -- {self.form.employee_name} -- {self.state}"

    @property
    def key(self) -> str:
        return record_key(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.state in C.TERMINAL_STATE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "envelope": self.envelope,
            "form": self.form.to_dict(),
            "state": str(self.state),
            "simulation_result": self.simulation_result.to_dict() if self.simulation_result else None,
            "revision": self.revision,
            "validated_at": self.validated_at,
            "broadcast_attempted_at": self.broadcast_attempted_at,
            "confirmed_at": self.confirmed_at,
            "finalized_at": self.finalized_at,
            "last_webhook_event_id": self.last_webhook_event_id,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TransactionRecord":
        sim = d.get("simulation_result")
        return cls(
            id=d["id"],
            envelope=d["envelope"],
            form=PayrollForm.from_dict(d.get("form") or {}),
            state=C.TxState(d["state"]),
            simulation_result=SimulationOutcome.from_dict(sim) if sim else None,
            revision=d.get("revision", 0),
            validated_at=d.get("validated_at"),
            broadcast_attempted_at=d.get("broadcast_attempted_at"),
            confirmed_at=d.get("confirmed_at"),
            finalized_at=d.get("finalized_at"),
            last_webhook_event_id=d.get("last_webhook_event_id"),
            last_error=d.get("last_error"),
            created_at=d.get("created_at") or time.time(),
            updated_at=d.get("updated_at") or time.time(),
        )


def record_key(record_id: str) -> str:
    return f"{C.RECORD_PREFIX}{record_id}"


@dataclass(slots=True, frozen=True)
class WebhookEvent:
    id: str
    transaction_id: str
    status: str  # "confirmed" | "failed"
    signature: str

    def signing_payload(self) -> bytes:
        """Bytes covered by the sender's HMAC."""
        return f"{self.id}.{self.transaction_id}.{self.status}".encode()


@dataclass(slots=True, frozen=True)
class Ack:
    outcome: C.IngestOutcome
    event_id: str | None = None
    transaction_id: str | None = None
    state: C.TxState | None = None

    def to_dict(self) -> dict:
        return {
            "received": True,
            "outcome": str(self.outcome),
            "event_id": self.event_id,
            "transaction_id": self.transaction_id,
            "state": str(self.state) if self.state else None,
        }


@dataclass(slots=True, frozen=True)
class BroadcastAccepted:
    record_id: str
    engine_result: str | None
    submitted_at: float
