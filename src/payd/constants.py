from typing import Final
from enum import StrEnum


class TxState(StrEnum):
    DRAFT        = "DRAFT"
    SIMULATING   = "SIMULATING"
    VALIDATED    = "VALIDATED"
    REJECTED     = "REJECTED"
    BROADCASTING = "BROADCASTING"
    CONFIRMED    = "CONFIRMED"
    FAILED       = "FAILED"


class TxEvent(StrEnum):
    SIMULATE_STARTED     = "simulate_started"
    SIMULATE_OK          = "simulate_ok"
    SIMULATE_FAILED      = "simulate_failed"
    SIMULATE_UNAVAILABLE = "simulate_unavailable"
    FIELDS_EDITED        = "fields_edited"
    BROADCAST_REQUESTED  = "broadcast_requested"
    BROADCAST_ERRORED    = "broadcast_errored"
    WEBHOOK_CONFIRMED    = "webhook_confirmed"
    WEBHOOK_FAILED       = "webhook_failed"


class RejectReason(StrEnum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_SEQUENCE     = "invalid_sequence"
    MISSING_TRUSTLINE    = "missing_trustline"
    INELIGIBLE_ACCOUNT   = "ineligible_account"
    UNKNOWN              = "unknown"


class SimulationStatus(StrEnum):
    SUCCESS     = "success"
    REJECTED    = "rejected"
    UNAVAILABLE = "unavailable"  # GatewayUnavailable


class IngestOutcome(StrEnum):
    APPLIED             = "applied"
    DUPLICATE           = "duplicate"
    ALREADY_TERMINAL    = "already_terminal"
    IGNORED             = "ignored"
    UNVERIFIED_SOURCE   = "unverified_source"
    UNKNOWN_TRANSACTION = "unknown_transaction"
    MALFORMED           = "malformed"


class Frequency(StrEnum):
    WEEKLY  = "weekly"
    MONTHLY = "monthly"


TERMINAL_STATE: Final = frozenset({TxState.CONFIRMED, TxState.FAILED, TxState.REJECTED})

RECORD_PREFIX: Final = "tx:"
DRAFT_KEY: Final = "payroll-scheduler-draft"

SIMULATE_TIMEOUT = 10.0
SUBMIT_TIMEOUT = 20.0
RPC_TIMEOUT = 2.0
AUTOSAVE_DEBOUNCE = 1.0

__all__ = [
    "AUTOSAVE_DEBOUNCE",
    "DRAFT_KEY",
    "RECORD_PREFIX",
    "RPC_TIMEOUT",
    "SIMULATE_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "TERMINAL_STATE",

    ######
    "Frequency",
    "IngestOutcome",
    "RejectReason",
    "SimulationStatus",
    "TxEvent",
    "TxState",
]
