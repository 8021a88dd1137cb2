"""Exception taxonomy for the lifecycle orchestrator.

Protocol violations are programming/ordering errors and get logged.
Transient infrastructure errors are safe to retry.
Ingestion anomalies are acknowledged to the sender and absorbed.
"""


class OrchestratorError(Exception):
    """Base class for everything the orchestrator raises on purpose."""


# ---------------------------------------------------------------------------
# Protocol violations
# ---------------------------------------------------------------------------

class InvalidTransition(OrchestratorError):
    def __init__(self, record_id: str, state: str, event: str, message: str | None = None) -> None:
        self.record_id = record_id
        self.state = state
        self.event = event
        super().__init__(message or f"{event} is not legal in state {state} (record {record_id})")


class TerminalStateViolation(InvalidTransition):
    """An event arrived for a record that already reached a terminal state."""


class EnvelopeLocked(InvalidTransition):
    """The envelope was validated or submitted once; changing it needs a new draft."""

    def __init__(self, record_id: str, state: str, event: str) -> None:
        super().__init__(record_id, state, event, f"envelope of record {record_id} is locked once validated; create a new draft instead")


class NotValidated(OrchestratorError):
    def __init__(self, record_id: str, state: str) -> None:
        self.record_id = record_id
        self.state = state
        super().__init__(f"record {record_id} is {state}, broadcast requires VALIDATED")


class AlreadyBroadcasting(OrchestratorError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"record {record_id} already has a broadcast in flight")


# ---------------------------------------------------------------------------
# Transient infrastructure
# ---------------------------------------------------------------------------

class NetworkError(OrchestratorError):
    """Broadcast did not reach a definite outcome.

    ambiguous:
        True when the envelope may have been accepted by the network
        (timeout after send, connection dropped mid-request).
    """

    def __init__(self, message: str, *, ambiguous: bool = True) -> None:
        self.ambiguous = ambiguous
        super().__init__(message)


class BroadcastRefused(NetworkError):
    """The network answered and explicitly did not accept the envelope."""

    def __init__(self, message: str, engine_result: str | None = None) -> None:
        self.engine_result = engine_result
        super().__init__(message, ambiguous=False)


# ---------------------------------------------------------------------------
# Ingestion anomalies
# ---------------------------------------------------------------------------

class IngestionAnomaly(OrchestratorError):
    pass


class UnverifiedSource(IngestionAnomaly):
    pass


class UnknownTransaction(IngestionAnomaly):
    pass


# ---------------------------------------------------------------------------
# Operator-facing
# ---------------------------------------------------------------------------

class DraftValidationError(OrchestratorError):
    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = fields or []
        super().__init__(message)


class RecordNotFound(OrchestratorError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"no record {record_id}")
