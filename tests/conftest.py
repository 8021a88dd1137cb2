import asyncio
from collections import deque

import pytest

import payd.constants as C
from payd.gateway import SubmitResponse, XrplGateway, sign_event
from payd.models import PayrollForm, Preconditions, SimulationOutcome, WebhookEvent
from payd.notifier import MemoryNotifier
from payd.orchestrator import Orchestrator
from payd.store import InMemoryStore

PROVIDER = "xrpl"
SECRET = "test-shared-secret"
ENVELOPE = "1200002280000000240000000561D4838D7EA4C6800000000000000000000000000055534400000000004B4E9C06F24296074F7BC48F92A97916C6DC5EA968400000000000000C"

OK = SimulationOutcome(
    status=C.SimulationStatus.SUCCESS,
    preconditions=Preconditions(minimum_fee="12", required_sequence=5),
    engine_result="tesSUCCESS",
)


def rejected(reason: C.RejectReason, engine_result: str = "tecNO_LINE") -> SimulationOutcome:
    return SimulationOutcome(
        status=C.SimulationStatus.REJECTED,
        reason=reason,
        preconditions=Preconditions(missing_trustline=reason == C.RejectReason.MISSING_TRUSTLINE),
        engine_result=engine_result,
    )


UNAVAILABLE = SimulationOutcome(status=C.SimulationStatus.UNAVAILABLE, message="timeout")


class FakeGateway:
    """Deterministic settlement network.

    Queue simulation outcomes in ``outcomes``; set ``submit_gate`` to hold
    submissions until the test releases them.
    """

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self.secrets = secrets if secrets is not None else {PROVIDER: SECRET}
        self.outcomes: deque[SimulationOutcome] = deque()
        self.default_outcome = OK
        self.simulate_gate: asyncio.Event | None = None
        self.submit_gate: asyncio.Event | None = None
        self.submit_result = SubmitResponse(accepted=True, engine_result="tesSUCCESS")
        self.submit_error: Exception | None = None
        self.simulated: list[str] = []
        self.submitted: list[str] = []

    async def simulate(self, envelope: str) -> SimulationOutcome:
        self.simulated.append(envelope)
        if self.simulate_gate is not None:
            await self.simulate_gate.wait()
        return self.outcomes.popleft() if self.outcomes else self.default_outcome

    async def broadcast_submit(self, envelope: str) -> SubmitResponse:
        self.submitted.append(envelope)
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.submit_error is not None:
            raise self.submit_error
        return self.submit_result

    def verify_signature(self, provider: str, payload: bytes, signature: str) -> bool:
        # Same check as production; no network involved.
        return XrplGateway(None, webhook_secrets=self.secrets).verify_signature(provider, payload, signature)


def make_event(event_id: str, transaction_id: str, status: str = "confirmed", *, secret: str = SECRET) -> WebhookEvent:
    unsigned = WebhookEvent(id=event_id, transaction_id=transaction_id, status=status, signature="")
    return WebhookEvent(
        id=event_id,
        transaction_id=transaction_id,
        status=status,
        signature=sign_event(secret, unsigned.signing_payload()),
    )


def make_form(**overrides) -> PayrollForm:
    fields = {"employee_name": "Ada Lovelace", "amount": "2500.00", "frequency": C.Frequency.MONTHLY}
    fields.update(overrides)
    return PayrollForm(**fields)


async def validated_record(orch: Orchestrator, record_id: str = "rec-1"):
    await orch.create_draft(make_form(), ENVELOPE, record_id=record_id)
    await orch.simulate(record_id)
    return await orch.require(record_id)


async def broadcasting_record(orch: Orchestrator, record_id: str = "rec-1"):
    await validated_record(orch, record_id)
    await orch.broadcast(record_id)
    return await orch.require(record_id)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> MemoryNotifier:
    return MemoryNotifier()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def orch(gateway, store, notifier) -> Orchestrator:
    return Orchestrator(gateway, store=store, notifier=notifier)
