"""Webhook ingestion: verification, deduplication, ordering."""

import asyncio

import pytest

import payd.constants as C
from payd.models import WebhookEvent

from conftest import ENVELOPE, broadcasting_record, make_event, make_form, validated_record

S, O = C.TxState, C.IngestOutcome


@pytest.mark.asyncio
async def test_confirmation_applies_and_records_event_id(orch, notifier):
    await broadcasting_record(orch, "tx1")
    ack = await orch.ingest("xrpl", make_event("evt-1", "tx1", "confirmed"))

    assert ack.outcome == O.APPLIED
    assert ack.state == S.CONFIRMED
    rec = await orch.require("tx1")
    assert rec.state == S.CONFIRMED
    assert rec.last_webhook_event_id == "evt-1"
    assert rec.confirmed_at is not None
    assert notifier.messages[-1] == "Payment to Ada Lovelace confirmed."


@pytest.mark.asyncio
async def test_failure_event(orch):
    await broadcasting_record(orch, "tx1")
    ack = await orch.ingest("xrpl", make_event("evt-1", "tx1", "failed"))
    assert ack.state == S.FAILED
    rec = await orch.require("tx1")
    assert rec.confirmed_at is None
    assert rec.finalized_at is not None


@pytest.mark.asyncio
async def test_redelivery_is_idempotent(orch, store):
    await broadcasting_record(orch, "tx1")
    event = make_event("evt-1", "tx1")

    first = await orch.ingest("xrpl", event)
    snapshot = await store.load("tx:tx1")
    second = await orch.ingest("xrpl", event)

    assert first.outcome == O.APPLIED
    assert second.outcome == O.DUPLICATE
    assert await store.load("tx:tx1") == snapshot


@pytest.mark.asyncio
@pytest.mark.parametrize("first,second", [("failed", "confirmed"), ("confirmed", "failed")])
async def test_first_terminal_event_wins(orch, first, second):
    await broadcasting_record(orch, "tx1")
    a = await orch.ingest("xrpl", make_event("evt-a", "tx1", first))
    b = await orch.ingest("xrpl", make_event("evt-b", "tx1", second))

    expected = S.CONFIRMED if first == "confirmed" else S.FAILED
    assert a.outcome == O.APPLIED
    assert b.outcome == O.ALREADY_TERMINAL
    assert b.state == expected
    rec = await orch.require("tx1")
    assert rec.state == expected
    assert rec.last_webhook_event_id == "evt-a"


@pytest.mark.asyncio
async def test_unknown_transaction_is_acknowledged_without_side_effects(orch, store):
    ack = await orch.ingest("xrpl", make_event("evt-1", "never-created"))
    assert ack.outcome == O.UNKNOWN_TRANSACTION
    assert ack.transaction_id == "never-created"
    assert await store.all_records() == []
    assert await orch.get("never-created") is None


@pytest.mark.asyncio
async def test_bad_signature_changes_nothing(orch):
    await broadcasting_record(orch, "tx1")
    forged = make_event("evt-1", "tx1", secret="wrong-secret")

    ack = await orch.ingest("xrpl", forged)
    assert ack.outcome == O.UNVERIFIED_SOURCE
    rec = await orch.require("tx1")
    assert rec.state == S.BROADCASTING
    assert rec.last_webhook_event_id is None


@pytest.mark.asyncio
async def test_tampered_status_fails_verification(orch):
    await broadcasting_record(orch, "tx1")
    good = make_event("evt-1", "tx1", "confirmed")
    tampered = WebhookEvent(id=good.id, transaction_id=good.transaction_id, status="failed", signature=good.signature)

    assert (await orch.ingest("xrpl", tampered)).outcome == O.UNVERIFIED_SOURCE
    assert (await orch.require("tx1")).state == S.BROADCASTING


@pytest.mark.asyncio
async def test_unknown_provider_is_unverified(orch):
    await broadcasting_record(orch, "tx1")
    ack = await orch.ingest("someone-else", make_event("evt-1", "tx1"))
    assert ack.outcome == O.UNVERIFIED_SOURCE


@pytest.mark.asyncio
async def test_unknown_status_is_malformed(orch):
    await broadcasting_record(orch, "tx1")
    ack = await orch.ingest("xrpl", make_event("evt-1", "tx1", "pending"))
    assert ack.outcome == O.MALFORMED
    assert (await orch.require("tx1")).state == S.BROADCASTING


@pytest.mark.asyncio
async def test_event_for_draft_is_ignored(orch):
    await orch.create_draft(make_form(), ENVELOPE, record_id="d")
    ack = await orch.ingest("xrpl", make_event("evt-1", "d"))
    assert ack.outcome == O.IGNORED
    rec = await orch.require("d")
    assert rec.state == S.DRAFT
    assert rec.last_webhook_event_id is None


@pytest.mark.asyncio
async def test_late_confirmation_after_ambiguous_timeout(orch, gateway):
    from payd.errors import NetworkError

    await validated_record(orch, "late")
    gateway.submit_error = NetworkError("timeout", ambiguous=True)
    with pytest.raises(NetworkError):
        await orch.broadcast("late")
    assert (await orch.require("late")).state == S.VALIDATED

    # The network did take it after all.
    ack = await orch.ingest("xrpl", make_event("evt-1", "late"))
    assert ack.outcome == O.APPLIED
    assert (await orch.require("late")).state == S.CONFIRMED


@pytest.mark.asyncio
async def test_concurrent_deliveries_apply_once(orch, notifier):
    await broadcasting_record(orch, "tx1")
    before = len(notifier.messages)
    events = [make_event("evt-1", "tx1")] * 5 + [make_event("evt-2", "tx1", "failed")] * 5

    acks = await asyncio.gather(*(orch.ingest("xrpl", e) for e in events))

    assert [a.outcome for a in acks].count(O.APPLIED) == 1
    assert len(notifier.messages) - before == 1
    assert (await orch.require("tx1")).is_terminal


@pytest.mark.asyncio
async def test_records_are_independent(orch):
    await broadcasting_record(orch, "a")
    await broadcasting_record(orch, "b")
    await orch.ingest("xrpl", make_event("evt-1", "a", "failed"))
    assert (await orch.require("a")).state == S.FAILED
    assert (await orch.require("b")).state == S.BROADCASTING
