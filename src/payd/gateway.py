"""Settlement network capability: simulate, submit, and webhook signature checks.

The orchestrator only talks to the network through ``SettlementGateway`` so
tests can swap in a deterministic fake. ``XrplGateway`` is the real thing,
backed by rippled's JSON-RPC ``simulate`` and ``submit`` methods.
"""

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.binarycodec import XRPLBinaryCodecException, decode, encode
from xrpl.models.requests import AccountInfo, Simulate, SubmitOnly

import payd.constants as C
from payd.errors import NetworkError
from payd.models import Preconditions, SimulationOutcome

log = logging.getLogger("payd.gateway")

# engine_result -> reason. Anything not listed maps to UNKNOWN.
INSUFFICIENT_BALANCE = {
    "tecUNFUNDED",
    "tecUNFUNDED_PAYMENT",
    "tecUNFUNDED_OFFER",
    "tecINSUFFICIENT_FUNDS",
    "tecINSUFFICIENT_RESERVE",
    "tecINSUF_RESERVE_LINE",
    "tecPATH_PARTIAL",
    "terINSUF_FEE_B",
}
INVALID_SEQUENCE = {
    "tefPAST_SEQ",
    "terPRE_SEQ",
    "tefMAX_LEDGER",
    "terPRE_TICKET",
    "tefNO_TICKET",
}
MISSING_TRUSTLINE = {
    "tecPATH_DRY",
    "tecNO_LINE",
    "terNO_LINE",
    "tecNO_LINE_INSUF_RESERVE",
    "terNO_RIPPLE",
}
INELIGIBLE_ACCOUNT = {
    "terNO_ACCOUNT",
    "tecNO_DST",
    "tecNO_DST_INSUF_XRP",
    "tecDST_TAG_NEEDED",
    "tecNO_PERMISSION",
    "tecNO_AUTH",
    "terNO_AUTH",
    "tecFROZEN",
    "tefBAD_AUTH",
}

# rpc-level errors that mean "the node can't answer right now", not "the envelope is bad"
UNAVAILABLE_ERRORS = {"noNetwork", "noCurrent", "noClosed", "tooBusy", "notSynced", "amendmentBlocked"}


def classify_engine_result(engine_result: str | None) -> C.RejectReason:
    if engine_result in INSUFFICIENT_BALANCE:
        return C.RejectReason.INSUFFICIENT_BALANCE
    if engine_result in INVALID_SEQUENCE:
        return C.RejectReason.INVALID_SEQUENCE
    if engine_result in MISSING_TRUSTLINE:
        return C.RejectReason.MISSING_TRUSTLINE
    if engine_result in INELIGIBLE_ACCOUNT:
        return C.RejectReason.INELIGIBLE_ACCOUNT
    return C.RejectReason.UNKNOWN


def is_accepted(engine_result: str | None) -> bool:
    """tes*/tec* are applied (tec claims the fee), terQUEUED will be."""
    if not isinstance(engine_result, str):
        return False
    return engine_result.startswith(("tes", "tec")) or engine_result == "terQUEUED"


def sign_event(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


# rippled's `simulate` refuses blobs that carry these.
SIGNATURE_FIELDS = ("TxnSignature", "Signers")


def dry_run_blob(envelope: str) -> str:
    """Unsigned copy of ``envelope`` for rippled's `simulate`. The envelope itself is left alone."""
    tx = decode(envelope)
    if not any(f in tx for f in SIGNATURE_FIELDS) and not tx.get("SigningPubKey"):
        return envelope
    for f in SIGNATURE_FIELDS:
        tx.pop(f, None)
    tx["SigningPubKey"] = ""
    return encode(tx)


@dataclass(slots=True, frozen=True)
class SubmitResponse:
    accepted: bool
    engine_result: str | None = None
    message: str | None = None


class SettlementGateway(Protocol):
    async def simulate(self, envelope: str) -> SimulationOutcome: ...
    async def broadcast_submit(self, envelope: str) -> SubmitResponse: ...
    def verify_signature(self, provider: str, payload: bytes, signature: str) -> bool: ...


class XrplGateway:
    def __init__(
        self,
        client: AsyncJsonRpcClient,
        *,
        webhook_secrets: dict[str, str] | None = None,
        simulate_timeout: float = C.SIMULATE_TIMEOUT,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
    ) -> None:
        self.client = client
        self.webhook_secrets = dict(webhook_secrets or {})
        self.simulate_timeout = simulate_timeout
        self.submit_timeout = submit_timeout

    async def _rpc(self, req, *, t=C.RPC_TIMEOUT):
        return await asyncio.wait_for(self.client.request(req), timeout=t)

    async def simulate(self, envelope: str) -> SimulationOutcome:
        try:
            blob = dry_run_blob(envelope)
        except (XRPLBinaryCodecException, ValueError, KeyError, IndexError) as e:
            log.info("simulate: envelope could not be decoded: %s", e)
            return SimulationOutcome(
                status=C.SimulationStatus.REJECTED,
                reason=C.RejectReason.UNKNOWN,
                message=f"envelope could not be decoded: {e}",
            )

        try:
            resp = await self._rpc(Simulate(tx_blob=blob), t=self.simulate_timeout)
        except asyncio.TimeoutError:
            log.warning("simulate timed out after %ss", self.simulate_timeout)
            return SimulationOutcome(status=C.SimulationStatus.UNAVAILABLE, message="timeout")
        except (httpx.HTTPError, OSError) as e:
            log.warning("simulate transport error: %s: %s", type(e).__name__, e)
            return SimulationOutcome(status=C.SimulationStatus.UNAVAILABLE, message=str(e))

        res = resp.result
        if not resp.is_successful():
            err = res.get("error")
            if err in UNAVAILABLE_ERRORS:
                log.warning("simulate: node unavailable (%s)", err)
                return SimulationOutcome(status=C.SimulationStatus.UNAVAILABLE, message=err)
            log.info("simulate: request rejected (%s): %s", err, res.get("error_message"))
            return SimulationOutcome(
                status=C.SimulationStatus.REJECTED,
                reason=C.RejectReason.UNKNOWN,
                engine_result=err,
                message=res.get("error_message") or err,
            )

        er = res.get("engine_result")
        tx_json = res.get("tx_json", {})
        pre = Preconditions(minimum_fee=tx_json.get("Fee"), required_sequence=tx_json.get("Sequence"))

        if er == "tesSUCCESS":
            log.debug("simulate ok fee=%s seq=%s", pre.minimum_fee, pre.required_sequence)
            return SimulationOutcome(status=C.SimulationStatus.SUCCESS, preconditions=pre, engine_result=er)

        reason = classify_engine_result(er)
        if reason == C.RejectReason.INVALID_SEQUENCE:
            pre.required_sequence = await self._account_sequence(tx_json.get("Account"))
        elif reason == C.RejectReason.MISSING_TRUSTLINE:
            pre.missing_trustline = True
        log.info("simulate rejected: %s -> %s", er, reason)
        return SimulationOutcome(
            status=C.SimulationStatus.REJECTED,
            reason=reason,
            preconditions=pre,
            engine_result=er,
            message=res.get("engine_result_message"),
        )

    async def _account_sequence(self, account: str | None) -> int | None:
        """The sequence the ledger expects next for ``account``; None if it can't be fetched."""
        if not account:
            return None
        try:
            ai = await self._rpc(AccountInfo(account=account, ledger_index="current"))
            return ai.result["account_data"]["Sequence"]
        except (asyncio.TimeoutError, httpx.HTTPError, OSError, KeyError) as e:
            log.debug("Couldn't fetch sequence for %s: %s", account, e)
            return None

    async def broadcast_submit(self, envelope: str) -> SubmitResponse:
        try:
            resp = await self._rpc(SubmitOnly(tx_blob=envelope), t=self.submit_timeout)
        except asyncio.TimeoutError:
            raise NetworkError(f"submit timed out after {self.submit_timeout}s", ambiguous=True) from None
        except httpx.ConnectError as e:
            # Never reached the node.
            raise NetworkError(f"submit could not connect: {e}", ambiguous=False) from e
        except (httpx.HTTPError, OSError) as e:
            raise NetworkError(f"submit transport error: {type(e).__name__}: {e}", ambiguous=True) from e

        res = resp.result
        if not resp.is_successful():
            return SubmitResponse(accepted=False, engine_result=res.get("error"), message=res.get("error_message"))

        er = res.get("engine_result")
        if isinstance(er, str) and er.startswith("tel"):
            # tel* = local rejection, but the server may hold and relay it later.
            raise NetworkError(f"submit returned {er}, outcome unknown", ambiguous=True)
        return SubmitResponse(accepted=is_accepted(er), engine_result=er, message=res.get("engine_result_message"))

    def verify_signature(self, provider: str, payload: bytes, signature: str) -> bool:
        secret = self.webhook_secrets.get(provider)
        if not secret or not signature:
            return False
        expected = sign_event(secret, payload).encode()
        return hmac.compare_digest(expected, signature.lower().encode("utf-8", "replace"))
