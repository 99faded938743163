"""
Pay-Per-Call Gate

Lets a request pay for itself with a signed payment proof instead of
spending credits:

1. evaluate(): proof header present and (no account credential, or the
   caller opted in) -> decode -> match offered requirements -> facilitator
   /verify -> claim the proof for this request -> mark the request bypassed
2. the protected work runs
3. settle(): facilitator /settle under the claim, once per proof;
   release() gives the claim back when the work failed

The bypass marker lives on request.state and can only be constructed by
this module, so no client-supplied value can switch the ledger off.
An invalid proof never bypasses; the request falls through to credits.
"""

import base64
import binascii
import hashlib
import json
import logging
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import httpx
import jwt

from .config import PAY_PER_CALL, TIMEOUTS
from .errors import FacilitatorError, PaymentSettlementFailed, PaymentVerificationFailed
from .ledger import CreditLedger
from .models import (
    PaymentRequirements,
    PayPerCallDecision,
    SettleResult,
    VerifyResult,
    WorkDescriptor,
)
from .pricing import PricingCalculator
from .store import AccountStore, short_id

logger = logging.getLogger(__name__)

STATE_ATTR = "pay_per_call_bypass"
CRITICAL_REQUIREMENT_KEYS = ("scheme", "network", "asset", "payTo", "amount")

_ISSUER = object()


class PayPerCallBypass:
    """Request-scoped proof that a payment was verified. Issued by PayPerCallGate only."""

    __slots__ = ("proof_hash", "claim_id", "payer", "requirements", "payload")

    def __init__(self, issuer, proof_hash: str, claim_id: str, payer: Optional[str],
                 requirements: PaymentRequirements, payload: Dict[str, Any]):
        if issuer is not _ISSUER:
            raise TypeError("PayPerCallBypass can only be issued by PayPerCallGate")
        self.proof_hash = proof_hash
        self.claim_id = claim_id
        self.payer = payer
        self.requirements = requirements
        self.payload = payload


def get_bypass(request_state) -> Optional[PayPerCallBypass]:
    marker = getattr(request_state, STATE_ATTR, None)
    return marker if isinstance(marker, PayPerCallBypass) else None


def is_bypassed(request_state) -> bool:
    return get_bypass(request_state) is not None


def requirements_match(accepted: Any, required: Dict[str, Any]) -> bool:
    """Settlement-critical terms of the accepted offer must equal ours exactly."""
    if not isinstance(accepted, dict):
        return False
    for key in CRITICAL_REQUIREMENT_KEYS:
        if str(accepted.get(key)).lower() != str(required.get(key)).lower():
            return False
    return True


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


# ==================== FACILITATOR CLIENT ====================

class FacilitatorClient:
    """
    HTTP client for a payment facilitator's /verify and /settle endpoints.

    When CDP credentials are configured, every call carries a fresh ES256
    bearer token valid for a short window; tokens are never reused.
    """

    def __init__(
        self,
        base_url: str = PAY_PER_CALL["facilitator_url"],
        http_client: Optional[httpx.AsyncClient] = None,
        api_key_id: Optional[str] = None,
        api_key_secret: Optional[str] = None,
        timeout: float = TIMEOUTS["facilitator"],
        token_ttl: int = TIMEOUTS["facilitator_jwt_ttl"],
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.api_key_id = api_key_id
        self.api_key_secret = api_key_secret
        self.timeout = timeout
        self.token_ttl = token_ttl

    def _auth_headers(self, path: str) -> Dict[str, str]:
        if not (self.api_key_id and self.api_key_secret):
            return {}

        url = urlparse(f"{self.base_url}/{path}")
        now = int(time.time())
        payload = {
            "sub": self.api_key_id,
            "iss": "cdp",
            "nbf": now,
            "exp": now + self.token_ttl,
            "uri": f"POST {url.netloc}{url.path}",
        }
        token = jwt.encode(
            payload,
            self.api_key_secret,
            algorithm="ES256",
            headers={"kid": self.api_key_id, "nonce": secrets.token_hex(16)},
        )
        return {"Authorization": f"Bearer {token}"}

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http.post(
                f"{self.base_url}/{path}",
                json=body,
                headers=self._auth_headers(path),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise FacilitatorError(f"{path} request failed: {e}") from e

        if response.status_code >= 500:
            raise FacilitatorError(f"{path} returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise FacilitatorError(f"{path} returned a non-JSON body") from e

        if not isinstance(data, dict):
            raise FacilitatorError(f"{path} returned an unexpected body")
        if response.status_code >= 400:
            data.setdefault("_http_status", response.status_code)
        return data

    def _body(self, payload: Dict[str, Any], requirements: PaymentRequirements) -> Dict[str, Any]:
        return {
            "x402Version": payload.get("x402Version", PAY_PER_CALL["x402_version"]),
            "paymentPayload": payload,
            "paymentRequirements": requirements.to_wire(),
        }

    async def verify(self, payload: Dict[str, Any], requirements: PaymentRequirements) -> VerifyResult:
        data = await self._post("verify", self._body(payload, requirements))
        valid = data.get("isValid") is True and "_http_status" not in data
        return VerifyResult(
            valid=valid,
            reason=None if valid else (data.get("invalidReason") or "verification_rejected"),
            payer=data.get("payer"),
        )

    async def settle(self, payload: Dict[str, Any], requirements: PaymentRequirements) -> SettleResult:
        data = await self._post("settle", self._body(payload, requirements))
        success = data.get("success") is True and "_http_status" not in data

        transaction = data.get("transaction") or data.get("txHash")
        if isinstance(transaction, dict):
            transaction = transaction.get("hash")

        return SettleResult(
            success=success,
            settlement_ref=transaction,
            reason=None if success else (data.get("errorReason") or "settlement_rejected"),
            payer=data.get("payer"),
        )

    async def close(self) -> None:
        await self.http.aclose()


# ==================== GATE ====================

class PayPerCallGate:
    def __init__(
        self,
        facilitator: FacilitatorClient,
        pricing: PricingCalculator,
        store: AccountStore,
        ledger: CreditLedger,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.facilitator = facilitator
        self.pricing = pricing
        self.store = store
        self.ledger = ledger
        self.config = dict(config if config is not None else PAY_PER_CALL)

    def proof_header(self, headers: Mapping[str, str]) -> Optional[str]:
        lowered = _lower_headers(headers)
        for name in self.config["proof_headers"]:
            if lowered.get(name):
                return lowered[name]
        return None

    def should_activate(self, headers: Mapping[str, str]) -> bool:
        """Proof present AND (no account credential OR explicit opt-in)."""
        lowered = _lower_headers(headers)
        if not self.proof_header(lowered):
            return False

        opted_in = (
            lowered.get(self.config["opt_in_header"], "").strip().lower() == self.config["opt_in_value"]
        )
        has_credential = any(lowered.get(name) for name in self.config["credential_headers"])
        return opted_in or not has_credential

    def build_requirements(self, work: WorkDescriptor, resource: Optional[str] = None) -> PaymentRequirements:
        amount = self.pricing.pay_per_call_amount(work.unit_kind, work.quantity)
        return PaymentRequirements(
            scheme=self.config["scheme"],
            network=self.config["network"],
            asset=self.config["asset"],
            amount=str(amount),
            pay_to=self.config["pay_to"],
            max_timeout_seconds=self.config["max_timeout_seconds"],
            resource=resource,
            description=f"{work.unit_kind} x{work.quantity}",
        )

    def build_payment_required(self, work: WorkDescriptor, resource: Optional[str] = None,
                               error: str = "Payment required") -> str:
        """Base64 value for the Payment-Required response header."""
        body = {
            "x402Version": self.config["x402_version"],
            "error": error,
            "accepts": [self.build_requirements(work, resource).to_wire()],
        }
        return base64.b64encode(json.dumps(body).encode()).decode()

    def decode_proof(self, raw: str) -> Dict[str, Any]:
        if len(raw) > self.config["max_proof_bytes"]:
            raise PaymentVerificationFailed("proof_too_large")
        try:
            payload = json.loads(base64.b64decode(raw, validate=True))
        except (binascii.Error, ValueError) as e:
            raise PaymentVerificationFailed("malformed_proof", f"Payment proof could not be decoded: {e}")
        if not isinstance(payload, dict):
            raise PaymentVerificationFailed("malformed_proof")
        return payload

    async def evaluate(
        self,
        headers: Mapping[str, str],
        request_state,
        work: WorkDescriptor,
        resource: Optional[str] = None,
    ) -> PayPerCallDecision:
        """
        Verify a payment proof and, only if valid, mark the request bypassed.

        Never raises for a bad proof: the decision carries failure_reason and
        the caller continues with standard credit checking.
        """
        if not self.should_activate(headers):
            return PayPerCallDecision(bypass=False)

        raw = self.proof_header(headers)

        def _reject(reason: str) -> PayPerCallDecision:
            logger.warning(f"Pay-per-call proof rejected: {reason}")
            return PayPerCallDecision(bypass=False, activated=True, failure_reason=reason)

        try:
            payload = self.decode_proof(raw)
        except PaymentVerificationFailed as e:
            return _reject(e.reason)

        requirements = self.build_requirements(work, resource)
        if not requirements_match(payload.get("accepted"), requirements.to_wire()):
            return _reject("requirements_mismatch")

        proof_hash = hashlib.sha256(raw.encode()).hexdigest()
        existing = await self.store.get_settlement(proof_hash)
        if existing and existing.get("status") != "verified":
            return _reject("proof_already_used")

        try:
            result = await self.facilitator.verify(payload, requirements)
        except FacilitatorError as e:
            logger.error(f"Facilitator verify failed: {e}")
            return _reject("facilitator_unavailable")

        if not result.valid:
            return _reject(result.reason or "invalid_proof")

        # One proof pays for one request: the claim is taken before the marker is set
        claim_id = uuid.uuid4().hex
        stale_before = (
            datetime.now(timezone.utc) - timedelta(seconds=self.config["claim_ttl_seconds"])
        ).isoformat()
        claimed = await self.store.claim_proof(proof_hash, claim_id, {
            "payer": result.payer,
            "amount": requirements.amount,
            "network": requirements.network,
        }, stale_before)
        if not claimed:
            return _reject("proof_already_used")

        setattr(
            request_state,
            STATE_ATTR,
            PayPerCallBypass(_ISSUER, proof_hash, claim_id, result.payer, requirements, payload),
        )
        logger.info(f"Pay-per-call verified for payer {short_id(result.payer)} ({work.unit_kind})")

        return PayPerCallDecision(
            bypass=True,
            activated=True,
            payer=result.payer,
            proof_hash=proof_hash,
        )

    async def settle(self, request_state, account_id: Optional[str] = None) -> SettleResult:
        """
        Collect a verified payment after the work succeeded. At most once per proof.

        Only the request holding the proof's claim can settle it. A repeated
        call from that request returns the first result with
        already_settled=True. A failed settle keeps the claim so the same
        request can retry.
        """
        bypass = get_bypass(request_state)
        if bypass is None:
            raise PaymentSettlementFailed("no_verified_payment")

        if not await self.store.begin_settlement(bypass.proof_hash, bypass.claim_id):
            existing = await self.store.get_settlement(bypass.proof_hash)
            if not existing or existing.get("claim_id") != bypass.claim_id:
                raise PaymentSettlementFailed("claim_lost")
            if existing.get("status") == "settled":
                return SettleResult(
                    success=True,
                    settlement_ref=existing.get("settlement_ref"),
                    payer=existing.get("payer"),
                    already_settled=True,
                )
            raise PaymentSettlementFailed("settlement_in_progress")

        try:
            result = await self.facilitator.settle(bypass.payload, bypass.requirements)
        except FacilitatorError as e:
            await self.store.reopen_settlement(bypass.proof_hash, bypass.claim_id)
            logger.error(f"Facilitator settle failed: {e}")
            raise PaymentSettlementFailed("facilitator_unavailable")

        if not result.success:
            await self.store.reopen_settlement(bypass.proof_hash, bypass.claim_id)
            raise PaymentSettlementFailed(result.reason or "settlement_rejected")

        await self.store.complete_settlement(bypass.proof_hash, bypass.claim_id, {
            "settlement_ref": result.settlement_ref,
            "payer": result.payer or bypass.payer,
            "account_id": account_id,
        })

        if account_id:
            await self.ledger.record_pay_per_call(account_id, bypass.proof_hash, {
                "payer": result.payer or bypass.payer,
                "amount": bypass.requirements.amount,
                "asset": bypass.requirements.asset,
                "network": bypass.requirements.network,
                "settlement_ref": result.settlement_ref,
            })

        logger.info(f"Pay-per-call settled (ref={result.settlement_ref})")
        return result

    async def release(self, request_state) -> None:
        """Give up an unsettled claim after the work failed, so the proof stays spendable."""
        bypass = get_bypass(request_state)
        if bypass is None:
            return
        await self.store.release_proof(bypass.proof_hash, bypass.claim_id)
        logger.info(f"Released pay-per-call claim for payer {short_id(bypass.payer)}")

    @staticmethod
    def payment_response_header(result: SettleResult) -> str:
        """Base64 value for the X-Payment-Response header."""
        body = {"success": result.success, "transaction": result.settlement_ref, "payer": result.payer}
        return base64.b64encode(json.dumps(body).encode()).decode()
