# moltens/service.py
#
# -----------------------------------------------------------------------------
# Claim protocol (two phases)
# -----------------------------------------------------------------------------
#   initiate(identity, wallet)
#       -> validate, create/reuse pending request, return publish text
#   verify(identity, wallet, signature)
#       -> wallet signature -> pending request -> Moltbook proof
#       -> voucher -> consume pending request
#
# Per-claim states: NONE -> PENDING -> VERIFIED | EXPIRED | ABANDONED.
# EXPIRED/ABANDONED are implicit: the store reads them as absent.
#
# Consumption rule: the pending request is deleted only after a voucher has
# been produced, and only the caller whose delete() actually removed it gets
# the voucher. Any failure before that leaves the request in place so verify
# can be retried.
# -----------------------------------------------------------------------------
import logging
import time
from typing import Any, Callable, Dict, Optional

from .audit import AuditLog, build_common
from .config import Settings
from .errors import (
    ClaimError,
    MalformedSignature,
    NoPendingRequest,
    OracleUnavailable,
    ProofNotFound,
    RequestExpired,
    SignatureInvalid,
    SigningUnconfigured,
)
from .identity import verify_wallet_signature
from .moltbook import MoltbookOracle, ProofError
from .names import claim_message, full_label, normalize_label, normalize_wallet, publish_text
from .registry import ContractRegistry
from .storage import PendingRequestStore
from .vouchers import VoucherIssuer


log = logging.getLogger(__name__)


class ClaimService:
    def __init__(
        self,
        settings: Settings,
        store: PendingRequestStore,
        oracle: MoltbookOracle,
        issuer: VoucherIssuer,
        registry: Optional[ContractRegistry] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.oracle = oracle
        self.issuer = issuer
        self.registry = registry or ContractRegistry(settings.CONTRACT_ADDRESS)
        self.audit = audit
        self.clock = clock

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------
    def _publish_text(self, label: str, reference_token: str) -> str:
        return publish_text(label, self.settings.PARENT_DOMAIN, self.settings.PROTOCOL_TAG, reference_token)

    def _full_label(self, label: str) -> str:
        return full_label(label, self.settings.PARENT_DOMAIN)

    def _audit(self, result: str, reason: str, **fields):
        if self.audit is None:
            return
        ctx = {k: fields.pop(k) for k in list(fields) if k in (
            "label", "wallet", "reference_token", "signature", "request_ip", "user_agent"
        )}
        self.audit.append({**build_common(**ctx), "result": result, "reason": reason, **fields})

    def _deny(self, err: ClaimError, **ctx) -> ClaimError:
        log.info("claim denied: %s %s", err.kind, {k: v for k, v in ctx.items() if k != "signature"})
        self._audit("denied", err.kind, **ctx)
        return err

    # -------------------------------------------------------------------------
    # read-only lookups
    # -------------------------------------------------------------------------
    def check(self, raw_name: str) -> Dict[str, Any]:
        label = normalize_label(raw_name)
        return {
            "name": label,
            "full_label": self._full_label(label),
            "available": self.registry.is_available(label),
        }

    def profile(self, raw_name: str) -> Dict[str, Any]:
        label = normalize_label(raw_name)
        return {"name": label, "profile_exists": self.oracle.profile_exists(label)}

    # -------------------------------------------------------------------------
    # phase 1
    # -------------------------------------------------------------------------
    def initiate(
        self,
        raw_identity: str,
        raw_wallet: str,
        *,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        label = normalize_label(raw_identity)
        wallet = normalize_wallet(raw_wallet)

        req = self.store.create(label, wallet)
        text = self._publish_text(label, req.reference_token)

        self._audit(
            "issued",
            "reference_issued",
            label=label,
            wallet=wallet,
            reference_token=req.reference_token,
            request_ip=request_ip,
            user_agent=user_agent,
            expires_at=req.expires_at,
        )

        ttl_minutes = max(1, (req.expires_at - req.created_at) // 60)
        return {
            "reference_token": req.reference_token,
            "identity": label,
            "full_label": self._full_label(label),
            "wallet": wallet,
            "expires_at": req.expires_at,
            "publish_text": text,
            "instructions": {
                "step1": "Post on Moltbook with this exact text:",
                "publish_text": text,
                "step2": "After posting, call /api/verify with your wallet signature to complete registration",
                "message_to_sign": claim_message(label, self.settings.PARENT_DOMAIN, wallet),
                "expires_in": f"{ttl_minutes} minutes",
                "note": "The reference ID must be visible in your public Moltbook posts",
            },
        }

    # -------------------------------------------------------------------------
    # phase 2
    # -------------------------------------------------------------------------
    def verify(
        self,
        raw_identity: str,
        raw_wallet: str,
        signature: str,
        *,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        label = normalize_label(raw_identity)
        wallet = normalize_wallet(raw_wallet)
        ctx = {
            "label": label,
            "wallet": wallet,
            "signature": signature,
            "request_ip": request_ip,
            "user_agent": user_agent,
        }

        # Wallet ownership
        expected = claim_message(label, self.settings.PARENT_DOMAIN, wallet)
        try:
            signature_ok = verify_wallet_signature(wallet, expected, signature)
        except MalformedSignature as e:
            raise self._deny(e, **ctx)
        if not signature_ok:
            raise self._deny(
                SignatureInvalid(
                    f'Wallet signature verification failed. Expected message: "{expected}"',
                    expected_message=expected,
                ),
                **ctx,
            )

        # Pending request
        req = self.store.find_by_identity_and_wallet(label, wallet)
        if req is None:
            raise self._deny(NoPendingRequest(), **ctx)
        ctx["reference_token"] = req.reference_token

        # The store already filters expired entries; re-check against our clock.
        if req.is_expired(self.clock()):
            raise self._deny(RequestExpired(reference_token=req.reference_token), **ctx)

        # Moltbook proof
        proof = self.oracle.check_proof(label, req.reference_token)
        if not proof.found:
            text = self._publish_text(label, req.reference_token)
            if proof.error == ProofError.UNAVAILABLE:
                raise self._deny(
                    OracleUnavailable(proof.detail, reference_token=req.reference_token),
                    **ctx,
                )
            raise self._deny(
                ProofNotFound(
                    proof.detail or ProofNotFound.default_message,
                    reason=proof.error.value if proof.error else None,
                    reference_token=req.reference_token,
                    profile_url=proof.location_url,
                    instructions={
                        "step1": "Make sure you posted on Moltbook with this exact text:",
                        "publish_text": text,
                        "step2": "Wait a few seconds for the post to be visible, then try again",
                        "step3": "Make sure your Moltbook profile is public",
                    },
                ),
                **ctx,
            )

        # Voucher
        voucher = self.issuer.issue(wallet, label)
        if not voucher.signed and not self.settings.ALLOW_UNSIGNED_VOUCHERS:
            log.error("refusing to hand out unsigned voucher: SIGNER_PRIVATE_KEY is not set")
            self._audit("error", "signing_unconfigured", **ctx)
            raise SigningUnconfigured(
                "Voucher signing is not configured on this deployment. "
                "Your verification is still pending; try again later."
            )

        # Consume exactly once
        if not self.store.delete(req.reference_token):
            raise self._deny(NoPendingRequest(), **ctx)

        # The request is gone now; an audit write failure must not eat the voucher.
        try:
            self._audit(
                "approved",
                "voucher_issued",
                deadline=voucher.deadline,
                nonce=voucher.nonce,
                signed=voucher.signed,
                profile_url=proof.location_url,
                **ctx,
            )
        except OSError:
            log.exception("audit append failed for issued voucher label=%s", label)

        contract = self.settings.CONTRACT_ADDRESS
        fee = self.settings.REGISTRATION_FEE_ETH
        out = {
            "verified": True,
            "identity": label,
            "full_label": self._full_label(label),
            "wallet": wallet,
            "profile_url": proof.location_url,
            "voucher": voucher.public_view(),
            "contract_address": contract,
            "chain_id": self.settings.CHAIN_ID,
            "fee": fee,
            "instructions": {
                "step1": "Call the register function on the contract with the voucher",
                "step2": f"Send {fee} ETH with the transaction",
                "example": (
                    f'cast send {contract} "register(string,uint256,bytes32,bytes)" '
                    f'"{label}" {voucher.deadline} {voucher.nonce} {voucher.signature} '
                    f"--value {fee}ether --private-key YOUR_PRIVATE_KEY --rpc-url YOUR_RPC_URL"
                ),
            },
        }
        if not voucher.signed:
            out["warning"] = "Signer not configured: this voucher is a placeholder and the contract will reject it."
        return out
