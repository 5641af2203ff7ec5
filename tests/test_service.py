import re
import threading

import pytest
from conftest import FakeOracle, sign_text

from moltens.audit import AuditLog
from moltens.config import Settings, SignerConfig
from moltens.errors import (
    InvalidFormat,
    InvalidWallet,
    MalformedSignature,
    NoPendingRequest,
    OracleUnavailable,
    ProofNotFound,
    RequestExpired,
    SignatureError,
    SigningUnconfigured,
    TooLong,
)
from moltens.moltbook import ProofError, ProofResult
from moltens.service import ClaimService
from moltens.storage import InMemoryStore, PendingRequest
from moltens.vouchers import VoucherIssuer, from_hex, recover_voucher_signer, voucher_digest

TOKEN_RE = re.compile(r"^MOLT-[ABCDEFGHJKLMNPQRSTUVWXYZ23456789]{8}$")


def test_initiate_scenario(service, wallet):
    out = service.initiate("emberclawd", wallet)
    token = out["reference_token"]
    assert TOKEN_RE.match(token)
    assert out["identity"] == "emberclawd"
    assert out["full_label"] == "emberclawd.moltbook.eth"
    assert out["wallet"] == wallet.lower()
    assert out["publish_text"] == f"Claiming emberclawd.moltbook.eth #MoltENS REF:{token}"
    assert out["instructions"]["message_to_sign"] == f"Claim emberclawd.moltbook.eth: {wallet.lower()}"
    assert out["instructions"]["expires_in"] == "30 minutes"


def test_initiate_is_idempotent(service, wallet):
    a = service.initiate("emberclawd", wallet)
    b = service.initiate("EmberClawd", wallet.lower())
    assert a["reference_token"] == b["reference_token"]


def test_initiate_other_wallet_distinct_token(service, wallet):
    a = service.initiate("emberclawd", wallet)
    b = service.initiate("emberclawd", "0x" + "d4" * 20)
    assert a["reference_token"] != b["reference_token"]


@pytest.mark.parametrize(
    "identity,wallet_,err",
    [
        ("Ember_Clawd-", "0x" + "a1" * 20, InvalidFormat),
        ("a" * 64, "0x" + "a1" * 20, TooLong),
        ("emberclawd", "0x1234", InvalidWallet),
    ],
)
def test_initiate_validation(service, identity, wallet_, err):
    with pytest.raises(err):
        service.initiate(identity, wallet_)
    assert service.store.requests == {}


def test_verify_success_consumes_request(service, wallet, claim_signature, oracle, issuer):
    token = service.initiate("emberclawd", wallet)["reference_token"]

    out = service.verify("emberclawd", wallet, claim_signature())
    assert out["verified"] is True
    assert out["identity"] == "emberclawd"
    assert out["contract_address"] == "0x" + "ab" * 20
    assert out["chain_id"] == 11155111
    assert out["profile_url"] == "https://moltbook.com/u/emberclawd"
    assert oracle.calls == [("emberclawd", token)]

    v = out["voucher"]
    assert set(v) == {"label", "deadline", "nonce", "signature"}
    digest = voucher_digest(wallet, "emberclawd", v["deadline"], from_hex(v["nonce"]), 11155111, "0x" + "ab" * 20)
    assert recover_voucher_signer(digest, v["signature"]) == issuer.signer_address
    assert v["signature"] in out["instructions"]["example"]

    assert service.store.find_by_token(token) is None
    with pytest.raises(NoPendingRequest):
        service.verify("emberclawd", wallet, claim_signature())


def test_verify_without_initiate(service, wallet, claim_signature):
    with pytest.raises(NoPendingRequest):
        service.verify("emberclawd", wallet, claim_signature())


def test_verify_signature_over_different_message(service, wallet):
    service.initiate("emberclawd", wallet)
    # checksum-cased wallet inside the message: one-character-class difference
    sig = sign_text(f"Claim emberclawd.moltbook.eth: {wallet}")
    with pytest.raises(SignatureError) as exc:
        service.verify("emberclawd", wallet, sig)
    assert exc.value.extra["expected_message"] == f"Claim emberclawd.moltbook.eth: {wallet.lower()}"
    assert len(service.store.requests) == 1


def test_verify_malformed_signature(service, wallet):
    service.initiate("emberclawd", wallet)
    with pytest.raises(MalformedSignature):
        service.verify("emberclawd", wallet, "0xdeadbeef")


def test_verify_invalid_identity_before_signature(service, wallet):
    with pytest.raises(InvalidFormat):
        service.verify("Ember_Clawd-", wallet, "0xdeadbeef")


def test_expired_request_never_verifies(service, wallet, claim_signature, clock):
    service.initiate("emberclawd", wallet)
    clock.advance(1801)
    with pytest.raises(NoPendingRequest):
        service.verify("emberclawd", wallet, claim_signature())
    assert service.store.requests == {}


class StaleStore(InMemoryStore):
    """A backend that does not filter expiry on read."""

    def find_by_identity_and_wallet(self, label, wallet):
        return PendingRequest("MOLT-STALE234", label, wallet, 0, 10)


def test_expiry_rechecked_by_orchestrator(settings, oracle, issuer, clock, wallet, claim_signature):
    svc = ClaimService(settings, StaleStore(clock=clock), oracle, issuer, clock=clock)
    with pytest.raises(RequestExpired):
        svc.verify("emberclawd", wallet, claim_signature())
    assert oracle.calls == []


def test_proof_not_found_then_retry(service, wallet, claim_signature, oracle):
    token = service.initiate("emberclawd", wallet)["reference_token"]
    oracle.result = ProofResult(
        found=False,
        location_url="https://moltbook.com/u/emberclawd",
        error=ProofError.TOKEN_NOT_PRESENT,
        detail="Reference ID not found",
    )
    with pytest.raises(ProofNotFound) as exc:
        service.verify("emberclawd", wallet, claim_signature())
    detail = exc.value.to_detail()
    assert detail["error"] == "proof_not_found"
    assert detail["reason"] == "token_not_present"
    assert detail["reference_token"] == token
    assert detail["instructions"]["publish_text"].endswith(f"REF:{token}")
    assert service.store.find_by_token(token) is not None

    oracle.result = ProofResult(found=True, location_url="https://moltbook.com/u/emberclawd")
    out = service.verify("emberclawd", wallet, claim_signature())
    assert out["verified"]
    assert service.store.find_by_token(token) is None


def test_oracle_unavailable_is_retryable(service, wallet, claim_signature, oracle):
    token = service.initiate("emberclawd", wallet)["reference_token"]
    oracle.result = ProofResult(found=False, error=ProofError.UNAVAILABLE, detail="down")
    with pytest.raises(OracleUnavailable):
        service.verify("emberclawd", wallet, claim_signature())
    assert service.store.find_by_token(token) is not None


def test_unsigned_voucher_refused_by_default(clock, store, oracle, wallet, claim_signature):
    s = Settings(CONTRACT_ADDRESS="0x" + "ab" * 20, AUDIT_ENABLED=False, SIGNER_PRIVATE_KEY="")
    svc = ClaimService(s, store, oracle, VoucherIssuer(SignerConfig.from_settings(s), clock=clock), clock=clock)
    token = svc.initiate("emberclawd", wallet)["reference_token"]
    with pytest.raises(SigningUnconfigured):
        svc.verify("emberclawd", wallet, claim_signature())
    assert store.find_by_token(token) is not None


def test_unsigned_voucher_allowed_when_opted_in(clock, store, oracle, wallet, claim_signature):
    s = Settings(AUDIT_ENABLED=False, SIGNER_PRIVATE_KEY="", ALLOW_UNSIGNED_VOUCHERS=True)
    svc = ClaimService(s, store, oracle, VoucherIssuer(SignerConfig.from_settings(s), clock=clock), clock=clock)
    svc.initiate("emberclawd", wallet)
    out = svc.verify("emberclawd", wallet, claim_signature())
    assert out["voucher"]["signature"] == "0x" + "00" * 65
    assert "warning" in out


class BarrierOracle(FakeOracle):
    """Holds both verifiers inside the proof check so they race on consumption."""

    def __init__(self):
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=10)

    def check_proof(self, label, reference_token):
        self.barrier.wait()
        return super().check_proof(label, reference_token)


def test_concurrent_verify_succeeds_once(settings, store, issuer, clock, wallet, claim_signature):
    oracle = BarrierOracle()
    svc = ClaimService(settings, store, oracle, issuer, clock=clock)
    svc.initiate("emberclawd", wallet)
    sig = claim_signature()

    results, errors = [], []

    def run():
        try:
            results.append(svc.verify("emberclawd", wallet, sig))
        except NoPendingRequest as e:
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=15)

    assert len(oracle.calls) == 2
    assert len(results) == 1
    assert len(errors) == 1
    assert store.requests == {}


def test_check_and_profile(service, oracle):
    assert service.check(" EmberClawd ") == {
        "name": "emberclawd",
        "full_label": "emberclawd.moltbook.eth",
        "available": True,
    }
    with pytest.raises(TooLong):
        service.check("a" * 64)
    oracle.exists = False
    assert service.profile("EmberClawd") == {"name": "emberclawd", "profile_exists": False}


def test_audit_trail(settings, store, oracle, issuer, clock, wallet, claim_signature, tmp_path):
    audit = AuditLog(tmp_path)
    svc = ClaimService(settings, store, oracle, issuer, audit=audit, clock=clock)

    svc.initiate("emberclawd", wallet, request_ip="10.0.0.1")
    with pytest.raises(SignatureError):
        svc.verify("emberclawd", wallet, sign_text("nope"))
    svc.verify("emberclawd", wallet, claim_signature())

    lines = audit.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert '"result":"issued"' in lines[0]
    assert '"reason":"signature_invalid"' in lines[1]
    assert '"reason":"voucher_issued"' in lines[2]
    assert '"request_ip":"10.0.0.1"' in lines[0]
    # signatures are hashed, never stored
    assert claim_signature() not in "".join(lines)
    assert audit.verify_chain()


def test_malformed_signature_is_audited(settings, store, oracle, issuer, clock, wallet, tmp_path):
    audit = AuditLog(tmp_path)
    svc = ClaimService(settings, store, oracle, issuer, audit=audit, clock=clock)
    svc.initiate("emberclawd", wallet)

    with pytest.raises(MalformedSignature):
        svc.verify("emberclawd", wallet, "0xdeadbeef")

    lines = audit.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert '"result":"denied"' in lines[1]
    assert '"reason":"malformed_signature"' in lines[1]
    assert len(store.requests) == 1


class FailingAuditLog(AuditLog):
    """Disk goes away right when the approval is written."""

    def append(self, event):
        if event["result"] == "approved":
            raise OSError("No space left on device")
        return super().append(event)


def test_audit_failure_after_consume_still_returns_voucher(
    settings, store, oracle, issuer, clock, wallet, claim_signature, tmp_path
):
    svc = ClaimService(settings, store, oracle, issuer, audit=FailingAuditLog(tmp_path), clock=clock)
    token = svc.initiate("emberclawd", wallet)["reference_token"]

    out = svc.verify("emberclawd", wallet, claim_signature())
    assert out["verified"] is True
    assert out["voucher"]["label"] == "emberclawd"
    assert store.find_by_token(token) is None
