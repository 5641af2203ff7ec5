# moltens/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is "thin" orchestration glue:
#   - It wires HTTP endpoints to ClaimService (service.py).
#   - It MUST NOT implement crypto or protocol rules itself.
#
# Key modules / responsibilities:
#   - config.py    : environment-driven settings + SignerConfig
#   - names.py     : label/wallet normalization, exact message strings
#   - storage.py   : pending verification requests (in-memory, lazy expiry)
#   - identity.py  : wallet signature recovery (EIP-191)
#   - moltbook.py  : Moltbook profile proof oracle (httpx)
#   - vouchers.py  : voucher nonce/digest/signature
#   - registry.py  : isAvailable() lookups over JSON-RPC
#   - audit.py     : append-only hash-chained audit log
#
# WARNING (DEPLOYMENT):
# - The pending store is an in-memory dict: it is NOT shared across Uvicorn
#   workers or nodes. Run a single worker, or swap in a shared
#   PendingRequestStore implementation.
# -----------------------------------------------------------------------------
import logging
from pathlib import Path

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .audit import AuditLog
from .config import SignerConfig, settings
from .errors import ClaimError, InternalError
from .models import InitiateRequest, VerifyRequest
from .moltbook import MoltbookOracle
from .registry import ContractRegistry
from .service import ClaimService
from .storage import InMemoryStore
from .vouchers import VoucherIssuer


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


def build_service(s=settings) -> ClaimService:
    return ClaimService(
        settings=s,
        store=InMemoryStore(ttl_seconds=s.PENDING_TTL_SECONDS, prefix=s.REFERENCE_PREFIX),
        oracle=MoltbookOracle.from_templates(
            s.profile_url_templates,
            fetch_timeout=s.PROFILE_FETCH_TIMEOUT,
            probe_timeout=s.PROFILE_PROBE_TIMEOUT,
            user_agent=s.USER_AGENT,
        ),
        issuer=VoucherIssuer(SignerConfig.from_settings(s)),
        registry=ContractRegistry(s.CONTRACT_ADDRESS, s.RPC_URL, timeout=s.RPC_TIMEOUT),
        audit=AuditLog(Path(s.AUDIT_DIR)) if s.AUDIT_ENABLED else None,
    )


service = build_service()

if not service.issuer.configured:
    log.warning("SIGNER_PRIVATE_KEY not set - /api/verify cannot issue valid vouchers")


def get_service() -> ClaimService:
    return service


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
app = FastAPI(
    title="MoltENS Voucher Service",
    version="0.1.0",
)


@app.exception_handler(ClaimError)
def claim_error_handler(request: Request, exc: ClaimError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": InternalError().to_detail()})


def _client_meta(request: Request):
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# -----------------------------------------------------------------------------
# Claim protocol
# -----------------------------------------------------------------------------
@app.post("/api/initiate")
def initiate(body: InitiateRequest, request: Request, svc: ClaimService = Depends(get_service)):
    return {"success": True, **svc.initiate(body.identity, body.wallet, **_client_meta(request))}


@app.post("/api/verify")
def verify(body: VerifyRequest, request: Request, svc: ClaimService = Depends(get_service)):
    return {"success": True, **svc.verify(body.identity, body.wallet, body.signature, **_client_meta(request))}


@app.get("/api/check/{name}")
def check(name: str, svc: ClaimService = Depends(get_service)):
    return svc.check(name)


@app.get("/api/profile/{name}")
def profile(name: str, svc: ClaimService = Depends(get_service)):
    return svc.profile(name)


@app.post("/api/register")
def register_deprecated(svc: ClaimService = Depends(get_service)):
    parent = svc.settings.PARENT_DOMAIN
    tag = svc.settings.PROTOCOL_TAG
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "error": "deprecated",
                "message": "This endpoint has been replaced with the Moltbook post verification flow.",
                "new_flow": {
                    "step1": {
                        "endpoint": "POST /api/initiate",
                        "description": "Start verification - get a reference ID",
                        "body": {"identity": "your_moltbook_username", "wallet": "0xYourWalletAddress"},
                    },
                    "step2": {
                        "description": "Post on Moltbook with the reference ID provided",
                        "example": f"Claiming yourname.{parent} {tag} REF:MOLT-ABC23456",
                    },
                    "step3": {
                        "endpoint": "POST /api/verify",
                        "description": "Complete verification after posting",
                        "body": {
                            "identity": "your_moltbook_username",
                            "wallet": "0xYourWalletAddress",
                            "signature": f"0xSignatureOf_Claim_yourname.{parent}:_0xyourwallet",
                        },
                    },
                },
            }
        },
    )


@app.get("/healthz")
def healthz(svc: ClaimService = Depends(get_service)):
    return {
        "ok": True,
        "signer_configured": svc.issuer.configured,
        "signer_address": svc.issuer.signer_address,
        "contract_address": svc.settings.CONTRACT_ADDRESS,
        "chain_id": svc.settings.CHAIN_ID,
    }
