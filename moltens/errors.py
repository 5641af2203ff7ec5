"""
moltens/errors.py

Structured failures raised by the claim protocol.

Every error carries:
  - kind        : machine-readable identifier (snake_case)
  - status_code : HTTP status used by main.py
  - message     : remediation text for the caller
  - extra       : optional structured context (expected message, reference token, ...)

main.py renders them as {"detail": {"error": kind, "message": message, **extra}},
the same shape the HTTP layer uses for HTTPException details.
"""

from typing import Any, Dict, Optional


class ClaimError(Exception):
    kind = "claim_error"
    status_code = 400
    default_message = "Claim failed."

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.kind, "message": self.message}
        detail.update(self.extra)
        return detail


# -----------------------------------------------------------------------------
# Input validation (user must correct input)
# -----------------------------------------------------------------------------
class ValidationError(ClaimError):
    kind = "validation_error"
    status_code = 400


class EmptyName(ValidationError):
    kind = "empty_name"
    default_message = "Name cannot be empty."


class TooLong(ValidationError):
    kind = "too_long"
    default_message = "Name too long (max 63 characters)."


class InvalidFormat(ValidationError):
    kind = "invalid_format"
    default_message = (
        "Invalid name format. Use lowercase letters, numbers, hyphens, underscores. "
        "Cannot start or end with a hyphen or underscore."
    )


class InvalidWallet(ValidationError):
    kind = "invalid_wallet"
    default_message = "Invalid wallet address format (expected 0x followed by 40 hex characters)."


# -----------------------------------------------------------------------------
# Wallet signature (user must re-sign the exact message)
# -----------------------------------------------------------------------------
class SignatureError(ClaimError):
    kind = "signature_error"


class MalformedSignature(SignatureError):
    kind = "malformed_signature"
    status_code = 400
    default_message = "Invalid wallet signature format (expected 0x followed by 130 hex characters)."


class SignatureInvalid(SignatureError):
    kind = "signature_invalid"
    status_code = 403
    default_message = "Wallet signature verification failed."


# -----------------------------------------------------------------------------
# Pending request lifecycle (user must re-run initiate)
# -----------------------------------------------------------------------------
class NoPendingRequest(ClaimError):
    kind = "no_pending_request"
    status_code = 404
    default_message = "No pending verification found. Call /api/initiate first to get a reference token."


class RequestExpired(ClaimError):
    kind = "request_expired"
    status_code = 410
    default_message = "Verification request has expired. Call /api/initiate again to get a new reference token."


# -----------------------------------------------------------------------------
# External proof / chain lookups (retryable)
# -----------------------------------------------------------------------------
class ProofNotFound(ClaimError):
    kind = "proof_not_found"
    status_code = 400
    default_message = "Moltbook verification failed."


class OracleUnavailable(ClaimError):
    kind = "oracle_unavailable"
    status_code = 503
    default_message = "Moltbook could not be reached. Try again in a moment."


class RegistryUnavailable(ClaimError):
    kind = "registry_unavailable"
    status_code = 503
    default_message = "The registry contract could not be queried. Try again in a moment."


# -----------------------------------------------------------------------------
# Deployment / unexpected faults
# -----------------------------------------------------------------------------
class SigningUnconfigured(ClaimError):
    kind = "signing_unconfigured"
    status_code = 503
    default_message = "Voucher signing is not configured on this deployment."


class InternalError(ClaimError):
    kind = "internal_error"
    status_code = 500
    default_message = "Internal server error."
