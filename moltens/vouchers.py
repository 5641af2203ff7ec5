# moltens/vouchers.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *voucher layer*: the server-signed authorization the
# registrar contract accepts in register(label, deadline, nonce, signature).
#
# Responsibilities:
#   - Mint a fresh 32-byte nonce per issuance
#   - Build the exact packed byte layout the contract recomputes
#   - Sign it with the process-held signer key (EIP-191 over the raw digest)
#
# What this module is NOT:
#   - Not stateful (no record of issued vouchers; the contract enforces
#     nonce reuse and deadline)
#   - Not a user identity check (see identity.py / moltbook.py)
#
# Digest layout (Solidity abi.encodePacked, fixed order):
#
#     keccak256(
#         address wallet,
#         string  label,
#         uint256 deadline,
#         bytes32 nonce,
#         uint256 chainId,
#         address contract
#     )
#
# signature = personal_sign(digest)  i.e. secp256k1 over
#     keccak256("\x19Ethereum Signed Message:\n32" || digest)
#
# Changing order, widths or dropping a field breaks on-chain acceptance.
# -----------------------------------------------------------------------------


import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from eth_abi.packed import encode_packed
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from .config import SignerConfig
from .errors import InternalError


log = logging.getLogger(__name__)

VOUCHER_TYPES = ["address", "string", "uint256", "bytes32", "uint256", "address"]
NONCE_TYPES = ["address", "string", "uint256", "bytes32"]

PLACEHOLDER_SIGNATURE = "0x" + "00" * 65


# -----------------------------------------------------------------------------
# Hex helpers
# -----------------------------------------------------------------------------
def to_hex(b: bytes) -> str:
    """0x-prefixed lowercase hex (independent of the HexBytes version in use)."""
    return "0x" + bytes(b).hex()


def from_hex(s: str) -> bytes:
    s = str(s).strip()
    if s.startswith("0x"):
        s = s[2:]
    return bytes.fromhex(s)


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_signer_account(private_key_hex: str):
    """
    Load the voucher signer from a raw 32-byte hex private key.

    The key represents *registrar authority*: the contract is deployed with
    this account's address as its trusted signer.
    """
    raw = from_hex(private_key_hex)
    if len(raw) != 32:
        raise ValueError("signer private key must be 32 bytes")
    return Account.from_key(raw)


# -----------------------------------------------------------------------------
# Canonical encoding
# -----------------------------------------------------------------------------
def make_nonce(wallet: str, label: str, timestamp_ns: int, salt: bytes) -> bytes:
    return keccak(encode_packed(NONCE_TYPES, [wallet, label, timestamp_ns, salt]))


def voucher_digest(
    wallet: str,
    label: str,
    deadline: int,
    nonce: bytes,
    chain_id: int,
    contract_address: str,
) -> bytes:
    """
    keccak256(abi.encodePacked(wallet, label, deadline, nonce, chainId, contract)).

    Addresses are passed lowercase; packed encoding writes the raw 20 bytes.
    """
    packed = encode_packed(
        VOUCHER_TYPES,
        [wallet.lower(), label, int(deadline), bytes(nonce), int(chain_id), contract_address.lower()],
    )
    return keccak(packed)


def recover_voucher_signer(digest: bytes, signature: str) -> str:
    """Inverse of signing; used by tests and by operators checking a voucher."""
    return Account.recover_message(encode_defunct(primitive=digest), signature=from_hex(signature)).lower()


# -----------------------------------------------------------------------------
# Issuance
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Voucher:
    label: str
    deadline: int
    nonce: str
    signature: str
    signed: bool = True

    def public_view(self):
        return {
            "label": self.label,
            "deadline": self.deadline,
            "nonce": self.nonce,
            "signature": self.signature,
        }


class VoucherIssuer:
    def __init__(self, config: SignerConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock
        self._account = load_signer_account(config.private_key) if config.private_key else None

    @property
    def configured(self) -> bool:
        return self._account is not None

    @property
    def signer_address(self):
        return self._account.address.lower() if self._account is not None else None

    def issue(self, wallet: str, label: str) -> Voucher:
        """
        Build and sign a voucher for (wallet, label).

        Without a signer key the voucher carries PLACEHOLDER_SIGNATURE and
        signed=False; callers decide whether that may leave the process.
        """
        wallet = wallet.lower()
        deadline = int(self.clock()) + int(self.config.voucher_ttl_seconds)
        nonce = make_nonce(wallet, label, time.time_ns(), secrets.token_bytes(32))

        if self._account is None:
            log.warning("signer key not configured - voucher for %s is unsigned", label)
            return Voucher(label, deadline, to_hex(nonce), PLACEHOLDER_SIGNATURE, signed=False)

        digest = voucher_digest(
            wallet,
            label,
            deadline,
            nonce,
            self.config.chain_id,
            self.config.contract_address,
        )

        try:
            signed = self._account.sign_message(encode_defunct(primitive=digest))
        except Exception as e:
            log.exception("voucher signing failed for %s", label)
            raise InternalError("Failed to sign voucher.") from e

        log.info("issued voucher label=%s wallet=%s deadline=%s", label, wallet, deadline)
        return Voucher(label, deadline, to_hex(nonce), to_hex(signed.signature))
