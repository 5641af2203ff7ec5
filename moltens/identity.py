"""
moltens/identity.py

Wallet ownership proof (EIP-191 personal_sign).

The wallet signs the exact claim message built by names.claim_message():

    Claim <label>.<parent>: <wallet lowercase>

Server verifies:
  1) the signature is structurally a 65-byte secp256k1 signature (0x + 130 hex)
  2) the address recovered from (message, signature) equals the claimed wallet

Verification is an exact-match contract: the message is rebuilt by the caller
and a single differing byte (letter case, whitespace) recovers a different
address and fails.
"""

import logging
import re

from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import MalformedSignature


log = logging.getLogger(__name__)

SIGNATURE_RE = re.compile(r"^0x[0-9a-fA-F]{130}$")


def decode_signature(signature: str) -> bytes:
    """
    Decode a 0x-prefixed 65-byte hex signature.

    Raises MalformedSignature for anything else (wrong length, missing prefix,
    non-hex characters) so the HTTP layer can answer 400 instead of 403.
    """
    s = str(signature or "").strip()
    if not SIGNATURE_RE.match(s):
        raise MalformedSignature()
    return bytes.fromhex(s[2:])


def recover_signer(message: str, signature: bytes) -> str:
    """Return the lowercase address that signed `message` (EIP-191)."""
    signable = encode_defunct(text=message)
    return Account.recover_message(signable, signature=signature).lower()


def verify_wallet_signature(wallet: str, message: str, signature: str) -> bool:
    """
    Returns:
      True  -> `wallet` signed exactly `message`
      False -> signature valid in shape but not from `wallet` / not recoverable

    Raises:
      MalformedSignature -> structurally invalid signature
    """
    sig = decode_signature(signature)

    try:
        recovered = recover_signer(message, sig)
    except Exception as e:
        # bad v value, s out of range, point not on curve: same as "not signed by wallet"
        log.info("signature recovery failed: %s", str(e)[:200])
        return False

    return recovered == str(wallet).strip().lower()
