import re

from .errors import EmptyName, InvalidFormat, InvalidWallet, TooLong


MAX_LABEL_LENGTH = 63

# Same rules the registrar contract applies to labels.
LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9_-]*[a-z0-9])?$")
WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_label(raw: str) -> str:
    """
    Canonical form of a Moltbook username / ENS label.

    Lowercases and trims, then validates length and character set.
    Raises EmptyName, TooLong or InvalidFormat.
    """
    label = str(raw or "").strip().lower()

    if not label:
        raise EmptyName()
    if len(label) > MAX_LABEL_LENGTH:
        raise TooLong()
    if not LABEL_RE.match(label):
        raise InvalidFormat()
    return label


def normalize_wallet(raw: str) -> str:
    wallet = str(raw or "").strip()
    if not WALLET_RE.match(wallet):
        raise InvalidWallet()
    return wallet.lower()


def full_label(label: str, parent_domain: str) -> str:
    return f"{label}.{parent_domain}"


# -----------------------------------------------------------------------------
# Exact message strings (must match wallet tooling byte-for-byte)
# -----------------------------------------------------------------------------
def claim_message(label: str, parent_domain: str, wallet: str) -> str:
    """Message the wallet signs to prove it is claiming `label`."""
    return f"Claim {full_label(label, parent_domain)}: {wallet.lower()}"


def publish_text(label: str, parent_domain: str, protocol_tag: str, reference_token: str) -> str:
    """Text the user posts on Moltbook."""
    return f"Claiming {full_label(label, parent_domain)} {protocol_tag} REF:{reference_token}"
