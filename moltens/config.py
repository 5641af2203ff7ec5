import re
from dataclasses import dataclass
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


ZERO_ADDRESS = "0x" + "00" * 20

DEFAULT_PROFILE_URL_TEMPLATES = ",".join(
    [
        "https://moltbook.com/bots/{label}",
        "https://moltbook.com/agents/{label}",
        "https://moltbook.com/@{label}",
        "https://moltbook.com/u/{label}",
    ]
)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class Settings(BaseSettings):
    # naming
    PARENT_DOMAIN: str = "moltbook.eth"
    PROTOCOL_TAG: str = "#MoltENS"
    REFERENCE_PREFIX: str = "MOLT"

    # lifetimes (seconds)
    PENDING_TTL_SECONDS: int = 1800
    VOUCHER_TTL_SECONDS: int = 3600

    # contract binding
    CONTRACT_ADDRESS: str = ZERO_ADDRESS
    CHAIN_ID: int = 1
    SIGNER_PRIVATE_KEY: Optional[str] = None
    ALLOW_UNSIGNED_VOUCHERS: bool = False
    REGISTRATION_FEE_ETH: str = "0.005"

    # moltbook profile lookup (comma separated, tried in order)
    PROFILE_URL_TEMPLATES: str = DEFAULT_PROFILE_URL_TEMPLATES
    PROFILE_FETCH_TIMEOUT: float = 10.0
    PROFILE_PROBE_TIMEOUT: float = 5.0
    USER_AGENT: str = "MoltENS-Verifier/1.0 (https://moltbook.domains)"

    # optional JSON-RPC endpoint for isAvailable() lookups
    RPC_URL: Optional[str] = None
    RPC_TIMEOUT: float = 5.0

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("PARENT_DOMAIN")
    @classmethod
    def normalize_parent_domain(cls, v: str) -> str:
        v = (v or "").strip().strip(".").lower()
        if not v:
            raise ValueError("PARENT_DOMAIN cannot be empty")
        return v

    @field_validator("REFERENCE_PREFIX")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if not v or not v.isalnum():
            raise ValueError("REFERENCE_PREFIX must be a non-empty alphanumeric string")
        return v

    @field_validator("CONTRACT_ADDRESS")
    @classmethod
    def normalize_contract(cls, v: str) -> str:
        v = (v or "").strip()
        if not _ADDRESS_RE.match(v):
            raise ValueError("CONTRACT_ADDRESS must be 0x followed by 40 hex characters")
        return v.lower()

    @field_validator("SIGNER_PRIVATE_KEY")
    @classmethod
    def normalize_signer_key(cls, v: Optional[str]) -> Optional[str]:
        # empty string in .env means "not configured"
        v = (v or "").strip()
        if not v:
            return None
        if not v.startswith("0x"):
            v = "0x" + v
        if not _PRIVATE_KEY_RE.match(v):
            raise ValueError("SIGNER_PRIVATE_KEY must be 32 bytes of hex")
        return v.lower()

    @field_validator("RPC_URL")
    @classmethod
    def normalize_rpc_url(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    @property
    def profile_url_templates(self) -> List[str]:
        parts = [p.strip() for p in self.PROFILE_URL_TEMPLATES.split(",") if p.strip()]
        return parts or DEFAULT_PROFILE_URL_TEMPLATES.split(",")


@dataclass(frozen=True)
class SignerConfig:
    """
    Process-wide voucher signing material.

    Built once from Settings at startup and handed to the VoucherIssuer;
    nothing mutates it afterwards.
    """

    contract_address: str
    chain_id: int
    private_key: Optional[str] = None
    voucher_ttl_seconds: int = 3600

    @classmethod
    def from_settings(cls, s: Settings) -> "SignerConfig":
        return cls(
            contract_address=s.CONTRACT_ADDRESS,
            chain_id=s.CHAIN_ID,
            private_key=s.SIGNER_PRIVATE_KEY,
            voucher_ttl_seconds=s.VOUCHER_TTL_SECONDS,
        )


settings = Settings()
