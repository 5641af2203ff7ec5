import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from moltens.config import Settings, SignerConfig
from moltens.moltbook import ProofResult
from moltens.names import claim_message
from moltens.service import ClaimService
from moltens.storage import InMemoryStore
from moltens.vouchers import VoucherIssuer, to_hex


USER_KEY = "0x" + "11" * 32
SIGNER_KEY = "0x" + "22" * 32
CONTRACT = "0x" + "ab" * 20
CHAIN_ID = 11155111
START = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeOracle:
    """Stands in for MoltbookOracle; answers are queued per test."""

    def __init__(self, result: ProofResult = None):
        self.result = result or ProofResult(found=True, location_url="https://moltbook.com/u/emberclawd")
        self.calls = []
        self.exists = True

    def check_proof(self, label, reference_token):
        self.calls.append((label, reference_token))
        return self.result

    def profile_exists(self, label):
        return self.exists


def sign_text(message: str, key: str = USER_KEY) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=key)
    return to_hex(signed.signature)


@pytest.fixture
def user():
    return Account.from_key(USER_KEY)


@pytest.fixture
def wallet(user):
    # mixed-case checksum form, as wallets usually hand it out
    return user.address


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        SIGNER_PRIVATE_KEY=SIGNER_KEY,
        CONTRACT_ADDRESS=CONTRACT,
        CHAIN_ID=CHAIN_ID,
        AUDIT_ENABLED=False,
        RPC_URL="",
    )


@pytest.fixture
def store(clock):
    return InMemoryStore(ttl_seconds=1800, prefix="MOLT", clock=clock)


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def issuer(settings, clock):
    return VoucherIssuer(SignerConfig.from_settings(settings), clock=clock)


@pytest.fixture
def service(settings, store, oracle, issuer, clock):
    return ClaimService(settings, store, oracle, issuer, clock=clock)


@pytest.fixture
def claim_signature(wallet):
    def _sign(label="emberclawd", parent="moltbook.eth", key=USER_KEY):
        return sign_text(claim_message(label, parent, wallet.lower()), key)

    return _sign


