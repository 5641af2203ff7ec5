# moltens/storage.py
#
# Pending verification requests: reference token -> (label, wallet) claim.
#
# The in-memory store is single-process. The orchestrator only talks to the
# PendingRequestStore interface, so a shared backend (Redis etc.) can replace
# InMemoryStore without changing service.py.
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional


# Avoid visually ambiguous characters (0/O, 1/I)
REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERENCE_LENGTH = 8
MAX_MINT_ATTEMPTS = 8


def generate_reference_token(prefix: str = "MOLT") -> str:
    body = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))
    return f"{prefix}-{body}"


@dataclass(frozen=True)
class PendingRequest:
    reference_token: str
    label: str
    wallet: str
    created_at: int
    expires_at: int

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


class PendingRequestStore(ABC):
    @abstractmethod
    def create(self, label: str, wallet: str) -> PendingRequest:
        """Return the live request for (label, wallet), minting one if needed."""

    @abstractmethod
    def find_by_identity_and_wallet(self, label: str, wallet: str) -> Optional[PendingRequest]:
        ...

    @abstractmethod
    def find_by_token(self, reference_token: str) -> Optional[PendingRequest]:
        ...

    @abstractmethod
    def delete(self, reference_token: str) -> bool:
        """Remove a request. Returns True only for the call that removed it."""


class InMemoryStore(PendingRequestStore):
    def __init__(
        self,
        ttl_seconds: int = 1800,
        prefix: str = "MOLT",
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self.clock = clock
        self.requests: Dict[str, PendingRequest] = {}
        # FastAPI runs sync endpoints in a threadpool
        self._lock = threading.RLock()

    def _sweep_unlocked(self, now: float) -> int:
        dead = [k for k, r in self.requests.items() if r.is_expired(now)]
        for k in dead:
            self.requests.pop(k, None)
        return len(dead)

    def _find_pair_unlocked(self, label: str, wallet: str, now: float) -> Optional[PendingRequest]:
        label = label.lower()
        wallet = wallet.lower()
        for token, req in list(self.requests.items()):
            if req.label != label or req.wallet != wallet:
                continue
            if req.is_expired(now):
                self.requests.pop(token, None)
                continue
            return req
        return None

    def create(self, label: str, wallet: str) -> PendingRequest:
        with self._lock:
            now = self.clock()
            self._sweep_unlocked(now)

            existing = self._find_pair_unlocked(label, wallet, now)
            if existing is not None:
                return existing

            for _ in range(MAX_MINT_ATTEMPTS):
                token = generate_reference_token(self.prefix)
                if token not in self.requests:
                    break
            else:
                raise RuntimeError("could not mint a unique reference token")

            created_at = int(now)
            req = PendingRequest(
                reference_token=token,
                label=label.lower(),
                wallet=wallet.lower(),
                created_at=created_at,
                expires_at=created_at + self.ttl_seconds,
            )
            self.requests[token] = req
            return req

    def find_by_identity_and_wallet(self, label: str, wallet: str) -> Optional[PendingRequest]:
        with self._lock:
            return self._find_pair_unlocked(label, wallet, self.clock())

    def find_by_token(self, reference_token: str) -> Optional[PendingRequest]:
        with self._lock:
            req = self.requests.get(reference_token)
            if req is None:
                return None
            if req.is_expired(self.clock()):
                self.requests.pop(reference_token, None)
                return None
            return req

    def delete(self, reference_token: str) -> bool:
        with self._lock:
            return self.requests.pop(reference_token, None) is not None
