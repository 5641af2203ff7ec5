"""
moltens/moltbook.py

Moltbook proof oracle.

Fetches public Moltbook profile pages and checks that the reference token
appears on the profile. Moltbook has no API for this, so the profile location
is guessed from an ordered list of strategies (URL templates by default).

Rules:
  - strategies are tried in priority order
  - the first successful fetch (2xx) is definitive, whether or not the token
    is on the page
  - non-2xx answers and transport errors (timeouts included) fall through to
    the next strategy
  - nothing here raises: every failure becomes a ProofResult with found=False

The oracle is untrusted and best-effort; the page is only searched for the
token string, never parsed or executed. Only the first MAX_PROFILE_BYTES of
a page are read, so a token posted further down is not seen.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import httpx


log = logging.getLogger(__name__)

# Profile pages are read up to this many bytes; the rest is left unread.
MAX_PROFILE_BYTES = 2 * 1024 * 1024


class ProofError(str, Enum):
    TOKEN_NOT_PRESENT = "token_not_present"
    PROFILE_NOT_LOCATABLE = "profile_not_locatable"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ProofResult:
    found: bool
    location_url: Optional[str] = None
    error: Optional[ProofError] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class ProbeOutcome:
    url: str
    status_code: int
    content: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ProfileStrategy(ABC):
    """One way of locating a user's public profile."""

    @abstractmethod
    def probe(
        self,
        client: httpx.Client,
        label: str,
        *,
        timeout: float,
        method: str = "GET",
    ) -> ProbeOutcome:
        """
        Fetch the candidate profile. Transport failures propagate as
        httpx.HTTPError; HTTP error statuses are returned in the outcome.
        """


class UrlTemplateStrategy(ProfileStrategy):
    def __init__(self, template: str, max_bytes: int = MAX_PROFILE_BYTES):
        if "{label}" not in template:
            raise ValueError(f"profile URL template must contain {{label}}: {template}")
        self.template = template
        self.max_bytes = max_bytes

    def url_for(self, label: str) -> str:
        return self.template.replace("{label}", label)

    def probe(self, client, label, *, timeout, method="GET"):
        url = self.url_for(label)
        if method != "GET":
            resp = client.request(method, url, timeout=timeout)
            return ProbeOutcome(url=url, status_code=resp.status_code)

        with client.stream("GET", url, timeout=timeout) as resp:
            if not resp.is_success:
                return ProbeOutcome(url=url, status_code=resp.status_code)
            body = bytearray()
            for chunk in resp.iter_bytes():
                body.extend(chunk)
                if len(body) > self.max_bytes:
                    log.warning("profile page %s exceeds %d bytes, truncating", url, self.max_bytes)
                    del body[self.max_bytes:]
                    break
            content = bytes(body).decode(resp.encoding or "utf-8", errors="replace")
        return ProbeOutcome(url=url, status_code=resp.status_code, content=content)

    def __repr__(self):
        return f"UrlTemplateStrategy({self.template!r})"


class MoltbookOracle:
    def __init__(
        self,
        strategies: Sequence[ProfileStrategy],
        *,
        fetch_timeout: float = 10.0,
        probe_timeout: float = 5.0,
        user_agent: str = "MoltENS-Verifier/1.0 (https://moltbook.domains)",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not strategies:
            raise ValueError("at least one profile strategy is required")
        self.strategies: List[ProfileStrategy] = list(strategies)
        self.fetch_timeout = fetch_timeout
        self.probe_timeout = probe_timeout
        self.user_agent = user_agent
        # tests inject httpx.MockTransport here
        self.transport = transport

    @classmethod
    def from_templates(cls, templates: Sequence[str], **kwargs) -> "MoltbookOracle":
        return cls([UrlTemplateStrategy(t) for t in templates], **kwargs)

    def _client(self, accept: str) -> httpx.Client:
        return httpx.Client(
            headers={"User-Agent": self.user_agent, "Accept": accept},
            follow_redirects=True,
            transport=self.transport,
        )

    def check_proof(self, label: str, reference_token: str) -> ProofResult:
        label = label.strip().lower()
        answered = 0

        with self._client("text/html,application/xhtml+xml") as client:
            for strategy in self.strategies:
                try:
                    outcome = strategy.probe(client, label, timeout=self.fetch_timeout)
                except httpx.TimeoutException:
                    log.info("moltbook probe timed out: %r label=%s", strategy, label)
                    continue
                except httpx.HTTPError as e:
                    log.info("moltbook probe failed: %r label=%s err=%s", strategy, label, str(e)[:200])
                    continue

                answered += 1
                if not outcome.ok:
                    log.info("moltbook %s returned %s", outcome.url, outcome.status_code)
                    continue

                if reference_token in (outcome.content or ""):
                    log.info("reference %s found at %s", reference_token, outcome.url)
                    return ProofResult(found=True, location_url=outcome.url)

                log.info("profile found at %s but reference %s not present", outcome.url, reference_token)
                return ProofResult(
                    found=False,
                    location_url=outcome.url,
                    error=ProofError.TOKEN_NOT_PRESENT,
                    detail=(
                        f"Reference ID not found in {label}'s Moltbook posts. "
                        "Make sure you posted the exact text with the reference ID."
                    ),
                )

        if answered == 0:
            return ProofResult(
                found=False,
                error=ProofError.UNAVAILABLE,
                detail="Moltbook could not be reached. Try again in a moment.",
            )

        return ProofResult(
            found=False,
            error=ProofError.PROFILE_NOT_LOCATABLE,
            detail=(
                f'Could not find Moltbook profile for "{label}". '
                "Make sure the username exists and your profile is public."
            ),
        )

    def profile_exists(self, label: str) -> bool:
        label = label.strip().lower()
        with self._client("*/*") as client:
            for strategy in self.strategies:
                try:
                    outcome = strategy.probe(client, label, timeout=self.probe_timeout, method="HEAD")
                except httpx.HTTPError:
                    continue
                if outcome.ok:
                    return True
        return False
