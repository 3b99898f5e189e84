"""HTTP transport strategies used by the fetch layer.

Two strategies share one interface, ``send(client, url) -> httpx.Response``:

  1. DirectTransport: plain GET against the target site.
  2. UnlockerTransport: POST to the Web Unlocker proxy API, which fetches the
     page on our behalf and returns the raw body.

Which strategy serves the next attempt is decided by :func:`select_transport`,
a pure policy function over the previous attempt's failure.  Failures are
normalised into :class:`AttemptFailure` by :func:`classify_exception` and
:func:`classify_status`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from brokercrawl.config import Settings, settings

DIRECT = "direct"
WEB_UNLOCKER = "web_unlocker"

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
XML_ACCEPT = "application/xml, text/xml, */*"

# Statuses after which the direct transport hands over to the proxy.
_BLOCKED_STATUSES = frozenset({403, 429})

# Everything a transport may raise for a single request.  ``InvalidURL`` is not
# an ``HTTPError``; httpx raises it while building the request.
REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttemptFailure:
    """Normalised description of one failed attempt."""

    code: str
    message: str
    retryable: bool
    status: Optional[int] = None

    @property
    def blocked(self) -> bool:
        """True when the failure looks like bot protection on the direct path."""
        return self.status in _BLOCKED_STATUSES or self.code == "connection_reset"


def classify_status(status: int) -> AttemptFailure:
    """Map a non-2xx HTTP status to a failure.  5xx and 429 are retryable."""
    retryable = status >= 500 or status == 429
    return AttemptFailure(
        code=f"http_{status}",
        message=f"HTTP {status}",
        retryable=retryable,
        status=status,
    )


def classify_exception(exc: Exception) -> AttemptFailure:
    """Map an ``httpx`` exception to a failure.  Network errors are retryable."""
    if isinstance(exc, httpx.InvalidURL):
        return AttemptFailure("invalid_url", f"Invalid URL: {exc}", False)
    if isinstance(exc, httpx.TimeoutException):
        return AttemptFailure("timeout", f"Request timed out: {exc}", True)
    if isinstance(exc, httpx.ConnectError):
        # DNS failures and refused connections both surface here.
        return AttemptFailure("connect_error", f"Connection failed: {exc}", True)
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return AttemptFailure("connection_reset", f"Connection reset: {exc}", True)
    if isinstance(exc, httpx.TransportError):
        return AttemptFailure("transport_error", f"Transport error: {exc}", True)
    return AttemptFailure("protocol_error", str(exc) or type(exc).__name__, False)


EMPTY_RESPONSE = AttemptFailure("empty_response", "Empty response body", True)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class Transport(ABC):
    """Abstract base class for a single retrieval strategy."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier recorded as ``FetchResult.method``."""

    @abstractmethod
    async def send(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        """Perform one request for *url*.  ``httpx`` errors propagate to the caller."""


# ---------------------------------------------------------------------------
# Direct GET
# ---------------------------------------------------------------------------

class DirectTransport(Transport):
    """GET the page from the target site with a descriptive User-Agent."""

    def __init__(self, user_agent: Optional[str] = None, accept: str = HTML_ACCEPT) -> None:
        self._headers = {
            "User-Agent": user_agent or settings.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9",
        }

    @property
    def name(self) -> str:
        return DIRECT

    async def send(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        return await client.get(url, headers=self._headers, follow_redirects=True)


# ---------------------------------------------------------------------------
# Web Unlocker proxy
# ---------------------------------------------------------------------------

class UnlockerTransport(Transport):
    """POST ``{zone, url, format: "raw"}`` to the unlocker API.

    The proxy answers with the target page's raw body; its own HTTP status is
    treated exactly like the target's.
    """

    def __init__(
        self,
        api_key: str,
        zone: str,
        endpoint: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if not api_key or not zone:
            raise ValueError("UnlockerTransport requires both an API key and a zone")
        self._zone = zone
        self._endpoint = endpoint or settings.unlocker_endpoint
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "User-Agent": user_agent or settings.user_agent,
        }

    @property
    def name(self) -> str:
        return WEB_UNLOCKER

    async def send(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        payload = {"zone": self._zone, "url": url, "format": "raw"}
        return await client.post(self._endpoint, json=payload, headers=self._headers)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

def select_transport(
    failure: Optional[AttemptFailure],
    current: Transport,
    chain: Sequence[Transport],
) -> Optional[Transport]:
    """Pick the transport for the next attempt.

    Returns the next transport in *chain* after a blocked-looking failure
    (HTTP 403/429 or a connection reset) when one exists; otherwise *current*.
    Returns ``None`` when the failure is terminal and no fallback remains.
    """
    if failure is None:
        return current
    if failure.blocked:
        idx = chain.index(current) if current in chain else len(chain)
        if idx + 1 < len(chain):
            return chain[idx + 1]
    if failure.retryable:
        return current
    return None


def build_default_chain(source: Optional[Settings] = None) -> list[Transport]:
    """Direct first, then the unlocker proxy when credentials are configured."""
    source = source or settings
    chain: list[Transport] = [DirectTransport(user_agent=source.user_agent)]
    if source.unlocker_configured:
        chain.append(
            UnlockerTransport(
                api_key=source.unlocker_api_key,
                zone=source.unlocker_zone,
                endpoint=source.unlocker_endpoint,
                user_agent=source.user_agent,
            )
        )
    return chain
