"""Resilient page retrieval restricted to the target origin.

Every call to :meth:`Fetcher.fetch` returns a :class:`FetchResult`, success
or failure.  The only exception that escapes is :class:`DomainViolation`,
raised before any network traffic when the URL is off-origin.

Retry policy:
- network errors (timeouts, refused/reset connections, DNS), HTTP 5xx and
  HTTP 429 are retried up to ``retries`` attempts in total;
- any other 4xx is terminal after a single attempt;
- a URL httpx cannot build a request for (``InvalidURL``) is terminal too;
- a 403/429/reset on the direct transport hands over to the unlocker proxy
  (when configured) without sleeping.

Backoff between attempts on the same transport is
``min(base * 2**(attempt-1) + uniform(0, base), max_delay)``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import time
from typing import Any, Iterable, Optional, Sequence
from urllib.parse import urlsplit

import httpx

from brokercrawl.config import Settings, settings
from brokercrawl.errors import DomainViolation
from brokercrawl.scraper.models import BatchFetchResult, FetchResult
from brokercrawl.scraper.transports import (
    EMPTY_RESPONSE,
    REQUEST_ERRORS,
    AttemptFailure,
    Transport,
    build_default_chain,
    classify_exception,
    classify_status,
    select_transport,
)

logger = logging.getLogger(__name__)


def sha256_hex(text: str) -> str:
    """Hex SHA-256 of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_same_origin(url: str, origin: str) -> bool:
    """True when *url* shares scheme and host with *origin*."""
    try:
        target = urlsplit(url)
        allowed = urlsplit(origin)
    except ValueError:
        return False
    return (
        target.scheme.lower() == allowed.scheme.lower()
        and target.netloc.lower() == allowed.netloc.lower()
    )


class Fetcher:
    """Fetch pages through an ordered chain of transports.

    The fetcher owns an ``httpx.AsyncClient`` (connection pool) unless one is
    injected.  It keeps no per-URL state between calls, so a single instance
    is safe to share between concurrent workers.

    Args:
        transports: Ordered transport chain.  Defaults to direct plus the
            unlocker proxy when its credentials are configured.
        origin: Allowed origin, e.g. ``https://brokerchooser.com``.
        timeout: Per-request timeout in seconds.
        retries: Maximum number of attempts per fetch (>= 1).
        base_delay: Backoff base in seconds.
        max_delay: Backoff ceiling in seconds.
        client: Optional pre-built ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        transports: Optional[Sequence[Transport]] = None,
        *,
        origin: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        source: Optional[Settings] = None,
    ) -> None:
        source = source or settings
        self._chain: list[Transport] = list(transports or build_default_chain(source))
        if not self._chain:
            raise ValueError("Fetcher needs at least one transport")
        self.origin = (origin or source.target_origin).rstrip("/")
        self.timeout = timeout if timeout is not None else source.timeout_ms / 1000.0
        self.retries = max(1, retries if retries is not None else source.retries)
        self.base_delay = base_delay if base_delay is not None else source.retry_base_delay
        self.max_delay = max_delay if max_delay is not None else source.retry_max_delay
        self._client = client
        self._owns_client = client is None

        if len(self._chain) == 1:
            logger.warning(
                "[fetch] Unlocker proxy not configured; running with %s transport only",
                self._chain[0].name,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def transport_names(self) -> list[str]:
        return [t.name for t in self._chain]

    def has_transport(self, name: str) -> bool:
        return name in self.transport_names

    def describe(self) -> dict[str, Any]:
        """Effective configuration, without credentials."""
        return {
            "origin": self.origin,
            "transports": self.transport_names,
            "timeout": self.timeout,
            "retries": self.retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
        }

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retrying after failed attempt number *attempt*."""
        delay = self.base_delay * (2 ** (attempt - 1)) + random.uniform(0, self.base_delay)
        return min(delay, self.max_delay)

    def check_domain(self, url: str) -> None:
        """Raise :class:`DomainViolation` unless *url* is on the allowed origin."""
        if not is_same_origin(url, self.origin):
            raise DomainViolation(url, self.origin)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _transport_named(self, name: str) -> Transport:
        for transport in self._chain:
            if transport.name == name:
                return transport
        raise ValueError(f"No transport named {name!r} (have {self.transport_names})")

    async def fetch(self, url: str, start_with: Optional[str] = None) -> FetchResult:
        """Fetch *url*, retrying per the module policy.

        Args:
            url: Absolute URL on the allowed origin.
            start_with: Name of the transport to use for the first attempt
                (``"direct"`` or ``"web_unlocker"``).  Defaults to the head of
                the chain.

        Returns:
            A :class:`FetchResult`; never raises for transport failures.

        Raises:
            DomainViolation: *url* is outside the allowed origin.
            ValueError: *start_with* names an unconfigured transport.
        """
        self.check_domain(url)
        transport = self._transport_named(start_with) if start_with else self._chain[0]

        started = time.monotonic()
        failure: Optional[AttemptFailure] = None
        attempt = 0

        while attempt < self.retries:
            attempt += 1
            try:
                response = await transport.send(self.client, url)
            except REQUEST_ERRORS as exc:
                failure = classify_exception(exc)
            else:
                if response.is_success:
                    body = response.text
                    if body.strip():
                        result = FetchResult(
                            url=url,
                            success=True,
                            status=response.status_code,
                            attempts=attempt,
                            duration=time.monotonic() - started,
                            method=transport.name,
                            content=body,
                            content_hash=sha256_hex(body),
                        )
                        logger.debug(
                            "[fetch] %s -> %d (%d chars, attempt %d, %s)",
                            url, result.status, result.content_length, attempt, transport.name,
                        )
                        return result
                    failure = EMPTY_RESPONSE
                else:
                    failure = classify_status(response.status_code)

            logger.warning(
                "[fetch] Attempt %d/%d for %s via %s failed: %s",
                attempt, self.retries, url, transport.name, failure.message,
            )
            if attempt >= self.retries:
                break

            next_transport = select_transport(failure, transport, self._chain)
            if next_transport is None:
                break
            if next_transport is transport:
                await asyncio.sleep(self.backoff(attempt))
            else:
                logger.info(
                    "[fetch] Switching %s from %s to %s after %s",
                    url, transport.name, next_transport.name, failure.code,
                )
            transport = next_transport

        assert failure is not None
        logger.error("[fetch] Giving up on %s after %d attempt(s): %s", url, attempt, failure.message)
        return FetchResult(
            url=url,
            success=False,
            status=failure.status,
            attempts=attempt,
            duration=time.monotonic() - started,
            method=transport.name,
            error=failure.message,
            error_code=failure.code,
        )

    async def fetch_batch(self, urls: Iterable[str], concurrency: int = 6) -> BatchFetchResult:
        """Fetch many URLs with at most *concurrency* requests in flight.

        Off-origin URLs are reported as failed results rather than raising.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))
        started = time.monotonic()

        async def _one(target: str) -> FetchResult:
            async with semaphore:
                try:
                    return await self.fetch(target)
                except DomainViolation as exc:
                    return FetchResult(
                        url=target,
                        success=False,
                        status=None,
                        attempts=0,
                        duration=0.0,
                        method="none",
                        error=str(exc),
                        error_code="domain_violation",
                    )

        results = await asyncio.gather(*(_one(u) for u in urls))
        batch = BatchFetchResult(results=list(results), duration=time.monotonic() - started)
        logger.info(
            "[fetch] Batch complete: %d/%d succeeded (%.1f%%) in %.1fs",
            len(batch.successful), len(batch.results), batch.success_rate * 100, batch.duration,
        )
        return batch
