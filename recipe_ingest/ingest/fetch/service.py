from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable
from urllib.parse import urljoin

import httpx
from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.errors import DnsResolutionError, SsrfBlockedError
from recipe_ingest.ingest.fetch.circuit_breaker import CircuitBreaker, domain_of
from recipe_ingest.ingest.fetch.robots import RobotsPolicy
from recipe_ingest.ingest.fetch.ssrf import Resolver, resolve_and_validate, validate_url
from recipe_ingest.services.cancellation import cancellable_sleep, run_cancellable

ACCEPT_HEADER = "text/html,application/xhtml+xml,*/*;q=0.8"
ROBOTS_MAX_BYTES = 512 * 1024

Sleeper = Callable[[float, "asyncio.Event | None"], Awaitable[None]]


@dataclass(slots=True)
class FetchResult:
    success: bool
    content: str | None = None
    status_code: int | None = None
    content_type: str | None = None
    content_length: int = 0
    final_url: str | None = None
    error: str | None = None
    error_code: str | None = None
    retrieved_at: datetime | None = None
    was_blocked_by_ssrf: bool = False
    was_blocked_by_circuit_breaker: bool = False
    retry_count: int = 0

    @classmethod
    def failed(cls, error: str, error_code: str, **kwargs) -> "FetchResult":
        return cls(success=False, error=error, error_code=error_code, **kwargs)


class _ContentTooLarge(Exception):
    pass


def _is_retryable(result: FetchResult) -> bool:
    return result.status_code is not None and result.status_code >= 500


class FetchService:
    """SSRF-safe HTTP fetcher with per-domain circuit breaking, bounded retries and a size cap."""

    def __init__(
        self,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        resolver: Resolver | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        robots: RobotsPolicy | None = None,
        sleep: Sleeper | None = None,
        user_agent: str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        max_size_bytes: int | None = None,
        max_redirects: int | None = None,
        respect_robots_txt: bool | None = None,
    ):
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            failure_window_seconds=settings.circuit_breaker_failure_window_minutes * 60,
            block_duration_seconds=settings.circuit_breaker_block_duration_minutes * 60,
        )
        self._resolver = resolver
        self._transport = transport
        self._sleep = sleep or cancellable_sleep
        self.user_agent = user_agent or settings.user_agent
        self.timeout_seconds = timeout_seconds or settings.fetch_timeout_seconds
        self.max_retries = max(settings.max_fetch_retries if max_retries is None else max_retries, 0)
        self.max_size_bytes = max_size_bytes or settings.max_fetch_size_bytes
        self.max_redirects = settings.max_redirects if max_redirects is None else max_redirects
        self.respect_robots_txt = (
            settings.respect_robots_txt if respect_robots_txt is None else respect_robots_txt
        )
        self.robots = robots or RobotsPolicy(self.user_agent)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout_seconds,
            follow_redirects=False,
        )

    async def fetch(self, url: str, *, cancel: asyncio.Event | None = None) -> FetchResult:
        invalid = validate_url(url)
        if invalid is not None:
            code, message = invalid
            logger.info(f"Refusing to fetch {url!r}: {code}")
            return FetchResult.failed(message, code)

        url = url.strip()
        domain = domain_of(url)
        half_open = self.circuit_breaker.get_state(domain) != "closed"
        if not self.circuit_breaker.is_allowed(domain):
            logger.warning(f"Circuit breaker open for {domain}, skipping {url}")
            return FetchResult.failed(
                f"Circuit breaker is open for domain {domain}",
                "CIRCUIT_BREAKER_OPEN",
                was_blocked_by_circuit_breaker=True,
            )

        try:
            return await self._fetch_allowed(url, domain, cancel)
        finally:
            if half_open:
                self.circuit_breaker.release_trial(domain)

    async def _fetch_allowed(self, url: str, domain: str, cancel: asyncio.Event | None) -> FetchResult:
        pins: dict[str, str] = {}
        try:
            await self._pin(url, pins)
        except SsrfBlockedError as exc:
            logger.warning(f"SSRF guard blocked {url}: {exc.message}")
            self.circuit_breaker.record_failure(domain)
            return FetchResult.failed(exc.message, exc.code, was_blocked_by_ssrf=True)
        except DnsResolutionError as exc:
            logger.warning(f"DNS resolution failed for {url}: {exc.reason}")
            self.circuit_breaker.record_failure(domain)
            return FetchResult.failed(exc.message, exc.code)

        async with self._client() as client:
            if self.respect_robots_txt:
                allowed = await self.robots.is_allowed(
                    url,
                    lambda robots_url: self._fetch_robots_text(client, robots_url, pins, cancel),
                )
                if not allowed:
                    logger.info(f"Request blocked by robots.txt for URL: {url}")
                    return FetchResult.failed("Blocked by robots.txt", "ROBOTS_TXT_BLOCKED")

            return await self._fetch_with_retry(client, url, domain, pins, cancel)

    async def _pin(self, url: str, pins: dict[str, str]) -> httpx.URL:
        parsed = httpx.URL(url)
        host = parsed.host
        if host not in pins:
            port = parsed.port or (443 if parsed.scheme == "https" else 80)
            addresses = await resolve_and_validate(host, port, self._resolver)
            pins[host] = addresses[0]
        return parsed

    async def _build_request(
        self,
        client: httpx.AsyncClient,
        url: str,
        pins: dict[str, str],
    ) -> httpx.Request:
        parsed = await self._pin(url, pins)
        pinned_url = parsed.copy_with(host=pins[parsed.host])
        headers = {
            "User-Agent": self.user_agent,
            "Accept": ACCEPT_HEADER,
            "Host": parsed.netloc.decode("ascii"),
        }
        extensions = {"sni_hostname": parsed.host} if parsed.scheme == "https" else {}
        return client.build_request("GET", pinned_url, headers=headers, extensions=extensions)

    async def _fetch_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        domain: str,
        pins: dict[str, str],
        cancel: asyncio.Event | None,
    ) -> FetchResult:
        retry_count = 0
        last_error = ""
        last_result: FetchResult | None = None

        while retry_count <= self.max_retries:
            if retry_count > 0:
                delay = float(2 ** (retry_count - 1))
                logger.info(f"Retry {retry_count}/{self.max_retries} for {url} after {delay}s delay")
                await self._sleep(delay, cancel)

            try:
                result = await self._perform_fetch(client, url, pins, cancel)
            except (SsrfBlockedError, DnsResolutionError) as exc:
                self.circuit_breaker.record_failure(domain)
                return FetchResult.failed(
                    exc.message,
                    exc.code,
                    was_blocked_by_ssrf=isinstance(exc, SsrfBlockedError),
                    retry_count=retry_count,
                )
            except httpx.TimeoutException as exc:
                logger.warning(f"Request timeout for {url}: {exc}")
                self.circuit_breaker.record_failure(domain)
                last_error = f"Request timed out: {exc}"
                last_result = None
            except httpx.TransportError as exc:
                logger.warning(f"HTTP error fetching {url}: {exc}")
                self.circuit_breaker.record_failure(domain)
                last_error = f"Transport error: {exc}"
                last_result = None
            else:
                result.retry_count = retry_count
                if result.success:
                    self.circuit_breaker.record_success(domain)
                    return result
                self.circuit_breaker.record_failure(domain)
                if not _is_retryable(result):
                    return result
                last_error = result.error or "server error"
                last_result = result

            retry_count += 1

        if last_result is not None:
            last_result.retry_count = retry_count - 1
            return last_result
        return FetchResult.failed(
            f"Failed after {self.max_retries} retries: {last_error}",
            "MAX_RETRIES_EXCEEDED",
            retry_count=retry_count - 1,
        )

    async def _perform_fetch(
        self,
        client: httpx.AsyncClient,
        url: str,
        pins: dict[str, str],
        cancel: asyncio.Event | None,
    ) -> FetchResult:
        current_url = url
        for _hop in range(self.max_redirects + 1):
            request = await self._build_request(client, current_url, pins)
            response = await run_cancellable(client.send(request, stream=True), cancel)
            try:
                if response.is_redirect:
                    location = response.headers.get("location", "")
                    next_url = urljoin(current_url, location)
                    invalid = validate_url(next_url)
                    if invalid is not None:
                        code, message = invalid
                        return FetchResult.failed(
                            f"Redirect to disallowed URL: {message}",
                            code,
                            status_code=response.status_code,
                        )
                    logger.debug(f"Following redirect {current_url} -> {next_url}")
                    current_url = next_url
                    continue

                status = response.status_code
                content_type = response.headers.get("content-type")
                if status >= 400:
                    return FetchResult.failed(
                        f"HTTP {status} fetching {current_url}",
                        f"HTTP_{status}",
                        status_code=status,
                        content_type=content_type,
                        final_url=current_url,
                    )

                try:
                    body = await self._read_capped(response, cancel)
                except _ContentTooLarge as exc:
                    logger.warning(f"Aborted {current_url}: {exc}")
                    return FetchResult.failed(
                        str(exc),
                        "CONTENT_TOO_LARGE",
                        status_code=status,
                        content_type=content_type,
                        final_url=current_url,
                    )

                encoding = response.charset_encoding or "utf-8"
                try:
                    text = body.decode(encoding, errors="replace")
                except LookupError:
                    text = body.decode("utf-8", errors="replace")

                logger.info(f"Fetched {current_url}: {status}, {len(body)} bytes")
                return FetchResult(
                    success=True,
                    content=text,
                    status_code=status,
                    content_type=content_type,
                    content_length=len(body),
                    final_url=current_url,
                    retrieved_at=datetime.now(timezone.utc),
                )
            finally:
                await response.aclose()

        return FetchResult.failed(
            f"Exceeded {self.max_redirects} redirects",
            "TOO_MANY_REDIRECTS",
            final_url=current_url,
        )

    async def _read_capped(
        self,
        response: httpx.Response,
        cancel: asyncio.Event | None,
        limit: int | None = None,
    ) -> bytes:
        cap = limit or self.max_size_bytes
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) >= cap:
            raise _ContentTooLarge(f"Content-Length {declared} exceeds limit of {cap} bytes")

        body = bytearray()
        chunks = response.aiter_bytes()
        while True:
            try:
                chunk = await run_cancellable(chunks.__anext__(), cancel)
            except StopAsyncIteration:
                break
            body.extend(chunk)
            if len(body) >= cap:
                raise _ContentTooLarge(f"Response body reached limit of {cap} bytes")
        return bytes(body)

    async def _fetch_robots_text(
        self,
        client: httpx.AsyncClient,
        robots_url: str,
        pins: dict[str, str],
        cancel: asyncio.Event | None,
    ) -> str | None:
        request = await self._build_request(client, robots_url, pins)
        response = await run_cancellable(client.send(request, stream=True), cancel)
        try:
            if response.status_code != 200:
                return None
            body = await self._read_capped(response, cancel, limit=ROBOTS_MAX_BYTES)
        except _ContentTooLarge:
            return None
        finally:
            await response.aclose()
        return body.decode("utf-8", errors="replace")
