#!/usr/bin/env python3
"""
Direct vs. proxied HTTP selection for feed fetches.

Each feed carries a fetch-mode preference (``auto``, ``direct`` or ``proxy``) and two
success counters. In ``auto`` mode the mode with more historical successes wins
(ties and empty history favor ``direct``). A failed attempt is retried once through
the other mode before the fetch is reported as failed; the proxy endpoint is
re-resolved before every fetch so configuration changes apply without a restart.
"""

from asyncio import TimeoutError
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession, ClientTimeout, ClientError

from config import config, get_logger, get_setting
from errors import FetchError
from telemetry import trace_span
from utils import redact_proxy_url

logger = get_logger("fetch_mode")

DIRECT = "direct"
PROXY = "proxy"
AUTO = "auto"

HTTP_OK = 200

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"


class FetchModeSelector:
    """Fetches URLs for feeds, choosing and adapting the fetch mode per feed."""

    def __init__(self, db, session: Optional[ClientSession] = None) -> None:
        self.db = db
        self.session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        if self.session is None:
            self.session = ClientSession(headers={"User-Agent": config.USER_AGENT, "Accept": FEED_ACCEPT})
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    @staticmethod
    def determine_mode(feed: Dict[str, Any]) -> str:
        """Pick the mode for the next attempt from the feed's preference and history."""
        preference = feed.get("proxy_mode") or AUTO
        if preference in (DIRECT, PROXY):
            return preference

        direct_count = int(feed.get("direct_success_count") or 0)
        proxy_count = int(feed.get("proxy_success_count") or 0)
        if direct_count == 0 and proxy_count == 0:
            return DIRECT
        return DIRECT if direct_count >= proxy_count else PROXY

    @trace_span(
        "fetch_mode.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, feed=None: {
            "http.url": url,
            "feed.id": int(feed["id"]) if feed and feed.get("id") else 0,
        },
    )
    async def fetch(self, url: str, feed: Optional[Dict[str, Any]] = None) -> bytes:
        """Fetch ``url``, for ``feed`` if given, falling back to the other mode once.

        Without a feed, direct is tried first and proxy second, and no counters move.

        Raises:
            FetchError: every permitted attempt failed.
        """
        proxy_url = await get_setting(self.db, "proxy_url")

        if feed is None:
            try:
                return await self._attempt(url, DIRECT, proxy_url)
            except FetchError as direct_error:
                if not proxy_url:
                    raise FetchError(f"Direct connection failed and no proxy configured: {direct_error}") from direct_error
                logger.warning(f"Direct fetch of {url} failed ({direct_error}); retrying via proxy")
                try:
                    return await self._attempt(url, PROXY, proxy_url)
                except FetchError as proxy_error:
                    raise FetchError(
                        f"Both direct and proxy connections failed for {url}: "
                        f"direct: {direct_error}; proxy: {proxy_error}"
                    ) from proxy_error

        mode = self.determine_mode(feed)
        errors: List[str] = []
        try:
            content = await self._attempt(url, mode, proxy_url)
            await self._record_success(feed, mode)
            return content
        except FetchError as first_error:
            errors.append(f"{mode}: {first_error}")
            alternative = PROXY if mode == DIRECT else DIRECT
            if alternative == PROXY and not proxy_url:
                raise
            logger.warning(
                f"{mode.capitalize()} fetch of {feed.get('name') or url} failed ({first_error}); trying {alternative}"
            )

        try:
            content = await self._attempt(url, alternative, proxy_url)
        except FetchError as second_error:
            errors.append(f"{alternative}: {second_error}")
            raise FetchError(
                f"Both direct and proxy connections failed for {url}: {'; '.join(errors)}"
            ) from second_error
        await self._record_success(feed, alternative)
        return content

    async def _record_success(self, feed: Dict[str, Any], mode: str) -> None:
        if feed.get("id") is None:
            return
        await self.db.execute('update_feed_proxy_stats', feed_id=feed["id"], mode=mode, success=True)

    async def _attempt(self, url: str, mode: str, proxy_url: Optional[str]) -> bytes:
        if mode == PROXY:
            if not proxy_url:
                raise FetchError("Proxy mode requested but no proxy is configured")
            logger.debug(f"Fetching {url} via proxy {redact_proxy_url(proxy_url)}")
            return await self._do_fetch(url, proxy_url)
        return await self._do_fetch(url, None)

    async def _do_fetch(self, url: str, proxy_url: Optional[str]) -> bytes:
        """One HTTP GET, through ``proxy_url`` when given. Non-200 responses are errors."""
        if self.session is None:
            await self.initialize()

        timeout_seconds = self._compute_timeout(proxy_url)
        request_kwargs: Dict[str, Any] = {
            "timeout": ClientTimeout(total=timeout_seconds),
            "max_redirects": config.MAX_REDIRECTS,
        }
        if proxy_url:
            request_kwargs["proxy"] = proxy_url

        try:
            async with self.session.get(url, **request_kwargs) as response:
                if response.status != HTTP_OK:
                    raise FetchError(f"HTTP {response.status}: {response.reason or ''}".strip())
                return await response.read()
        except TimeoutError as e:
            raise FetchError(f"Timed out after {timeout_seconds}s") from e
        except ClientError as e:
            raise FetchError(self._format_client_error(e)) from e

    def _compute_timeout(self, proxy_url: Optional[str]) -> int:
        """Return the HTTP timeout, doubled when routing through a proxy."""
        base_timeout = max(int(config.HTTP_TIMEOUT), 1)
        return base_timeout * 2 if proxy_url else base_timeout

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
