from __future__ import annotations

import time
from typing import Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit
from urllib.robotparser import RobotFileParser

from loguru import logger

RobotsTextFetcher = Callable[[str], Awaitable[str | None]]


def robots_url_for(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, "/robots.txt", "", ""))


class RobotsPolicy:
    """Caches parsed robots.txt per origin.

    A missing or unreadable robots.txt allows the fetch.
    """

    def __init__(
        self,
        user_agent: str,
        *,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.user_agent = user_agent
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, RobotFileParser | None]] = {}

    async def _parser_for(self, url: str, fetch_text: RobotsTextFetcher) -> RobotFileParser | None:
        robots_url = robots_url_for(url)
        cached = self._cache.get(robots_url)
        now = self._clock()
        if cached is not None and now - cached[0] < self.ttl_seconds:
            return cached[1]

        parser: RobotFileParser | None = None
        try:
            text = await fetch_text(robots_url)
        except Exception as exc:
            logger.debug(f"robots.txt fetch failed for {robots_url}, allowing: {exc}")
            text = None
        if text is not None:
            parser = RobotFileParser(robots_url)
            parser.parse(text.splitlines())
        self._cache[robots_url] = (now, parser)
        return parser

    async def is_allowed(self, url: str, fetch_text: RobotsTextFetcher) -> bool:
        parser = await self._parser_for(url, fetch_text)
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)
