from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional
from urllib import robotparser
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

DEFAULT_UA = "AutoReach-StaticFetcher/0.1 (+https://example.com)"


@dataclass(frozen=True)
class FetchResult:
    url: str
    status_code: int
    mime: str | None
    content_length: int
    html: str | None
    headers: dict[str, str]
    blocked_by_robots: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300 and not self.blocked_by_robots


class StaticFetcher:
    """Static HTML fetcher used for pattern probes and candidate verification.

    - Uses httpx for network IO (one shared, thread-safe client)
    - Parses robots.txt using urllib.robotparser, cached per host
    - Does NOT execute JavaScript
    """

    def __init__(
        self,
        *,
        timeout_s: float = 12.0,
        user_agent: str = DEFAULT_UA,
        respect_robots: bool = True,
    ) -> None:
        self.timeout_s = timeout_s
        self.user_agent = user_agent
        self.respect_robots = respect_robots
        self._client = httpx.Client(timeout=self.timeout_s, headers={"User-Agent": self.user_agent})
        self._robots: Dict[str, Optional[robotparser.RobotFileParser]] = {}
        self._robots_lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    def _robots_for(self, url: str) -> Optional[robotparser.RobotFileParser]:
        parsed = urlparse(url)
        key = f"{parsed.scheme}://{parsed.netloc}"
        with self._robots_lock:
            if key in self._robots:
                return self._robots[key]
        rp: Optional[robotparser.RobotFileParser] = None
        try:
            resp = self._client.get(f"{key}/robots.txt")
            if resp.status_code < 400:
                rp = robotparser.RobotFileParser()
                rp.parse(resp.text.splitlines())
        except httpx.HTTPError as e:
            # Unreachable robots.txt means no restrictions
            logger.debug("robots.txt unavailable for %s: %s", key, e)
        with self._robots_lock:
            self._robots[key] = rp
        return rp

    def robots_allows(self, url: str) -> bool:
        if not self.respect_robots:
            return True
        rp = self._robots_for(url)
        if rp is None:
            return True
        return rp.can_fetch(self.user_agent, url) and rp.can_fetch("*", url)

    def head(self, url: str, *, timeout_s: Optional[float] = None) -> int:
        """Return the status code for `url` without downloading the body.

        Servers that reject HEAD (405/501) are retried with a streamed GET.
        Network errors propagate as httpx.HTTPError.
        """
        timeout = timeout_s if timeout_s is not None else self.timeout_s
        resp = self._client.head(url, follow_redirects=True, timeout=timeout)
        if resp.status_code in (405, 501):
            with self._client.stream("GET", url, follow_redirects=True, timeout=timeout) as streamed:
                return streamed.status_code
        return resp.status_code

    def fetch(self, url: str, *, timeout_s: Optional[float] = None) -> FetchResult:
        if not self.robots_allows(url):
            return FetchResult(
                url=url,
                status_code=0,
                mime=None,
                content_length=0,
                html=None,
                headers={},
                blocked_by_robots=True,
            )
        timeout = timeout_s if timeout_s is not None else self.timeout_s
        resp = self._client.get(url, follow_redirects=True, timeout=timeout)
        mime = resp.headers.get("Content-Type")
        mime_main = None
        if mime:
            mime_main = mime.split(";")[0].strip().lower()
        html_text = None
        if mime_main in ("text/html", "application/xhtml+xml", "application/xml", "text/xml"):
            html_text = resp.text
        return FetchResult(
            url=str(resp.request.url),
            status_code=resp.status_code,
            mime=mime_main,
            content_length=len(resp.content or b""),
            html=html_text,
            headers={k: v for k, v in resp.headers.items()},
        )
