"""
Origin trust gate: admits or rejects callers by scheme, host and port.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Optional, Tuple
from urllib.parse import urlparse

from ..config import OriginConfig
from ..errors import OriginRejected
from ..scheduling import utcnow
from ..schemas import OriginCheck, OriginViolation

logger = logging.getLogger(__name__)


def parse_origin(origin: str) -> Tuple[str, str, Optional[int]]:
    """Split an origin into (scheme, host, explicit port); ValueError if malformed."""
    parsed = urlparse(origin.strip())
    scheme = (parsed.scheme or "").lower()
    host = (parsed.hostname or "").lower()
    if not scheme or not host:
        raise ValueError(f"malformed origin: {origin!r}")
    port = parsed.port  # raises ValueError for out-of-range ports
    if parsed.path not in ("", "/") or parsed.query or parsed.fragment:
        raise ValueError(f"origin must not carry a path: {origin!r}")
    return scheme, host, port


def format_origin(scheme: str, host: str, port: Optional[int]) -> str:
    return f"{scheme}://{host}" + (f":{port}" if port is not None else "")


class OriginValidator:
    def __init__(self, config: Optional[OriginConfig] = None, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._apply(config or OriginConfig())

    def _apply(self, config: OriginConfig) -> None:
        exact = set()
        wildcards = []
        for entry in config.allowed_origins:
            entry = entry.strip()
            if "*." in entry:
                scheme, _, rest = entry.rpartition("://")
                wildcards.append((scheme.lower() or None, rest.split("*.", 1)[1].rstrip("/").lower()))
                continue
            try:
                exact.add(format_origin(*parse_origin(entry)))
            except ValueError:
                logger.warning("ignoring malformed allow-list entry %r", entry)
        with self._lock:
            self.config = config
            self._exact = exact
            self._wildcards = wildcards
            old = getattr(self, "_violations", None)
            self._violations: Deque[OriginViolation] = deque(old or (), maxlen=config.max_violations)

    def _reject(self, origin: str, reason: str, user_agent: Optional[str]) -> OriginCheck:
        if self.config.log_violations:
            violation = OriginViolation(
                origin=origin,
                reason=reason,
                timestamp=self._clock(),
                user_agent=(user_agent or "")[:100] or None,
            )
            with self._lock:
                self._violations.append(violation)
            logger.warning("origin rejected: %s (%s)", origin or "<empty>", reason)
        return OriginCheck(valid=False, reason=reason)

    def validate_origin(self, origin: Optional[str], user_agent: Optional[str] = None) -> OriginCheck:
        if not origin or not origin.strip():
            return self._reject("", "missing origin", user_agent)
        try:
            scheme, host, port = parse_origin(origin)
        except ValueError:
            return self._reject(origin, "malformed origin", user_agent)
        with self._lock:
            config = self.config
            exact = self._exact
            wildcards = list(self._wildcards)
        if scheme not in [p.rstrip(":").lower() for p in config.allowed_protocols]:
            return self._reject(origin, f"protocol not allowed: {scheme}", user_agent)
        if port is not None and port not in config.allowed_ports:
            return self._reject(origin, f"port not allowed: {port}", user_agent)
        normalized = format_origin(scheme, host, port)
        if normalized in exact:
            return OriginCheck(valid=True, normalized_origin=normalized)
        if config.strict_mode:
            return self._reject(origin, "origin not in allow-list", user_agent)
        for wc_scheme, domain in wildcards:
            if wc_scheme and wc_scheme != scheme:
                continue
            # subdomains only: "evil-example.com" must not match "*.example.com"
            if host.endswith("." + domain):
                return OriginCheck(valid=True, normalized_origin=normalized)
        return self._reject(origin, "origin not in allow-list", user_agent)

    def is_allowed(self, origin: Optional[str]) -> bool:
        return self.validate_origin(origin).valid

    def require(self, origin: Optional[str], user_agent: Optional[str] = None) -> str:
        """Return the normalized origin or raise OriginRejected."""
        check = self.validate_origin(origin, user_agent)
        if not check.valid:
            raise OriginRejected(origin or "", check.reason or "origin rejected")
        return check.normalized_origin or ""

    def violations(self) -> list[OriginViolation]:
        with self._lock:
            return list(self._violations)

    def violation_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            items = list(self._violations)
        recent = [v for v in items if now - v.timestamp <= timedelta(hours=1)]
        return {
            "total": len(items),
            "recent": len(recent),
            "top_origins": [{"origin": o, "count": c} for o, c in Counter(v.origin for v in items).most_common(10)],
            "top_reasons": [{"reason": r, "count": c} for r, c in Counter(v.reason for v in items).most_common(10)],
        }

    def clear_violations(self) -> int:
        with self._lock:
            n = len(self._violations)
            self._violations.clear()
        logger.info("origin violation log cleared (%d entries)", n)
        return n

    def get_config(self) -> OriginConfig:
        with self._lock:
            return self.config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> OriginConfig:
        updated = OriginConfig.model_validate({**self.config.model_dump(), **changes})
        self._apply(updated)
        logger.info("origin policy updated: %s", sorted(changes))
        return self.get_config()
