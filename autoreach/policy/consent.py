"""
Consent manager: time-boxed permission grants for automation actions.

Request lifecycle: pending -> granted | denied | expired. Expiry is applied
on access (a stale pending request becomes `expired` the next time anyone
touches it) and by a periodic sweep that also purges expired grants.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from ..config import ConsentConfig
from ..errors import ConsentCode, ConsentRejected
from ..scheduling import PeriodicTask, utcnow
from ..schemas import ConsentGrant, ConsentRequest, ConsentStatus, ConsentValidation

logger = logging.getLogger(__name__)

DEFAULT_GRANT_PERMISSIONS = ("read", "write")


class ConsentManager:
    def __init__(
        self,
        config: Optional[ConsentConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        start_background: bool = True,
    ) -> None:
        self.config = config or ConsentConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._requests: Dict[str, ConsentRequest] = {}
        self._grants: Dict[str, ConsentGrant] = {}
        self._activity: Deque[Dict[str, Any]] = deque(maxlen=self.config.max_activity_entries)
        self._sweeper = PeriodicTask("consent-sweep", self.config.cleanup_interval_s, self.sweep)
        if start_background:
            self._sweeper.start()

    # ------------------------------------------------------------------

    def _log(self, event: str, **fields: Any) -> None:
        if not self.config.log_activity:
            return
        entry = {"event": event, "timestamp": self._clock().isoformat(), **fields}
        with self._lock:
            self._activity.append(entry)

    def _expire_if_stale(self, request: ConsentRequest, now: datetime) -> bool:
        if request.status == ConsentStatus.PENDING and now >= request.expires_at:
            request.status = ConsentStatus.EXPIRED
            self._log("request_expired", request_id=request.id, user_id=request.user_id)
            return True
        return request.status == ConsentStatus.EXPIRED

    def _pending_for(self, user_id: str, now: datetime) -> List[ConsentRequest]:
        out = []
        for req in self._requests.values():
            if req.user_id != user_id:
                continue
            if not self._expire_if_stale(req, now) and req.status == ConsentStatus.PENDING:
                out.append(req)
        return out

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    def create_consent_request(
        self,
        user_id: str,
        origin: str,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConsentRequest:
        if action not in self.config.allowed_actions:
            raise ConsentRejected(ConsentCode.ACTION_NOT_ALLOWED, f"action not allowed: {action}")
        now = self._clock()
        with self._lock:
            if len(self._pending_for(user_id, now)) >= self.config.max_pending_requests:
                raise ConsentRejected(
                    ConsentCode.TOO_MANY_PENDING,
                    f"too many pending consent requests (max {self.config.max_pending_requests})",
                )
            request = ConsentRequest(
                id=f"consent_{uuid.uuid4().hex}",
                user_id=user_id,
                origin=origin,
                action=action,
                requested_at=now,
                expires_at=now + timedelta(minutes=self.config.request_expiry_minutes),
                metadata=dict(metadata or {}),
            )
            self._requests[request.id] = request
        self._log("request_created", request_id=request.id, user_id=user_id, origin=origin, action=action)
        logger.info("consent request %s created for user=%s action=%s", request.id, user_id, action)
        return request.model_copy(deep=True)

    def _pending_request(self, request_id: str, now: datetime) -> ConsentRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise ConsentRejected(ConsentCode.NOT_FOUND, "consent request not found")
        if request.status == ConsentStatus.PENDING and now >= request.expires_at:
            self._expire_if_stale(request, now)
            raise ConsentRejected(ConsentCode.EXPIRED, "consent request has expired")
        if request.status != ConsentStatus.PENDING:
            raise ConsentRejected(ConsentCode.NOT_PENDING, f"consent request is {request.status.value}")
        return request

    def grant_consent(
        self,
        request_id: str,
        permissions: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConsentGrant:
        requested = list(permissions) if permissions is not None else list(DEFAULT_GRANT_PERMISSIONS)
        valid = [p for p in dict.fromkeys(requested) if p in self.config.allowed_permissions]
        now = self._clock()
        with self._lock:
            request = self._pending_request(request_id, now)
            if not valid:
                raise ConsentRejected(ConsentCode.NO_VALID_PERMISSIONS, "no valid permissions requested")
            request.status = ConsentStatus.GRANTED
            grant = ConsentGrant(
                id=f"grant_{uuid.uuid4().hex}",
                request_id=request.id,
                user_id=request.user_id,
                origin=request.origin,
                action=request.action,
                permissions=valid,
                granted_at=now,
                expires_at=now + timedelta(minutes=self.config.grant_expiry_minutes),
                metadata={"session_id": uuid.uuid4().hex, **(metadata or {})},
            )
            self._grants[grant.id] = grant
        self._log("consent_granted", request_id=request_id, grant_id=grant.id, permissions=valid)
        logger.info("consent %s granted as %s (%s)", request_id, grant.id, ",".join(valid))
        return grant.model_copy(deep=True)

    def deny_consent(self, request_id: str) -> ConsentRequest:
        now = self._clock()
        with self._lock:
            request = self._pending_request(request_id, now)
            request.status = ConsentStatus.DENIED
            snapshot = request.model_copy(deep=True)
        self._log("consent_denied", request_id=request_id)
        logger.info("consent %s denied", request_id)
        return snapshot

    def revoke_consent(self, grant_id: str) -> bool:
        with self._lock:
            grant = self._grants.pop(grant_id, None)
        if grant is None:
            return False
        self._log("consent_revoked", grant_id=grant_id, user_id=grant.user_id)
        logger.info("consent grant %s revoked", grant_id)
        return True

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_consent(
        self,
        grant_id: str,
        origin: str,
        action: str,
        required_permissions: Iterable[str] = (),
        user_id: Optional[str] = None,
    ) -> ConsentValidation:
        """Check a grant against the caller. A grant only covers the user it was issued to."""
        now = self._clock()
        with self._lock:
            grant = self._grants.get(grant_id)
            if grant is None:
                return ConsentValidation(valid=False, reason=ConsentCode.NOT_FOUND.value)
            if now >= grant.expires_at:
                del self._grants[grant_id]
                self._log("grant_expired", grant_id=grant_id)
                return ConsentValidation(valid=False, reason=ConsentCode.EXPIRED.value)
            snapshot = grant.model_copy(deep=True)
        if user_id is not None and snapshot.user_id != user_id:
            return ConsentValidation(valid=False, reason=ConsentCode.USER_MISMATCH.value)
        if snapshot.origin != origin:
            return ConsentValidation(valid=False, reason=ConsentCode.ORIGIN_MISMATCH.value)
        if snapshot.action != action:
            return ConsentValidation(valid=False, reason=ConsentCode.ACTION_MISMATCH.value)
        if not set(required_permissions) <= set(snapshot.permissions):
            return ConsentValidation(valid=False, reason=ConsentCode.INSUFFICIENT_PERMISSIONS.value)
        return ConsentValidation(valid=True, grant=snapshot)

    def require(
        self,
        grant_id: str,
        origin: str,
        action: str,
        required_permissions: Iterable[str] = (),
        user_id: Optional[str] = None,
    ) -> ConsentGrant:
        """Return the grant or raise ConsentRejected with the failing reason."""
        result = self.validate_consent(grant_id, origin, action, required_permissions, user_id=user_id)
        if not result.valid:
            code = ConsentCode(result.reason)
            raise ConsentRejected(code, f"consent invalid: {code.value}")
        return result.grant

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> Optional[ConsentRequest]:
        now = self._clock()
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            self._expire_if_stale(request, now)
            return request.model_copy(deep=True)

    def get_user_requests(self, user_id: str) -> List[ConsentRequest]:
        now = self._clock()
        with self._lock:
            out = []
            for req in self._requests.values():
                if req.user_id == user_id:
                    self._expire_if_stale(req, now)
                    out.append(req.model_copy(deep=True))
        return sorted(out, key=lambda r: r.requested_at, reverse=True)

    def get_user_grants(self, user_id: str) -> List[ConsentGrant]:
        now = self._clock()
        with self._lock:
            return [g.model_copy(deep=True) for g in self._grants.values() if g.user_id == user_id and now < g.expires_at]

    def activity(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._activity)
        return items[-limit:] if limit else items

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            for req in self._requests.values():
                self._expire_if_stale(req, now)
            by_status = {s.value: 0 for s in ConsentStatus}
            for req in self._requests.values():
                by_status[req.status.value] += 1
            active_grants = sum(1 for g in self._grants.values() if now < g.expires_at)
            activity = len(self._activity)
        return {
            "total_requests": sum(by_status.values()),
            "requests_by_status": by_status,
            "active_grants": active_grants,
            "activity_entries": activity,
        }

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep(self) -> Dict[str, int]:
        """Expire stale pending requests and purge expired grants."""
        now = self._clock()
        expired = 0
        purged = 0
        with self._lock:
            for req in self._requests.values():
                if req.status == ConsentStatus.PENDING and self._expire_if_stale(req, now):
                    expired += 1
            for grant_id in [gid for gid, g in self._grants.items() if now >= g.expires_at]:
                del self._grants[grant_id]
                purged += 1
            # settled requests older than a grant lifetime carry no further use
            horizon = now - timedelta(minutes=self.config.grant_expiry_minutes)
            for req_id in [rid for rid, r in self._requests.items() if r.status != ConsentStatus.PENDING and r.expires_at < horizon]:
                del self._requests[req_id]
        if expired or purged:
            logger.info("consent sweep: %d requests expired, %d grants purged", expired, purged)
        return {"expired_requests": expired, "purged_grants": purged}

    def get_config(self) -> ConsentConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> ConsentConfig:
        updated = ConsentConfig.model_validate({**self.config.model_dump(), **changes})
        with self._lock:
            self.config = updated
            if updated.max_activity_entries != self._activity.maxlen:
                self._activity = deque(self._activity, maxlen=updated.max_activity_entries)
        logger.info("consent policy updated: %s", sorted(changes))
        return self.get_config()

    def shutdown(self) -> None:
        self._sweeper.stop()
