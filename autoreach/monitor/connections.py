"""
Connection monitor: per-connection quality metrics, threshold alerts and
periodic health checks.

Alerts are deduplicated by (type, connection): while an alert of a given type
is unresolved for a connection, further breaches update it in place. When the
metric recovers the alert is resolved.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

import psutil

from ..config import MonitorConfig
from ..scheduling import PeriodicTask, utcnow
from ..schemas import (
    Alert,
    AlertSeverity,
    AlertType,
    ConnectionQuality,
    ConnectionRecord,
    ConnectionStatus,
    HealthCheck,
    HealthStatus,
)

logger = logging.getLogger(__name__)

# (max latency ms, max packet loss %) -> quality, checked in order
QUALITY_TIERS = [
    (100.0, 1.0, ConnectionQuality.EXCELLENT),
    (500.0, 3.0, ConnectionQuality.GOOD),
    (1000.0, 5.0, ConnectionQuality.FAIR),
]

RECENT_ERROR_WINDOW = timedelta(minutes=1)


def compute_quality(latency_ms: float, packet_loss_pct: float) -> ConnectionQuality:
    for max_latency, max_loss, quality in QUALITY_TIERS:
        if latency_ms < max_latency and packet_loss_pct < max_loss:
            return quality
    return ConnectionQuality.POOR


def sample_resources() -> Dict[str, float]:
    return {
        "cpu_pct": float(psutil.cpu_percent(interval=None)),
        "memory_pct": float(psutil.virtual_memory().percent),
    }


class ConnectionMonitor:
    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        resource_sampler: Callable[[], Dict[str, float]] = sample_resources,
        start_background: bool = True,
    ) -> None:
        self.config = config or MonitorConfig()
        self._clock = clock
        self._sample = resource_sampler
        self._lock = threading.RLock()
        self._connections: Dict[str, ConnectionRecord] = {}
        self._alerts: Dict[str, Alert] = {}
        self._error_events: Deque[datetime] = deque(maxlen=10000)
        self._health: Deque[HealthCheck] = deque()
        self._health_task = PeriodicTask("health-check", self.config.health_check_interval_s, self.perform_health_check)
        if start_background and self.config.enable_health_checks:
            self._health_task.start()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register_connection(
        self,
        connection_id: str,
        user_id: str,
        origin: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConnectionRecord:
        now = self._clock()
        record = ConnectionRecord(
            id=connection_id,
            user_id=user_id,
            origin=origin,
            connected_at=now,
            last_activity=now,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._connections[connection_id] = record
        logger.info("connection registered: %s (user=%s origin=%s)", connection_id, user_id, origin)
        return record.model_copy(deep=True)

    def update_connection_activity(
        self,
        connection_id: str,
        *,
        latency_ms: Optional[float] = None,
        packet_loss_pct: Optional[float] = None,
        bandwidth_bps: Optional[float] = None,
        error_count: Optional[int] = None,
    ) -> Optional[ConnectionRecord]:
        now = self._clock()
        with self._lock:
            record = self._connections.get(connection_id)
            if record is None:
                return None
            if latency_ms is not None:
                record.latency_ms = float(latency_ms)
            if packet_loss_pct is not None:
                record.packet_loss_pct = float(packet_loss_pct)
            if bandwidth_bps is not None:
                record.bandwidth_bps = float(bandwidth_bps)
            if error_count is not None:
                for _ in range(max(0, error_count - record.error_count)):
                    self._error_events.append(now)
                record.error_count = int(error_count)
            record.last_activity = now
            record.quality = compute_quality(record.latency_ms, record.packet_loss_pct)
            snapshot = record.model_copy(deep=True)
        self._evaluate_thresholds(snapshot)
        return snapshot

    def record_error(self, connection_id: str) -> Optional[ConnectionRecord]:
        with self._lock:
            record = self._connections.get(connection_id)
            if record is None:
                return None
            errors = record.error_count + 1
        return self.update_connection_activity(connection_id, error_count=errors)

    def _evaluate_thresholds(self, record: ConnectionRecord) -> None:
        cfg = self.config
        checks = [
            (
                AlertType.HIGH_LATENCY,
                record.latency_ms > cfg.latency_threshold_ms,
                AlertSeverity.HIGH if record.latency_ms > 2 * cfg.latency_threshold_ms else AlertSeverity.MEDIUM,
                f"High latency detected: {record.latency_ms:.0f}ms",
            ),
            (
                AlertType.PACKET_LOSS,
                record.packet_loss_pct > cfg.packet_loss_threshold_pct,
                AlertSeverity.HIGH,
                f"High packet loss detected: {record.packet_loss_pct:.1f}%",
            ),
            (
                AlertType.ERROR_SPIKE,
                record.error_count > cfg.error_threshold,
                AlertSeverity.HIGH,
                f"High error count: {record.error_count} errors",
            ),
        ]
        for alert_type, breached, severity, message in checks:
            if breached:
                self.create_alert(alert_type, severity, message, connection_id=record.id, user_id=record.user_id)
            else:
                self._resolve_matching(alert_type, record.id)

    def disconnect_connection(self, connection_id: str, reason: str = "normal") -> bool:
        with self._lock:
            record = self._connections.pop(connection_id, None)
        if record is None:
            return False
        if reason == "error":
            record.status = ConnectionStatus.ERROR
            self.create_alert(
                AlertType.CONNECTION_LOST, AlertSeverity.HIGH,
                f"Connection lost due to error: {connection_id}",
                connection_id=connection_id, user_id=record.user_id,
            )
        elif reason == "timeout":
            record.status = ConnectionStatus.TIMEOUT
            self.create_alert(
                AlertType.TIMEOUT, AlertSeverity.MEDIUM,
                f"Connection timed out: {connection_id}",
                connection_id=connection_id, user_id=record.user_id,
            )
        else:
            record.status = ConnectionStatus.DISCONNECTED
        logger.info("connection %s disconnected (%s)", connection_id, reason)
        return True

    def get_connection(self, connection_id: str) -> Optional[ConnectionRecord]:
        with self._lock:
            record = self._connections.get(connection_id)
            return record.model_copy(deep=True) if record else None

    def get_user_connections(self, user_id: str) -> List[ConnectionRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._connections.values() if r.user_id == user_id]

    def check_timeouts(self) -> List[str]:
        """Disconnect connections idle past the connection timeout."""
        now = self._clock()
        limit = timedelta(seconds=self.config.connection_timeout_s)
        with self._lock:
            stale = [cid for cid, r in self._connections.items() if now - r.last_activity > limit]
        for cid in stale:
            self.disconnect_connection(cid, "timeout")
        return stale

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        *,
        connection_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Alert]:
        if not self.config.enable_alerts:
            return None
        now = self._clock()
        with self._lock:
            for alert in self._alerts.values():
                if not alert.resolved and alert.type == alert_type and alert.connection_id == connection_id:
                    alert.occurrences += 1
                    alert.updated_at = now
                    alert.message = message
                    alert.severity = severity
                    return alert.model_copy(deep=True)
            alert = Alert(
                id=f"alert_{uuid.uuid4().hex[:12]}",
                type=alert_type,
                severity=severity,
                message=message,
                connection_id=connection_id,
                user_id=user_id,
                created_at=now,
                updated_at=now,
            )
            self._alerts[alert.id] = alert
        logger.warning("alert %s [%s]: %s", alert_type.value, severity.value, message)
        return alert.model_copy(deep=True)

    def _resolve_matching(self, alert_type: AlertType, connection_id: str) -> None:
        with self._lock:
            ids = [a.id for a in self._alerts.values()
                   if not a.resolved and a.type == alert_type and a.connection_id == connection_id]
        for alert_id in ids:
            self.resolve_alert(alert_id)

    def resolve_alert(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            alert.resolved_at = self._clock()
        logger.info("alert resolved: %s (%s)", alert_id, alert.type.value)
        return True

    def get_active_alerts(self) -> List[Alert]:
        with self._lock:
            active = [a.model_copy(deep=True) for a in self._alerts.values() if not a.resolved]
        return sorted(active, key=lambda a: a.created_at, reverse=True)

    def purge_alerts(self) -> int:
        cutoff = self._clock() - timedelta(days=self.config.alert_retention_days)
        with self._lock:
            old = [aid for aid, a in self._alerts.items() if a.updated_at < cutoff]
            for aid in old:
                del self._alerts[aid]
        return len(old)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def perform_health_check(self) -> HealthCheck:
        started = time.perf_counter()
        self.check_timeouts()
        now = self._clock()
        with self._lock:
            connections = list(self._connections.values())
            recent_errors = sum(1 for t in self._error_events if now - t <= RECENT_ERROR_WINDOW)
        latencies = [c.latency_ms for c in connections if c.latency_ms > 0]
        avg_latency = sum(latencies) / len(latencies) if latencies else 0.0
        metrics: Dict[str, float] = {
            "connections": float(len(connections)),
            "recent_errors": float(recent_errors),
            "avg_latency_ms": round(avg_latency, 1),
        }
        error = None
        try:
            metrics.update(self._sample())
        except Exception as e:
            error = f"resource sampling failed: {e}"
            logger.warning(error)
        if recent_errors > self.config.error_threshold:
            status = HealthStatus.UNHEALTHY
        elif recent_errors > 0 or avg_latency > self.config.latency_threshold_ms:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        check = HealthCheck(
            id=f"health_{uuid.uuid4().hex[:12]}",
            timestamp=now,
            status=status,
            response_time_ms=round((time.perf_counter() - started) * 1000, 2),
            metrics=metrics,
            error=error,
        )
        horizon = now - timedelta(hours=self.config.health_history_hours)
        with self._lock:
            self._health.append(check)
            while self._health and self._health[0].timestamp < horizon:
                self._health.popleft()
            while self._error_events and now - self._error_events[0] > RECENT_ERROR_WINDOW:
                self._error_events.popleft()
        self.purge_alerts()
        if status != HealthStatus.HEALTHY:
            logger.warning("health check %s: %s", status.value, metrics)
        return check

    def get_health_history(self, hours: float = 24) -> List[HealthCheck]:
        cutoff = self._clock() - timedelta(hours=hours)
        with self._lock:
            return [h.model_copy(deep=True) for h in self._health if h.timestamp >= cutoff]

    def get_connection_stats(self) -> Dict[str, Any]:
        with self._lock:
            connections = list(self._connections.values())
            active_alerts = sum(1 for a in self._alerts.values() if not a.resolved)
            last = self._health[-1] if self._health else None
        by_quality = {q.value: 0 for q in ConnectionQuality}
        for c in connections:
            by_quality[c.quality.value] += 1
        latencies = [c.latency_ms for c in connections if c.latency_ms > 0]
        return {
            "total_connections": len(connections),
            "connections_by_quality": by_quality,
            "average_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else 0.0,
            "total_errors": sum(c.error_count for c in connections),
            "active_alerts": active_alerts,
            "last_health_status": last.status.value if last else None,
        }

    def get_config(self) -> MonitorConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> MonitorConfig:
        updated = MonitorConfig.model_validate({**self.config.model_dump(), **changes})
        with self._lock:
            self.config = updated
        if "health_check_interval_s" in changes and self._health_task.running:
            self._health_task.stop()
            self._health_task = PeriodicTask("health-check", updated.health_check_interval_s, self.perform_health_check)
            self._health_task.start()
        logger.info("monitor config updated: %s", sorted(changes))
        return self.get_config()

    def shutdown(self) -> None:
        self._health_task.stop()
