"""
Operator alerts for partition-fatal conditions.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class Alert:
    component: str
    message: str
    partition: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "message": self.message,
            "partition": self.partition,
            "details": self.details,
            "raised_at": self.raised_at.isoformat(),
        }


class AlertSink:
    """Collects operator-visible alerts and logs each one"""

    def __init__(self, max_alerts: int = 1000):
        self.max_alerts = max_alerts
        self._alerts: List[Alert] = []
        self._lock = threading.Lock()

    def raise_alert(
        self,
        component: str,
        message: str,
        partition: Optional[int] = None,
        **details: Any
    ) -> Alert:
        alert = Alert(component=component, message=message, partition=partition, details=details)
        with self._lock:
            self._alerts.append(alert)
            if len(self._alerts) > self.max_alerts:
                self._alerts.pop(0)
        logger.error(
            f"[ALERT] {component}: {message}",
            partition=partition,
            **details
        )
        return alert

    def list(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)
