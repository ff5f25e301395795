"""
User facing alerts pushed by the session core
"""

import threading
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Type

from .types import ReconnectInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    title: str = ""
    message: str = ""


@dataclass(frozen=True)
class MaxSessionsAlert(Alert):
    title: str = "Maximum device limit reached"
    message: str = "Disconnect another device to connect this one."


@dataclass(frozen=True)
class PolicyViolationAlert(Alert):
    """Torrenting on a server that forbids it, or abusive traffic"""
    title: str = "Connection terminated"
    message: str = "The server closed the connection because of a policy violation."


@dataclass(frozen=True)
class CertificateRefreshErrorAlert(Alert):
    title: str = "Connection lost"
    message: str = "Your VPN certificate could not be renewed."


@dataclass(frozen=True)
class UserPlanDowngradedAlert(Alert):
    title: str = "Your plan changed"
    message: str = "Reconnecting to a server available on your plan."
    reconnect_info: Optional[ReconnectInfo] = None


@dataclass(frozen=True)
class UserBecameDelinquentAlert(Alert):
    title: str = "Payment overdue"
    message: str = "Reconnecting to a free server."
    reconnect_info: Optional[ReconnectInfo] = None


@dataclass(frozen=True)
class MaintenanceAlert(Alert):
    title: str = "Server under maintenance"
    message: str = "Reconnecting to another server."
    reconnect_info: Optional[ReconnectInfo] = None


@dataclass(frozen=True)
class UpgradeRequiredAlert(Alert):
    title: str = "Upgrade required"
    message: str = "This server is not available on your plan."


@dataclass(frozen=True)
class CredentialsMissingAlert(Alert):
    title: str = "Sign in required"
    message: str = "Your session has expired. Please sign in again."


class AlertSink:
    """Fire and forget destination for alerts"""

    def push(self, alert: Alert):
        raise NotImplementedError


class AlertService(AlertSink):
    """
    Alert sink that forwards alerts to listeners and suppresses a new alert
    while one of the same class is still pending.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Set[Type[Alert]] = set()
        self._listeners: List[Callable[[Alert], None]] = []
        self.alerts: List[Alert] = []

    def add_listener(self, listener: Callable[[Alert], None]):
        self._listeners.append(listener)

    def push(self, alert: Alert):
        with self._lock:
            if type(alert) in self._pending:
                logger.debug(f"Suppressing duplicate {type(alert).__name__}")
                return
            self._pending.add(type(alert))
            self.alerts.append(alert)

        logger.info(f"Alert: {alert.title}")
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception as e:
                logger.error(f"Alert listener error: {e}")

    def dismiss(self, alert_type: Type[Alert]):
        """Mark alerts of this class as handled so the next one shows"""
        with self._lock:
            self._pending.discard(alert_type)

    def is_pending(self, alert_type: Type[Alert]) -> bool:
        with self._lock:
            return alert_type in self._pending
