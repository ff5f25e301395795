"""
Interface of the tunnel agent that owns the actual VPN tunnel
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Tuple

from ..core.errors import TunnelAgentError
from ..core.types import (
    AuthenticationKeys, Certificate, ServerCandidate, VpnProtocol,
)

logger = logging.getLogger(__name__)


class AgentState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class AgentErrorCode(IntEnum):
    """Error codes reported by the local agent"""
    CERTIFICATE_EXPIRED = 86101
    CERTIFICATE_REVOKED = 86102
    MAX_SESSIONS_UNKNOWN = 86103
    MAX_SESSIONS_FREE = 86104
    MAX_SESSIONS_BASIC = 86105
    MAX_SESSIONS_PLUS = 86106
    MAX_SESSIONS_VISIONARY = 86107
    MAX_SESSIONS_PRO = 86108
    KEY_USED_MULTIPLE_TIMES = 86109
    SERVER_ERROR = 86110
    POLICY_VIOLATION_LOW_PLAN = 86111
    POLICY_VIOLATION_DELINQUENT = 86112
    USER_TORRENT_NOT_ALLOWED = 86113
    USER_BAD_BEHAVIOR = 86114
    GUEST_SESSION = 86115
    BAD_CERT_SIGNATURE = 86151
    CERT_NOT_PROVIDED = 86152
    SERVER_SESSION_DOES_NOT_MATCH = 86202


@dataclass(frozen=True)
class TunnelEvent:
    """State change or error of one agent session"""
    session_id: int
    state: Optional[AgentState] = None
    error_code: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.error_code is not None

    @property
    def error(self) -> Optional[TunnelAgentError]:
        if self.error_code is None:
            return None
        return TunnelAgentError(self.error_code)


@dataclass(frozen=True)
class TunnelStartCommand:
    session_id: int
    protocol: VpnProtocol
    server: ServerCandidate
    ports: Tuple[int, ...]
    features: Dict[str, object]
    keys: AuthenticationKeys = field(repr=False)
    certificate: Certificate = field(repr=False)
    username: str = ''
    password: str = field(default='', repr=False)


TunnelListener = Callable[[TunnelEvent], None]


class TunnelAgent(ABC):
    """
    Black box that brings the tunnel up and down. Implementations report
    every state change and error through ``emit`` tagged with the session
    id of the start command they belong to.
    """

    def __init__(self):
        self._listeners: List[TunnelListener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: TunnelListener):
        with self._listeners_lock:
            self._listeners.append(listener)

    def emit(self, event: TunnelEvent):
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    @abstractmethod
    def start(self, command: TunnelStartCommand):
        """Bring the tunnel up for a new session"""

    @abstractmethod
    def stop(self, session_id: int):
        """Tear the tunnel of a session down"""

    @abstractmethod
    def restart_session(self, session_id: int, keys: AuthenticationKeys,
                        certificate: Certificate):
        """Reconnect the agent with new credentials, keeping the tunnel up"""
