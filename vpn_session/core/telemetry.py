"""
Connection telemetry with a durable retry buffer
"""

import json
import sqlite3
import threading
import time
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .errors import (
    ApiError, CredentialsMissingError, CredentialStoreError,
    RemoteUnavailableError, TelemetryDeliveryFailed,
)
from .storage import CredentialStore
from .types import (
    ConnectionState, StateChange, StateKind, TelemetryEvent, UserAction,
    VpnTiers, VpnTrigger,
)

logger = logging.getLogger(__name__)

VPN_CONNECTION = 'vpn_connection'
VPN_DISCONNECTION = 'vpn_disconnection'
FREE_PLANS = ('free', 'trial')
MAX_DIMENSION_LENGTH = 25


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"


class NetworkType(Enum):
    WIFI = "wifi"
    MOBILE = "mobile"
    OTHER = "other"


@dataclass(frozen=True)
class BufferedEvent:
    id: int
    data: Dict
    tries: int


class TelemetryBuffer:
    """Events waiting for delivery, kept in SQLite and read oldest first"""

    def __init__(self, db_path: Union[str, Path] = ':memory:',
                 max_tries: int = 10):
        self.db_path = str(db_path)
        self.max_tries = max_tries
        self._lock = threading.Lock()
        if self.db_path != ':memory:':
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.db_path, timeout=30.0, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._init_database()

    def _init_database(self):
        with self._transaction() as cursor:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS telemetry_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    data TEXT NOT NULL,
                    tries INTEGER NOT NULL DEFAULT 0,
                    created REAL NOT NULL
                )
            ''')

    @contextmanager
    def _transaction(self):
        with self._lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                logger.error(f"Telemetry buffer error: {e}")
                raise

    def save(self, event: Dict):
        with self._transaction() as cursor:
            cursor.execute(
                'INSERT INTO telemetry_events (data, created) VALUES (?, ?)',
                (json.dumps(event), time.time())
            )

    def oldest(self) -> Optional[BufferedEvent]:
        with self._transaction() as cursor:
            cursor.execute(
                'SELECT id, data, tries FROM telemetry_events '
                'ORDER BY id LIMIT 1'
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return BufferedEvent(row['id'], json.loads(row['data']), row['tries'])

    def remove(self, event_id: int):
        with self._transaction() as cursor:
            cursor.execute('DELETE FROM telemetry_events WHERE id = ?',
                           (event_id,))

    def record_failure(self, event_id: int) -> bool:
        """
        Count a failed delivery

        Returns:
            True if the event reached max tries and was discarded
        """
        with self._transaction() as cursor:
            cursor.execute(
                'UPDATE telemetry_events SET tries = tries + 1 WHERE id = ?',
                (event_id,)
            )
            cursor.execute(
                'DELETE FROM telemetry_events WHERE id = ? AND tries >= ?',
                (event_id, self.max_tries)
            )
            return cursor.rowcount > 0

    def count(self) -> int:
        with self._transaction() as cursor:
            cursor.execute('SELECT COUNT(*) FROM telemetry_events')
            return cursor.fetchone()[0]

    @property
    def is_empty(self) -> bool:
        return self.count() == 0

    def close(self):
        with self._lock:
            self._conn.close()


class TelemetryService:
    """
    Turns user visible state changes into connection events and delivers
    them in order on a single worker.
    """

    def __init__(self, api, credential_store: CredentialStore,
                 buffer: TelemetryBuffer, properties=None,
                 enabled: bool = True, use_buffer: bool = True,
                 executor: Optional[Executor] = None,
                 clock: Callable[[], float] = time.time):
        self.api = api
        self.credential_store = credential_store
        self.buffer = buffer
        self.properties = properties
        self.enabled = enabled
        self.use_buffer = use_buffer
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="VPN-Telemetry"
        )
        self._drain_lock = threading.Lock()
        self._lock = threading.Lock()

        self.network_type = NetworkType.OTHER
        self._previous_status: Optional[StateKind] = None
        self._last_active: Optional[ConnectionState] = None
        self._last_connected: Optional[ConnectionState] = None
        self._user_action: Optional[UserAction] = None
        self._user_trigger: Optional[VpnTrigger] = None
        self._connecting_started: Optional[float] = None
        self._connected_since: Optional[float] = None

    def reachability_changed(self, network_type: NetworkType):
        self.network_type = network_type

    # Event generation

    def state_changed(self, change: StateChange):
        with self._lock:
            event = self._event_for(change)
        if event is not None:
            self.report(event)

    def _event_for(self, change: StateChange) -> Optional[TelemetryEvent]:
        if change.user_action is not None:
            self._user_action = change.user_action
            self._user_trigger = change.trigger

        current = change.current
        status = current.kind
        now = self.clock()

        # The first status comes from whatever state the session was in
        if self._previous_status is None:
            self._previous_status = status
            self._track(current, now)
            return None
        if status == StateKind.DISCONNECTING:
            return None

        previous = self._previous_status
        event_name: Optional[str] = None
        values: Dict[str, int] = {}
        connection = None

        if status == StateKind.CONNECTED:
            if self._connecting_started is not None:
                event_name = VPN_CONNECTION
                values['time_to_connection'] = self._ms(
                    now - self._connecting_started
                )
                connection = current
        elif status == StateKind.CONNECTING:
            if previous == StateKind.CONNECTED:
                event_name = VPN_DISCONNECTION
                values['session_length'] = self._ms(self._session_length(now))
                connection = self._last_connected
        elif status == StateKind.DISCONNECTED:
            if previous == StateKind.CONNECTED:
                event_name = VPN_DISCONNECTION
                values['session_length'] = self._ms(self._session_length(now))
                connection = self._last_connected
            elif previous == StateKind.CONNECTING:
                event_name = VPN_CONNECTION
                values['time_to_connection'] = self._ms(
                    now - (self._connecting_started or now)
                )
                connection = self._last_active

        outcome = self._outcome(status, previous)
        vpn_status = 'on' if previous == StateKind.CONNECTED else 'off'
        self._previous_status = status
        self._track(current, now)

        if event_name is None or connection is None:
            return None
        return TelemetryEvent(
            event=event_name,
            values=values,
            dimensions=self._dimensions(
                outcome, vpn_status, event_name, connection
            ),
            timestamp=now,
        )

    def _track(self, state: ConnectionState, now: float):
        if state.kind == StateKind.CONNECTING:
            self._connecting_started = now
            self._connected_since = None
            self._last_active = state
        elif state.kind == StateKind.CONNECTED:
            self._connected_since = now
            self._last_active = state
            self._last_connected = state
        elif state.kind == StateKind.DISCONNECTED:
            self._connecting_started = None
            self._connected_since = None

    def _session_length(self, now: float) -> float:
        if self._connected_since is None:
            return 0
        return now - self._connected_since

    @staticmethod
    def _ms(seconds: float) -> int:
        return int(max(0.0, seconds) * 1000)

    def _outcome(self, status: StateKind,
                 previous: Optional[StateKind]) -> Outcome:
        if status == StateKind.DISCONNECTED:
            if previous in (StateKind.CONNECTED, StateKind.CONNECTING):
                if self._user_action == UserAction.DISCONNECT:
                    return Outcome.SUCCESS
                if self._user_action == UserAction.ABORT:
                    return Outcome.ABORTED
                return Outcome.FAILURE
            return Outcome.SUCCESS
        if status == StateKind.CONNECTED:
            return Outcome.SUCCESS
        if status == StateKind.CONNECTING:
            if previous == StateKind.CONNECTED:
                return Outcome.SUCCESS
            return Outcome.FAILURE
        return Outcome.FAILURE

    def _vpn_trigger(self, event_name: str, connection) -> str:
        if self._user_action == UserAction.CONNECT:
            if event_name == VPN_DISCONNECTION:
                return VpnTrigger.NEW_CONNECTION.value
            return connection.request.trigger.value
        if self._user_action == UserAction.DISCONNECT and self._user_trigger:
            return self._user_trigger.value
        return ''

    def user_tier(self) -> str:
        try:
            vpn = self.credential_store.fetch_vpn()
        except (CredentialsMissingError, CredentialStoreError):
            return 'free'
        if vpn.max_tier == VpnTiers.INTERNAL:
            return 'internal'
        if vpn.account_plan.lower() in FREE_PLANS:
            return 'free'
        return 'paid'

    @staticmethod
    def server_features(server) -> str:
        features = list(server.features)
        if server.is_free:
            features.append('free')
        return ','.join(features)

    def _dimensions(self, outcome: Outcome, vpn_status: str,
                    event_name: str, connection) -> Dict[str, str]:
        location = self.properties.user_location if self.properties else None
        ports = getattr(connection, 'ports', ())
        protocol = connection.protocol
        return {
            'outcome': outcome.value,
            'user_tier': self.user_tier(),
            'vpn_status': vpn_status,
            'vpn_trigger': self._vpn_trigger(event_name, connection),
            'network_type': self.network_type.value,
            'server_features': self.server_features(connection.server),
            'vpn_country': connection.server.country_code,
            'user_country': location.country if location else '',
            'protocol': protocol.value if protocol else '',
            'server': connection.server.name,
            'port': str(ports[0])[:MAX_DIMENSION_LENGTH] if ports else '',
            'isp': (location.isp if location else '')[:MAX_DIMENSION_LENGTH],
        }

    # Delivery

    def report(self, event: TelemetryEvent) -> Optional[Future]:
        """Queue an event for delivery, dropped when the user opted out"""
        if not self.enabled:
            logger.debug(f"Telemetry disabled, dropping {event.event}")
            return None
        return self._executor.submit(self._send, event.to_dict())

    def _deliver(self, data: Dict):
        try:
            self.api.send_telemetry_event(data)
        except (RemoteUnavailableError, ApiError,
                CredentialsMissingError, CredentialStoreError) as e:
            raise TelemetryDeliveryFailed(
                f"Telemetry delivery failed: {e}"
            ) from e

    def _send(self, data: Dict):
        if not self.use_buffer:
            try:
                self._deliver(data)
            except TelemetryDeliveryFailed as e:
                logger.warning(f"{e}, event dropped")
            return

        if not self.buffer.is_empty:
            self.buffer.save(data)
            self._drain()
            return

        try:
            self._deliver(data)
        except TelemetryDeliveryFailed as e:
            logger.warning(f"{e}, saving to buffer")
            self.buffer.save(data)

    def _drain(self):
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Sending buffered events already in progress")
            return
        try:
            while True:
                item = self.buffer.oldest()
                if item is None:
                    break
                try:
                    self._deliver(item.data)
                except TelemetryDeliveryFailed as e:
                    logger.warning(f"Failed to send buffered events: {e}")
                    if self.buffer.record_failure(item.id):
                        logger.warning(f"Discarding event {item.id} after "
                                       f"{self.buffer.max_tries} tries")
                    break
                self.buffer.remove(item.id)
        finally:
            self._drain_lock.release()

    def flush(self) -> Future:
        """Try to deliver everything buffered, oldest first"""
        return self._executor.submit(self._drain)

    def shutdown(self):
        self._executor.shutdown(wait=True)
