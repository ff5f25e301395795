"""
Connection state machine: the authoritative lifecycle of the VPN session
"""

import threading
import time
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ..providers.tunnel_agent import (
    AgentState, TunnelAgent, TunnelEvent, TunnelStartCommand,
)
from .alerts import (
    AlertSink, CertificateRefreshErrorAlert, CredentialsMissingAlert,
    MaintenanceAlert, MaxSessionsAlert, PolicyViolationAlert,
    UserBecameDelinquentAlert, UserPlanDowngradedAlert,
)
from .authenticator import (
    CertificateAuthenticator, ErrorAction, MAX_SESSIONS_CODES,
)
from .errors import (
    ConnectionCancelledError, CredentialsMissingError, CredentialStoreError,
    VPNConnectionError, VPNSessionError,
)
from .negotiator import ProtocolNegotiator
from .server_selector import ServerSelector
from .storage import CredentialStore
from .types import (
    AuthenticationKeys, Certificate, Connected, Connecting, ConnectionRequest,
    ConnectionState, ConnectionTarget, Disconnected, Disconnecting,
    ReconnectInfo, ServerCandidate, StateChange, StateKind, UserAction,
    VpnCredentials, VpnProtocol, VpnTiers, VpnTrigger,
)
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

StateObserver = Callable[[StateChange], None]
TunnelStatusObserver = Callable[[StateKind], None]
ReconnectObserver = Callable[[ReconnectInfo], None]
ActiveConnectionObserver = Callable[[Optional[Connected]], None]


@dataclass(frozen=True)
class AttemptStarted:
    """Result of a connect future: the tunnel agent has been started"""
    attempt_id: int
    server: ServerCandidate
    protocol: VpnProtocol
    ports: Tuple[int, ...]


@dataclass
class _Session:
    attempt_id: int
    request: ConnectionRequest
    server: ServerCandidate
    protocol: VpnProtocol
    ports: Tuple[int, ...]
    keys: AuthenticationKeys = field(repr=False)
    certificate: Certificate = field(repr=False)
    vpn: VpnCredentials = field(repr=False)

    def start_command(self) -> TunnelStartCommand:
        return TunnelStartCommand(
            session_id=self.attempt_id,
            protocol=self.protocol,
            server=self.server,
            ports=self.ports,
            features=self.request.features.to_agent_features(),
            keys=self.keys,
            certificate=self.certificate,
            username=self.vpn.name,
            password=self.vpn.password,
        )


class ConnectionStateMachine:
    """
    Serializes every state write under one lock. Observer notifications and
    tunnel agent commands are queued while the lock is held and run after
    it is released, in transition order.
    """

    def __init__(self, agent: TunnelAgent, negotiator: ProtocolNegotiator,
                 authenticator: CertificateAuthenticator,
                 selector: ServerSelector, credential_store: CredentialStore,
                 alert_sink: AlertSink,
                 default_ports: Optional[Dict[VpnProtocol, List[int]]] = None,
                 executor: Optional[Executor] = None,
                 clock: Callable[[], float] = time.time):
        self.agent = agent
        self.negotiator = negotiator
        self.authenticator = authenticator
        self.selector = selector
        self.credential_store = credential_store
        self.alert_sink = alert_sink
        self.default_ports = default_ports or {}
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="VPN-Session"
        )

        self._lock = threading.RLock()
        self._state: ConnectionState = Disconnected()
        self._tunnel_status = StateKind.DISCONNECTED
        self._attempt_id = 0
        self._cancel = threading.Event()
        self._session: Optional[_Session] = None
        self._agent_started: Optional[int] = None
        self._retiring: Optional[int] = None
        self._rekeying = False
        self._refreshing = False

        self._outbox: Deque[Callable[[], None]] = deque()
        self._draining = False

        self._state_observers: List[StateObserver] = []
        self._tunnel_observers: List[TunnelStatusObserver] = []
        self._reconnect_observers: List[ReconnectObserver] = []
        self._active_observers: List[ActiveConnectionObserver] = []

        agent.subscribe(self._on_agent_event)

    # Subscriptions

    def _subscribe(self, observers: list, observer) -> Callable[[], None]:
        with self._lock:
            observers.append(observer)

        def unsubscribe():
            with self._lock:
                if observer in observers:
                    observers.remove(observer)
        return unsubscribe

    def subscribe_state(self, observer: StateObserver):
        """User visible state changes"""
        return self._subscribe(self._state_observers, observer)

    def subscribe_tunnel_status(self, observer: TunnelStatusObserver):
        """Raw tunnel status, including the cycle of a low-level reconnect"""
        return self._subscribe(self._tunnel_observers, observer)

    def subscribe_reconnect(self, observer: ReconnectObserver):
        return self._subscribe(self._reconnect_observers, observer)

    def subscribe_active_connection(self, observer: ActiveConnectionObserver):
        return self._subscribe(self._active_observers, observer)

    def current_state(self) -> ConnectionState:
        with self._lock:
            return self._state

    # Outbox

    def _post(self, function: Callable, *args):
        self._outbox.append(lambda: function(*args))

    def _notify(self, observers: list, value):
        for observer in list(observers):
            self._post(self._call_observer, observer, value)

    @staticmethod
    def _call_observer(observer, value):
        try:
            observer(value)
        except Exception as e:
            logger.error(f"Observer error: {e}", exc_info=True)

    def _flush(self):
        """Run queued work unless some thread is already draining"""
        with self._lock:
            if self._draining:
                return
            self._draining = True
        while True:
            with self._lock:
                if not self._outbox:
                    self._draining = False
                    return
                work = self._outbox.popleft()
            try:
                work()
            except Exception as e:
                logger.error(f"Deferred session work failed: {e}", exc_info=True)

    # Transitions, lock held

    def _next_attempt(self) -> threading.Event:
        self._cancel.set()
        self._cancel = threading.Event()
        self._attempt_id += 1
        return self._cancel

    def _set_tunnel_status(self, kind: StateKind):
        if kind == self._tunnel_status:
            return
        self._tunnel_status = kind
        self._notify(self._tunnel_observers, kind)

    def _set_state(self, new: ConnectionState,
                   user_action: Optional[UserAction] = None,
                   trigger: Optional[VpnTrigger] = None,
                   tunnel: bool = True):
        if tunnel:
            self._set_tunnel_status(new.kind)
        if new == self._state:
            return
        previous, self._state = self._state, new
        logger.debug(f"State change: {previous.kind.name} -> {new.kind.name} "
                     f"(attempt {new.attempt_id})")
        self._notify(self._state_observers,
                     StateChange(previous, new, user_action, trigger))

        if new.kind == StateKind.CONNECTED:
            self._enter_connected(new)
        elif new.kind == StateKind.DISCONNECTED:
            self._enter_disconnected()

    def _enter_connected(self, state: Connected):
        session = self._session
        if session is not None:
            self._post(self.authenticator.schedule_refresh, session.certificate,
                       self._certificate_refresh_callback(state.attempt_id))
        self._notify(self._active_observers, state)

    def _enter_disconnected(self):
        self._cancel.set()
        self._session = None
        self._agent_started = None
        self._retiring = None
        self._rekeying = False
        self._refreshing = False
        self._post(self.authenticator.clear_session)
        self._notify(self._active_observers, None)

    def _disconnect_locked(self, force: bool,
                           user_action: Optional[UserAction] = None,
                           trigger: Optional[VpnTrigger] = None):
        state = self._state
        if state.is_disconnected:
            return
        if state.kind == StateKind.DISCONNECTING and not force:
            return

        attempt = state.attempt_id
        self._cancel.set()
        started = self._agent_started
        if started is not None:
            self._post(self.agent.stop, started)

        # Only a session the agent knows about gets a confirmation
        if force or started != attempt:
            self._set_state(Disconnected(attempt), user_action, trigger)
        else:
            self._set_state(Disconnecting(attempt), user_action, trigger)

    # Commands

    def connect(self, request: ConnectionRequest) -> Future:
        """
        Start a connection attempt, superseding any previous one

        Returns:
            Future resolving to AttemptStarted once the tunnel agent was
            started, or failing with a VPNConnectionError
        """
        future: Future = Future()
        try:
            vpn = self.credential_store.fetch_vpn()
            server = self.selector.resolve(request.target, vpn.max_tier)
        except VPNConnectionError as e:
            logger.warning(f"Connect rejected: {e}")
            future.set_exception(e)
            return future
        except (CredentialsMissingError, CredentialStoreError) as e:
            future.set_exception(self._connection_failure(e))
            return future

        self._start_attempt(request, server, UserAction.CONNECT, future)
        return future

    def _start_attempt(self, request: ConnectionRequest,
                       server: ServerCandidate,
                       user_action: Optional[UserAction],
                       future: Future):
        with self._lock:
            previous = self._state
            previous_started = self._agent_started
            token = self._next_attempt()
            attempt = self._attempt_id
            if previous.is_active and previous_started is not None:
                self._post(self.agent.stop, previous_started)
            self._agent_started = None
            self._retiring = None
            self._session = None
            self._rekeying = False
            self._refreshing = False
            logger.info(f"Connecting to {server.name} ({server.entry_ip}), "
                        f"attempt {attempt}")
            self._set_state(
                Connecting(request, server, request.protocol, attempt),
                user_action, request.trigger
            )
        self._flush()
        if previous.is_active:
            self.authenticator.clear_session()
        self._executor.submit(
            self._run_attempt, attempt, request, server, token, future
        )

    def _run_attempt(self, attempt: int, request: ConnectionRequest,
                     server: ServerCandidate, token: threading.Event,
                     future: Future):
        try:
            if request.is_auto_protocol:
                result = self.negotiator.negotiate(server, token)
                protocol, ports = result.protocol, result.ports
            else:
                protocol = request.protocol
                ports = tuple(server.ports_for(protocol, self.default_ports))
            if token.is_set():
                raise ConnectionCancelledError(f"Attempt {attempt} superseded")

            keys, certificate = self.authenticator.ensure_credentials(
                request.features.to_agent_features()
            )
            vpn = self.credential_store.fetch_vpn()
        except ConnectionCancelledError as e:
            logger.debug(f"Attempt {attempt} cancelled")
            future.set_exception(e)
            return
        except VPNSessionError as e:
            logger.error(f"Connection attempt {attempt} failed: {e}")
            with self._lock:
                if self._attempt_id == attempt and self._state.is_active:
                    self._set_state(Disconnected(attempt))
            self._flush()
            future.set_exception(self._connection_failure(e))
            return

        with self._lock:
            if self._attempt_id != attempt or token.is_set():
                superseded = True
            else:
                superseded = False
                self._session = _Session(
                    attempt, request, server, protocol, tuple(ports),
                    keys, certificate, vpn
                )
                self._agent_started = attempt
                self._post(self.agent.start, self._session.start_command())
        if superseded:
            future.set_exception(
                ConnectionCancelledError(f"Attempt {attempt} superseded")
            )
            return

        self._flush()
        future.set_result(AttemptStarted(attempt, server, protocol, tuple(ports)))

    def _connection_failure(self, error: VPNSessionError) -> VPNConnectionError:
        if isinstance(error, CredentialsMissingError):
            self.alert_sink.push(CredentialsMissingAlert())
        if isinstance(error, VPNConnectionError):
            return error
        failure = VPNConnectionError(
            f"Connection failed: {error.message}",
            {'cause': type(error).__name__}
        )
        failure.__cause__ = error
        return failure

    def disconnect(self, force: bool = False,
                   trigger: Optional[VpnTrigger] = None):
        """
        User initiated disconnect. Without force the state waits in
        disconnecting until the agent confirms.
        """
        with self._lock:
            action = (
                UserAction.ABORT
                if self._state.kind == StateKind.CONNECTING
                else UserAction.DISCONNECT
            )
            self._disconnect_locked(force, action, trigger)
        self._flush()

    def update_features(self, request: ConnectionRequest):
        """Apply new feature flags to the live session without reconnecting"""
        with self._lock:
            session = self._session
            if session is None or not self._state.is_connected:
                return
            session.request = replace(
                session.request, features=request.features
            )
            attempt = session.attempt_id
            if self._refreshing:
                return
            self._refreshing = True
        self._executor.submit(self._refresh_and_restart, attempt)

    # Tunnel agent events

    def _on_agent_event(self, event: TunnelEvent):
        with self._lock:
            if event.is_error:
                self._handle_agent_error(event)
            else:
                self._handle_agent_state(event)
        self._flush()

    def _handle_agent_state(self, event: TunnelEvent):
        if event.session_id == self._retiring:
            if event.state == AgentState.DISCONNECTED:
                self._set_tunnel_status(StateKind.DISCONNECTED)
            return
        if event.session_id != self._attempt_id:
            logger.debug(f"Discarding stale agent event {event}")
            return

        state = self._state
        if event.state == AgentState.CONNECTED:
            if state.kind == StateKind.CONNECTING and self._session is not None:
                session = self._session
                self._set_state(Connected(
                    session.request, session.server, session.protocol,
                    session.ports, self.clock(), session.attempt_id
                ))
                logger.info(f"Connected to {session.server.name} over "
                            f"{session.protocol.value}")
        elif event.state == AgentState.CONNECTING:
            if state.kind == StateKind.CONNECTING:
                self._set_tunnel_status(StateKind.CONNECTING)
        elif event.state == AgentState.DISCONNECTED:
            if state.kind == StateKind.DISCONNECTING:
                self._set_state(Disconnected(state.attempt_id))
            elif state.is_active and self._agent_started == event.session_id:
                logger.warning("Tunnel dropped")
                self._set_state(Disconnected(state.attempt_id))

    def _handle_agent_error(self, event: TunnelEvent):
        if event.session_id != self._attempt_id or not self._state.is_active:
            logger.debug(f"Discarding stale agent error {event}")
            return

        error = event.error
        code = error.code
        action = self.authenticator.handle_agent_error(error)
        if action == ErrorAction.REKEY_AND_RECONNECT:
            if self._session is not None and not self._rekeying:
                self._rekeying = True
                self._post(self._executor.submit, self._rekey_and_reconnect,
                           event.session_id)
        elif action == ErrorAction.REFRESH_AND_RESTART:
            if not self._refreshing and not self._rekeying:
                self._refreshing = True
                self._post(self._executor.submit, self._refresh_and_restart,
                           event.session_id)
        elif action == ErrorAction.TERMINATE:
            if code in MAX_SESSIONS_CODES:
                self._post(self.alert_sink.push, MaxSessionsAlert())
            else:
                self._post(self.alert_sink.push, PolicyViolationAlert())
            self._disconnect_locked(force=True)

    def _rekey_and_reconnect(self, attempt: int):
        with self._lock:
            session = self._session
            if (session is None or self._attempt_id != attempt
                    or not self._state.is_active):
                self._rekeying = False
                return
            token = self._next_attempt()
            new_attempt = self._attempt_id
            self._retiring = attempt
            self._set_tunnel_status(StateKind.DISCONNECTING)
            self._set_state(
                Connecting(session.request, session.server, session.protocol,
                           new_attempt),
                tunnel=False
            )
            self._post(self.agent.stop, attempt)
            features = session.request.features.to_agent_features()
        self._flush()

        try:
            keys, certificate = self.authenticator.rekey(features).result()
        except ConnectionCancelledError:
            return
        except VPNSessionError as e:
            logger.error(f"Rekey failed: {e}")
            with self._lock:
                if self._attempt_id == new_attempt:
                    self._post(self.alert_sink.push,
                               CertificateRefreshErrorAlert())
                    self._disconnect_locked(force=True)
            self._flush()
            return

        with self._lock:
            if self._attempt_id != new_attempt or token.is_set():
                return
            self._retiring = None
            self._rekeying = False
            self._set_tunnel_status(StateKind.DISCONNECTED)
            self._set_tunnel_status(StateKind.CONNECTING)
            self._session = replace(
                session, attempt_id=new_attempt,
                keys=keys, certificate=certificate
            )
            self._agent_started = new_attempt
            self._post(self.agent.start, self._session.start_command())
        self._flush()

    def _refresh_and_restart(self, attempt: int):
        with self._lock:
            session = self._session
            features = (
                session.request.features.to_agent_features()
                if session is not None else None
            )
        try:
            keys, certificate = self.authenticator.refresh(
                force=True, features=features
            ).result()
        except ConnectionCancelledError:
            return
        except VPNSessionError as e:
            logger.error(f"Certificate refresh failed: {e}")
            with self._lock:
                self._refreshing = False
                if self._attempt_id == attempt and self._state.is_active:
                    self._post(self.alert_sink.push,
                               CertificateRefreshErrorAlert())
                    self._disconnect_locked(force=True)
            self._flush()
            return

        with self._lock:
            self._refreshing = False
            session = self._session
            if (session is None or self._attempt_id != attempt
                    or not self._state.is_active):
                return
            session.keys = keys
            session.certificate = certificate
            self._post(self.agent.restart_session, attempt, keys, certificate)
            if self._state.is_connected:
                self._post(self.authenticator.schedule_refresh, certificate,
                           self._certificate_refresh_callback(attempt))
        self._flush()

    def _certificate_refresh_callback(self, attempt: int):
        def on_refreshed(future: Future):
            try:
                keys, certificate = future.result()
            except ConnectionCancelledError:
                return
            except VPNSessionError as e:
                logger.error(f"Scheduled certificate refresh failed: {e}")
                with self._lock:
                    if self._attempt_id == attempt and self._state.is_active:
                        self._post(self.alert_sink.push,
                                   CertificateRefreshErrorAlert())
                        self._disconnect_locked(force=True)
                self._flush()
                return

            with self._lock:
                session = self._session
                if (session is None or self._attempt_id != attempt
                        or not self._state.is_connected):
                    return
                session.keys = keys
                session.certificate = certificate
                self._post(self.agent.restart_session, attempt, keys,
                           certificate)
                self._post(self.authenticator.schedule_refresh, certificate,
                           self._certificate_refresh_callback(attempt))
            self._flush()
        return on_refreshed

    # Asynchronous updates

    def _max_tier(self) -> int:
        try:
            return self.credential_store.fetch_vpn().max_tier
        except (CredentialsMissingError, CredentialStoreError) as e:
            logger.warning(f"Could not read account tier: {e}")
            return VpnTiers.FREE

    def handle_plan_changed(self, old: Optional[VpnCredentials],
                            new: VpnCredentials):
        """Move off a server the account can no longer use"""
        state = self.current_state()
        if not state.is_connected:
            return
        if new.is_delinquent:
            logger.info("Account became delinquent while connected")
            self._reconnect_elsewhere(state, VpnTiers.FREE,
                                      UserBecameDelinquentAlert)
        elif state.server.tier > new.max_tier:
            logger.info(f"Plan downgraded to tier {new.max_tier} while "
                        f"connected to a tier {state.server.tier} server")
            self._reconnect_elsewhere(state, new.max_tier,
                                      UserPlanDowngradedAlert)

    def handle_user_delinquent(self, vpn: VpnCredentials):
        self.handle_plan_changed(None, vpn)

    def handle_server_maintenance(self):
        """The active server went into maintenance"""
        state = self.current_state()
        if not state.is_active:
            return
        logger.info(f"{state.server.name} is under maintenance")
        self._reconnect_elsewhere(state, self._max_tier(), MaintenanceAlert)

    def _reconnect_elsewhere(self, state, max_tier: int, alert_class):
        replacement = self.selector.find_replacement(state.server, max_tier)

        with self._lock:
            if self._state is not state:
                return
            self._disconnect_locked(force=True)
        self._flush()

        if replacement is None:
            logger.warning("No accessible server to reconnect to")
            self.alert_sink.push(alert_class())
            return

        request = replace(
            state.request,
            target=ConnectionTarget.for_server(replacement.id)
        )
        info = ReconnectInfo(from_server=state.server, to_server=replacement)
        logger.info(f"Reconnecting from {state.server.name} to "
                    f"{replacement.name}")
        self._start_attempt(request, replacement, None, Future())
        self.alert_sink.push(alert_class(reconnect_info=info))
        with self._lock:
            self._notify(self._reconnect_observers, info)
        self._flush()

    def shutdown(self):
        self._executor.shutdown(wait=False)
