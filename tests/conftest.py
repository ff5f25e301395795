"""Shared fakes and fixtures for the session core tests."""

import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import replace

import pytest

from vpn_session.core.alerts import AlertService
from vpn_session.core.config_manager import ConfigManager
from vpn_session.core.errors import (
    ConnectionCancelledError, RemoteUnavailableError,
)
from vpn_session.core.probes import ProbeSet
from vpn_session.core.session import VpnSession
from vpn_session.core.storage import (
    AuthenticationStorage, MemoryCredentialStore, MemoryServerDirectory,
)
from vpn_session.core.telemetry import TelemetryBuffer
from vpn_session.core.types import (
    AuthCredentials, ClientConfig, Credentials, ProtocolAvailability,
    ServerCandidate, UserLocation, VpnCredentials, VpnProtocol, VpnTiers,
)
from vpn_session.providers.tunnel_agent import (
    AgentState, TunnelAgent, TunnelEvent,
)
from vpn_session.utils.timers import TimerFactory


class ImmediateExecutor(Executor):
    """Runs submitted work inline on the calling thread"""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Queues submitted work until the test runs it"""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self):
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)


class ManualTimer:
    def __init__(self, interval, function, repeats=True, name=None):
        self.interval = interval
        self.function = function
        self.repeats = repeats
        self.name = name
        self.cancelled = False
        self.fired = 0

    def fire(self):
        if self.cancelled:
            return
        self.fired += 1
        self.function()
        if not self.repeats:
            self.cancelled = True

    def cancel(self):
        self.cancelled = True

    @property
    def is_valid(self):
        return not self.cancelled


class ManualTimerFactory(TimerFactory):
    """Hands out timers that only fire when the test says so"""

    def __init__(self):
        self.timers = []

    def schedule(self, interval, function, repeats=True, name=None):
        timer = ManualTimer(interval, function, repeats, name)
        self.timers.append(timer)
        return timer

    def active(self, name):
        return [t for t in self.timers if t.name == name and t.is_valid]


class FakeTunnelAgent(TunnelAgent):
    """
    Records commands. With auto set, start and stop answer synchronously
    the way a well behaved agent would.
    """

    def __init__(self, auto=True):
        super().__init__()
        self.auto = auto
        self.started = []
        self.stopped = []
        self.restarted = []

    def start(self, command):
        self.started.append(command)
        if self.auto:
            self.emit(TunnelEvent(command.session_id, AgentState.CONNECTING))
            self.emit(TunnelEvent(command.session_id, AgentState.CONNECTED))

    def stop(self, session_id):
        self.stopped.append(session_id)
        if self.auto:
            self.emit(TunnelEvent(session_id, AgentState.DISCONNECTED))

    def restart_session(self, session_id, keys, certificate):
        self.restarted.append((session_id, keys, certificate))

    def report_state(self, session_id, state):
        self.emit(TunnelEvent(session_id, state=state))

    def report_error(self, session_id, code):
        self.emit(TunnelEvent(session_id, error_code=int(code)))


class FakeApi:
    """In-memory stand-in for VpnApiClient"""

    def __init__(self, servers=None, vpn=None):
        self.servers = list(servers or [])
        self.vpn = vpn
        self.loads = {}
        self.server_status = {}
        self.unavailable = False
        self.error = None
        self.location_result = UserLocation('203.0.113.7', 'CH', 'Example ISP')
        self.client_config_result = ClientConfig()

        self.certificate_calls = 0
        self.certificate_failures = 0
        self.certificate_always_fails = False
        self.certificate_gate = None
        self.certificate_keys = []

        self.telemetry = []
        self.telemetry_failing = False

        self.server_list_calls = []
        self.server_state_calls = []
        self.server_loads_calls = 0
        self.vpn_credentials_calls = 0
        self._lock = threading.Lock()

    def _check(self):
        if self.unavailable:
            raise RemoteUnavailableError("API offline")
        if self.error is not None:
            raise self.error

    def server_list(self, free_tier=False):
        self._check()
        self.server_list_calls.append(free_tier)
        if free_tier:
            return [s for s in self.servers if s.is_free]
        return list(self.servers)

    def server_loads(self):
        self._check()
        self.server_loads_calls += 1
        return dict(self.loads)

    def server_state(self, server_id):
        self._check()
        self.server_state_calls.append(server_id)
        return self.server_status.get(server_id, 1)

    def vpn_credentials(self):
        self._check()
        self.vpn_credentials_calls += 1
        return self.vpn

    def streaming_services(self):
        self._check()
        return {'resource_base_url': None, 'services': {'CH': ['Example']}}

    def client_config(self):
        self._check()
        return self.client_config_result

    def location(self):
        self._check()
        return self.location_result

    def request_certificate(self, public_key_pem, features=None,
                            duration='1440 min'):
        with self._lock:
            self.certificate_calls += 1
            self.certificate_keys.append(public_key_pem)
        if self.certificate_gate is not None:
            self.certificate_gate.wait(5)
        if self.certificate_always_fails:
            raise RemoteUnavailableError("Issuer offline")
        with self._lock:
            if self.certificate_failures > 0:
                self.certificate_failures -= 1
                raise RemoteUnavailableError("Issuer busy")
        now = time.time()
        return {
            'Certificate': '-----BEGIN CERTIFICATE-----\nMIIB\n'
                           '-----END CERTIFICATE-----\n',
            'ExpirationTime': now + 86400,
            'RefreshTime': now + 43200,
        }

    def send_telemetry_event(self, event):
        if self.telemetry_failing:
            raise RemoteUnavailableError("Telemetry offline")
        self.telemetry.append(event)


class FakeProbeSet(ProbeSet):
    """Returns canned availability without touching the network"""

    def __init__(self, results=None):
        super().__init__([])
        self.results = dict(results or {})
        self.calls = []

    def run(self, server, protocols=None, cancel_event=None):
        self.calls.append(server.id)
        if cancel_event is not None and cancel_event.is_set():
            raise ConnectionCancelledError(f"Probing {server.name} cancelled")
        return {
            protocol: self.results.get(
                protocol, ProtocolAvailability.unavailable()
            )
            for protocol in VpnProtocol
        }


def make_server(server_id, name, country='CH', tier=VpnTiers.FREE, load=10,
                status=1, city=None, features=()):
    return ServerCandidate(
        id=server_id,
        name=name,
        country_code=country,
        entry_ip=f'198.51.100.{server_id}',
        exit_ip=f'203.0.113.{server_id}',
        domain=f"{name.replace('#', '-').lower()}.example.net",
        city=city,
        tier=tier,
        status=status,
        load=load,
        features=tuple(features),
    )


SERVERS = [
    make_server('1', 'CH#1', 'CH', VpnTiers.FREE, 40, city='Zurich'),
    make_server('2', 'CH#2', 'CH', VpnTiers.PLUS, 10, city='Zurich'),
    make_server('3', 'CH#3', 'CH', VpnTiers.PLUS, 30, city='Geneva',
                features=('streaming',)),
    make_server('4', 'DE#1', 'DE', VpnTiers.FREE, 20),
    make_server('5', 'DE#2', 'DE', VpnTiers.PLUS, 5, status=0),
    make_server('6', 'SE#1', 'SE', VpnTiers.PLUS, 15, features=('p2p',)),
]

PLUS_VPN = VpnCredentials(
    account_plan='vpnplus', max_tier=VpnTiers.PLUS, max_connect=10,
    name='vpnuser', password='vpnpass',
)
FREE_VPN = VpnCredentials(
    account_plan='free', max_tier=VpnTiers.FREE, name='vpnuser',
    password='vpnpass',
)
AUTH = AuthCredentials(uid='uid-1', access_token='access', username='user')


def credentials(vpn=PLUS_VPN):
    return Credentials(auth=AUTH, vpn=vpn)


class SessionHarness:
    """A VpnSession wired to fakes, plus recorders for what it publishes"""

    def __init__(self, config_dir, vpn=PLUS_VPN, auto=True, executor=None,
                 probe_results=None):
        self.config = ConfigManager(config_dir)
        self.config.set('certificate.backoff_base', 0.01)
        self.agent = FakeTunnelAgent(auto=auto)
        self.api = FakeApi(SERVERS, vpn)
        self.credential_store = MemoryCredentialStore(
            credentials(vpn) if vpn is not None else None
        )
        self.server_directory = MemoryServerDirectory(SERVERS)
        self.alerts = AlertService()
        self.timers = ManualTimerFactory()
        self.probe_set = FakeProbeSet(probe_results or {
            VpnProtocol.WIREGUARD: ProtocolAvailability.available([51820]),
        })
        self.executor = executor or ImmediateExecutor()
        self.session = VpnSession(
            self.config, self.agent,
            api=self.api,
            credential_store=self.credential_store,
            server_directory=self.server_directory,
            auth_storage=AuthenticationStorage(),
            alert_service=self.alerts,
            timer_factory=self.timers,
            probe_set=self.probe_set,
            telemetry_buffer=TelemetryBuffer(),
            executor=self.executor,
            telemetry_executor=ImmediateExecutor(),
        )
        self.machine = self.session.state_machine

        self.changes = []
        self.tunnel = []
        self.reconnects = []
        self.active = []
        self.machine.subscribe_state(self.changes.append)
        self.machine.subscribe_tunnel_status(self.tunnel.append)
        self.machine.subscribe_reconnect(self.reconnects.append)
        self.machine.subscribe_active_connection(self.active.append)

    @property
    def state(self):
        return self.machine.current_state()

    def kinds(self):
        return [change.current.kind for change in self.changes]

    def set_vpn(self, vpn):
        """Change what the account endpoint reports"""
        self.api.vpn = vpn

    def mark_maintenance(self, server_id):
        self.api.server_status[server_id] = 0
        self.api.servers = [
            replace(s, status=0) if s.id == server_id else s
            for s in self.api.servers
        ]


@pytest.fixture
def api():
    return FakeApi(SERVERS, PLUS_VPN)


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def credential_store():
    return MemoryCredentialStore(credentials(PLUS_VPN))


@pytest.fixture
def server_directory():
    return MemoryServerDirectory(SERVERS)


@pytest.fixture
def harness(tmp_path):
    harness = SessionHarness(tmp_path)
    yield harness
    harness.session.stop()


@pytest.fixture
def make_harness(tmp_path):
    created = []

    def factory(**kwargs):
        harness = SessionHarness(tmp_path / f"h{len(created)}", **kwargs)
        created.append(harness)
        return harness

    yield factory
    for harness in created:
        harness.session.stop()
