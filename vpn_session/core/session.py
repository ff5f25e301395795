"""
Composition root wiring the session components together
"""

from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Optional

from ..providers.api_client import VpnApiClient
from ..providers.tunnel_agent import TunnelAgent
from .alerts import AlertService
from .authenticator import CertificateAuthenticator
from .config_manager import ConfigManager
from .maintenance import MaintenancePoller
from .negotiator import ProtocolNegotiator
from .probes import ProbeSet
from .refresher import (
    RefreshDelegate, SessionProperties, SessionRefresher, SessionRefreshTimer,
)
from .server_selector import ServerSelector
from .state_machine import ConnectionStateMachine
from .storage import (
    AuthenticationStorage, CredentialStore, FileCredentialStore,
    FileServerDirectory, ServerDirectory,
)
from .telemetry import TelemetryBuffer, TelemetryService
from .types import (
    ClientConfig, ConnectionRequest, StateChange, StateKind, VpnTrigger,
)
from ..utils.logging_setup import get_logger
from ..utils.timers import TimerFactory

logger = get_logger(__name__)


class VpnSession:
    """Builds every component with explicit collaborators"""

    def __init__(self, config: ConfigManager, agent: TunnelAgent,
                 api=None,
                 credential_store: Optional[CredentialStore] = None,
                 server_directory: Optional[ServerDirectory] = None,
                 auth_storage: Optional[AuthenticationStorage] = None,
                 alert_service: Optional[AlertService] = None,
                 timer_factory: Optional[TimerFactory] = None,
                 probe_set: Optional[ProbeSet] = None,
                 telemetry_buffer: Optional[TelemetryBuffer] = None,
                 refresh_delegate: Optional[RefreshDelegate] = None,
                 executor: Optional[Executor] = None,
                 telemetry_executor: Optional[Executor] = None):
        self.config = config
        self.timer_factory = timer_factory or TimerFactory()
        self.credential_store = credential_store or FileCredentialStore(
            Path(config.get('storage.credentials_file'))
        )
        self.server_directory = server_directory or FileServerDirectory(
            Path(config.get('storage.servers_file'))
        )
        self.auth_storage = auth_storage or AuthenticationStorage(
            Path(config.get('storage.authentication_file'))
        )
        self.alerts = alert_service or AlertService()
        self.api = api or VpnApiClient(
            config.get('api.base_url'),
            self.credential_store,
            timeout=config.get('api.timeout', 30),
            app_version=config.get('api.app_version'),
        )

        self.properties = SessionProperties()
        self.selector = ServerSelector(self.server_directory, self.alerts)
        self.probe_set = probe_set or ProbeSet.from_config(config)
        self.negotiator = ProtocolNegotiator(
            self.probe_set,
            fallback_protocol=config.fallback_protocol(),
            fallback_port=int(config.get('fallback.port', 51820)),
        )
        self.authenticator = CertificateAuthenticator.from_config(
            self.api, self.auth_storage, config, self.timer_factory
        )
        self.state_machine = ConnectionStateMachine(
            agent, self.negotiator, self.authenticator, self.selector,
            self.credential_store, self.alerts,
            default_ports=config.protocol_ports(),
            executor=executor,
        )
        self.refresher = SessionRefresher(
            self.api, self.credential_store, self.server_directory,
            self.properties
        )
        self.refresh_timer = SessionRefreshTimer(
            self.refresher, config.refresh_intervals(), self.timer_factory,
            refresh_delegate
        )
        self.maintenance = MaintenancePoller(
            self.api, self.state_machine.current_state,
            self.server_directory, self.credential_store, self.timer_factory
        )
        self.telemetry = TelemetryService(
            self.api, self.credential_store,
            telemetry_buffer or TelemetryBuffer(
                config.get('telemetry.queue_path'),
                max_tries=int(config.get('telemetry.max_tries', 10)),
            ),
            properties=self.properties,
            enabled=bool(config.get('telemetry.enabled', True)),
            use_buffer=bool(config.get('telemetry.use_buffer', True)),
            executor=telemetry_executor,
        )

        self.state_machine.subscribe_state(self.telemetry.state_changed)
        self.state_machine.subscribe_state(self._on_state_change)
        self.refresher.register_callback(
            'plan_changed', self.state_machine.handle_plan_changed
        )
        self.refresher.register_callback(
            'user_delinquent', self.state_machine.handle_user_delinquent
        )
        self.refresher.register_callback(
            'client_config_updated', self._on_client_config_updated
        )

    def _on_state_change(self, change: StateChange):
        if change.current.kind == StateKind.CONNECTED:
            self.maintenance.observe(
                self.properties.maintenance_interval(
                    float(self.config.get('maintenance.interval', 600))
                ),
                repeats=True,
                on_result=self._on_maintenance_result,
                on_error=self._on_maintenance_error,
            )
        elif change.current.kind == StateKind.DISCONNECTED:
            self.maintenance.stop_observing()

    def _on_client_config_updated(self, client_config: ClientConfig):
        ports = self.properties.default_ports(self.config.protocol_ports())
        self.probe_set.update_ports(ports)
        self.state_machine.default_ports = ports
        logger.debug("Default ports updated from client config")

    def _on_maintenance_result(self, under_maintenance: bool):
        if under_maintenance:
            self.state_machine.handle_server_maintenance()

    def _on_maintenance_error(self, error: Exception):
        logger.debug(f"Maintenance check skipped: {error}")

    def start(self, refresh_now: bool = False):
        """Start the periodic refresh timers"""
        if refresh_now:
            self.refresher.refresh_data()
        self.refresh_timer.start_timers()

    def stop(self):
        self.refresh_timer.stop_timers()
        self.maintenance.stop_observing()
        self.state_machine.disconnect(force=True)
        self.state_machine.shutdown()
        self.telemetry.shutdown()

    def connect(self, request: Optional[ConnectionRequest] = None) -> Future:
        return self.state_machine.connect(request or ConnectionRequest())

    def disconnect(self, force: bool = False,
                   trigger: Optional[VpnTrigger] = None):
        self.state_machine.disconnect(force=force, trigger=trigger)

    def current_state(self):
        return self.state_machine.current_state()

    def logout(self):
        """End the session and forget every credential"""
        self.state_machine.disconnect(force=True)
        self.refresh_timer.stop_timers()
        self.maintenance.stop_observing()
        self.authenticator.clear_everything()
        self.credential_store.clear()
        logger.info("Logged out")
