"""
Periodic refresh of account, server and client configuration data
"""

import threading
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    ApiError, CredentialsMissingError, CredentialStoreError,
    RemoteUnavailableError,
)
from .storage import CredentialStore, ServerDirectory
from .types import ClientConfig, UserLocation, VpnCredentials, VpnProtocol
from ..utils.timers import BackgroundTimer, TimerFactory

logger = logging.getLogger(__name__)

# Errors that skip one refresh cycle
SKIPPABLE_ERRORS = (
    RemoteUnavailableError, ApiError, CredentialsMissingError,
    CredentialStoreError,
)


@dataclass
class SessionProperties:
    """What the refresher learned from the API. Written by the refresher only."""
    user_location: Optional[UserLocation] = None
    client_config: Optional[ClientConfig] = None
    streaming_services: Dict[str, Any] = field(default_factory=dict)

    def default_ports(self, fallback: Dict[VpnProtocol, List[int]]
                      ) -> Dict[VpnProtocol, List[int]]:
        """Ports served in the client config, the fallback where none were"""
        ports = {protocol: list(values) for protocol, values in fallback.items()}
        if self.client_config is not None:
            ports.update({
                protocol: list(values)
                for protocol, values in self.client_config.default_ports.items()
                if values
            })
        return ports

    def maintenance_interval(self, fallback: float) -> float:
        if self.client_config is None:
            return fallback
        return float(self.client_config.server_refresh_interval)


class SessionRefresher:
    """Fetches session data. Every refresh is idempotent."""

    EVENTS = ('plan_changed', 'user_delinquent', 'credentials_changed',
              'servers_updated', 'client_config_updated')

    def __init__(self, api, credential_store: CredentialStore,
                 server_directory: ServerDirectory,
                 properties: Optional[SessionProperties] = None):
        self.api = api
        self.credential_store = credential_store
        self.server_directory = server_directory
        self.properties = properties or SessionProperties()
        self._callbacks: Dict[str, List[Callable]] = {
            event: [] for event in self.EVENTS
        }

    def register_callback(self, event: str, callback: Callable):
        """Register event callback"""
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def _notify_callbacks(self, event: str, *args):
        for callback in self._callbacks.get(event, []):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def _is_free_tier(self) -> bool:
        try:
            return self.credential_store.fetch_vpn().is_free_tier
        except (CredentialsMissingError, CredentialStoreError):
            return False

    def refresh_data(self) -> bool:
        """Full refresh: location, client config, servers and account"""
        try:
            self.properties.user_location = self.api.location()
            self.properties.client_config = self.api.client_config()
            servers = self.api.server_list(free_tier=self._is_free_tier())
        except SKIPPABLE_ERRORS as e:
            logger.warning(f"Full refresh skipped: {e}")
            return False

        self.server_directory.store(servers)
        self._notify_callbacks('client_config_updated',
                               self.properties.client_config)
        self._notify_callbacks('servers_updated', servers)
        logger.info(f"Refreshed {len(servers)} servers")
        return self.refresh_account()

    def refresh_server_loads(self) -> bool:
        try:
            loads = self.api.server_loads()
        except SKIPPABLE_ERRORS as e:
            logger.warning(f"Load refresh skipped: {e}")
            return False

        servers = [
            replace(s, load=loads[s.id]) if s.id in loads else s
            for s in self.server_directory.fetch()
        ]
        self.server_directory.store(servers)
        self._notify_callbacks('servers_updated', servers)
        logger.debug(f"Updated loads of {len(loads)} servers")
        return True

    def refresh_account(self) -> bool:
        """Fetch account properties and report what changed"""
        try:
            new = self.api.vpn_credentials()
            credentials = self.credential_store.fetch()
        except SKIPPABLE_ERRORS as e:
            logger.warning(f"Account refresh skipped: {e}")
            return False

        old = credentials.vpn
        if old == new:
            return True

        try:
            self.credential_store.store_vpn(new)
        except CredentialStoreError as e:
            logger.error(f"Could not store account data: {e}")
            return False

        self._report_changes(old, new)
        return True

    def _report_changes(self, old: Optional[VpnCredentials],
                        new: VpnCredentials):
        self._notify_callbacks('credentials_changed', new)
        if old is None:
            return
        if new.is_delinquent and not old.is_delinquent:
            logger.info(f"Account became delinquent (level {new.delinquent})")
            self._notify_callbacks('user_delinquent', new)
        elif (old.max_tier != new.max_tier
              or old.account_plan != new.account_plan):
            logger.info(f"Plan changed: {old.account_plan} -> "
                        f"{new.account_plan}")
            self._notify_callbacks('plan_changed', old, new)

    def refresh_streaming_services(self) -> bool:
        try:
            self.properties.streaming_services = self.api.streaming_services()
        except SKIPPABLE_ERRORS as e:
            logger.warning(f"Streaming refresh skipped: {e}")
            return False
        return True


class RefreshDelegate:
    """Decides whether each timer tick actually refreshes"""

    def should_refresh_full(self) -> bool:
        return True

    def should_refresh_loads(self) -> bool:
        return True

    def should_refresh_account(self) -> bool:
        return True

    def should_refresh_streaming(self) -> bool:
        return True


class SessionRefreshTimer:
    """Four independent repeating timers driving a SessionRefresher"""

    def __init__(self, refresher: SessionRefresher,
                 intervals: Dict[str, float],
                 timer_factory: Optional[TimerFactory] = None,
                 delegate: Optional[RefreshDelegate] = None):
        self.refresher = refresher
        self.intervals = dict(intervals)
        self.timer_factory = timer_factory or TimerFactory()
        self.delegate = delegate or RefreshDelegate()
        self._timers: Dict[str, BackgroundTimer] = {}
        self._lock = threading.Lock()

    def _refreshes(self):
        return {
            'account': (self.delegate.should_refresh_account,
                        self.refresher.refresh_account),
            'full': (self.delegate.should_refresh_full,
                     self.refresher.refresh_data),
            'loads': (self.delegate.should_refresh_loads,
                      self.refresher.refresh_server_loads),
            'streaming': (self.delegate.should_refresh_streaming,
                          self.refresher.refresh_streaming_services),
        }

    @staticmethod
    def _tick(should_refresh, refresh):
        def run():
            if should_refresh():
                refresh()
        return run

    def start_timers(self, intervals: Optional[Dict[str, float]] = None):
        """
        Create missing timers. A live timer is only replaced when its
        interval changed.
        """
        with self._lock:
            if intervals:
                self.intervals.update(intervals)
            for name, (should_refresh, refresh) in self._refreshes().items():
                interval = float(self.intervals[name])
                timer = self._timers.get(name)
                if (timer is not None and timer.is_valid
                        and timer.interval == interval):
                    continue
                if timer is not None:
                    timer.cancel()
                self._timers[name] = self.timer_factory.schedule(
                    interval, self._tick(should_refresh, refresh),
                    repeats=True, name=f"VPN-Refresh-{name}"
                )
                logger.debug(f"{name} refresh every {interval:.0f}s")

    def stop_timers(self):
        with self._lock:
            timers, self._timers = self._timers, {}
        for timer in timers.values():
            timer.cancel()

    @property
    def active_timers(self) -> List[str]:
        with self._lock:
            return sorted(
                name for name, timer in self._timers.items() if timer.is_valid
            )
