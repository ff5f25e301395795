"""
Detects that the connected server went into maintenance
"""

import threading
import logging
from typing import Callable, Optional

from .errors import (
    ApiError, CredentialsMissingError, CredentialStoreError,
    RemoteUnavailableError,
)
from .storage import CredentialStore, ServerDirectory
from ..utils.timers import BackgroundTimer, TimerFactory

logger = logging.getLogger(__name__)

ResultCallback = Callable[[bool], None]
ErrorCallback = Callable[[Exception], None]


class MaintenancePoller:
    """Polls the live status of the server the session is using"""

    def __init__(self, api, state_provider: Callable,
                 server_directory: ServerDirectory,
                 credential_store: CredentialStore,
                 timer_factory: Optional[TimerFactory] = None):
        self.api = api
        self.state_provider = state_provider
        self.server_directory = server_directory
        self.credential_store = credential_store
        self.timer_factory = timer_factory or TimerFactory()
        self._timer: Optional[BackgroundTimer] = None
        self._lock = threading.Lock()

    def observe(self, interval: float, repeats: bool = True,
                on_result: Optional[ResultCallback] = None,
                on_error: Optional[ErrorCallback] = None):
        """
        Check the active server, once right away or every interval. An
        already running timer is kept unless the interval changed.
        """
        if not repeats or interval <= 0:
            self.check(on_result, on_error)
            return

        with self._lock:
            if self._timer is not None:
                if self._timer.is_valid and self._timer.interval == interval:
                    return
                self._timer.cancel()
            self._timer = self.timer_factory.schedule(
                interval, lambda: self.check(on_result, on_error),
                repeats=True, name="VPN-Maintenance"
            )
        logger.debug(f"Observing server state every {interval:.0f}s")

    def stop_observing(self):
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    @property
    def is_observing(self) -> bool:
        with self._lock:
            return self._timer is not None and self._timer.is_valid

    def check(self, on_result: Optional[ResultCallback] = None,
              on_error: Optional[ErrorCallback] = None):
        state = self.state_provider()
        if not state.is_active:
            logger.debug("VPN not connected, skipping maintenance check")
            if on_result:
                on_result(False)
            return

        try:
            free_tier = self.credential_store.fetch_vpn().is_free_tier
        except (CredentialsMissingError, CredentialStoreError):
            free_tier = False

        try:
            status = self.api.server_state(state.server.id)
            if status == 1:
                if on_result:
                    on_result(False)
                return
            servers = self.api.server_list(free_tier=free_tier)
        except (RemoteUnavailableError, ApiError,
                CredentialsMissingError, CredentialStoreError) as e:
            logger.warning(f"Maintenance check failed: {e}")
            if on_error:
                on_error(e)
            return

        self.server_directory.store(servers)
        logger.info(f"Server {state.server.name} is under maintenance")
        if on_result:
            on_result(True)
