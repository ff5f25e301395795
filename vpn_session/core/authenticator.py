"""
Client keys and short-lived certificates for the tunnel agent
"""

import threading
import time
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from enum import Enum, auto
from typing import Callable, Dict, Optional, Tuple

from ..providers.tunnel_agent import AgentErrorCode
from .errors import (
    ApiError, CertificateIssuanceFailedError, ConnectionCancelledError,
    RemoteUnavailableError, TunnelAgentError,
)
from .storage import AuthenticationStorage
from .types import AuthenticationKeys, Certificate
from ..utils.timers import BackgroundTimer, TimerFactory

logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    REKEY_AND_RECONNECT = auto()
    REFRESH_AND_RESTART = auto()
    TERMINATE = auto()
    IGNORE = auto()


REKEY_CODES = frozenset({
    AgentErrorCode.BAD_CERT_SIGNATURE,
    AgentErrorCode.CERTIFICATE_REVOKED,
    AgentErrorCode.KEY_USED_MULTIPLE_TIMES,
    AgentErrorCode.SERVER_SESSION_DOES_NOT_MATCH,
})

REFRESH_CODES = frozenset({
    AgentErrorCode.CERTIFICATE_EXPIRED,
    AgentErrorCode.CERT_NOT_PROVIDED,
})

MAX_SESSIONS_CODES = frozenset({
    AgentErrorCode.MAX_SESSIONS_UNKNOWN,
    AgentErrorCode.MAX_SESSIONS_FREE,
    AgentErrorCode.MAX_SESSIONS_BASIC,
    AgentErrorCode.MAX_SESSIONS_PLUS,
    AgentErrorCode.MAX_SESSIONS_VISIONARY,
    AgentErrorCode.MAX_SESSIONS_PRO,
})

POLICY_VIOLATION_CODES = frozenset({
    AgentErrorCode.USER_TORRENT_NOT_ALLOWED,
    AgentErrorCode.USER_BAD_BEHAVIOR,
})

TERMINATE_CODES = MAX_SESSIONS_CODES | POLICY_VIOLATION_CODES


def classify_agent_error(code: int) -> ErrorAction:
    if code in REKEY_CODES:
        return ErrorAction.REKEY_AND_RECONNECT
    if code in REFRESH_CODES:
        return ErrorAction.REFRESH_AND_RESTART
    if code in TERMINATE_CODES:
        return ErrorAction.TERMINATE
    return ErrorAction.IGNORE


Material = Tuple[AuthenticationKeys, Certificate]


class CertificateAuthenticator:
    """
    Owns the client keypair and certificate. At most one refresh or rekey
    is in flight, later callers join its future.
    """

    def __init__(self, api, storage: AuthenticationStorage,
                 timer_factory: Optional[TimerFactory] = None,
                 max_attempts: int = 3, backoff_base: float = 2.0,
                 duration: str = '1440 min',
                 executor: Optional[Executor] = None,
                 clock: Callable[[], float] = time.time):
        self.api = api
        self.storage = storage
        self.timer_factory = timer_factory or TimerFactory()
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.duration = duration
        self.clock = clock

        self._lock = threading.Lock()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="VPN-Cert"
        )
        self._inflight: Optional[Future] = None
        self._inflight_is_rekey = False
        self._session_cancel = threading.Event()
        self._refresh_timer: Optional[BackgroundTimer] = None
        self._features: Dict[str, object] = {}

    @classmethod
    def from_config(cls, api, storage, config,
                    timer_factory: Optional[TimerFactory] = None):
        return cls(
            api, storage, timer_factory,
            max_attempts=config.get('certificate.max_attempts', 3),
            backoff_base=float(config.get('certificate.backoff_base', 2.0)),
            duration=config.get('certificate.duration', '1440 min'),
        )

    def handle_agent_error(self, error: TunnelAgentError) -> ErrorAction:
        """Map a tunnel agent error to the action the session takes"""
        action = classify_agent_error(error.code)
        if action == ErrorAction.IGNORE:
            logger.warning(f"Unhandled: {error}")
        else:
            logger.info(f"{error}: {action.name}")
        return action

    def current(self) -> Tuple[Optional[AuthenticationKeys], Optional[Certificate]]:
        return self.storage.get()

    def ensure_credentials(self, features: Optional[Dict[str, object]] = None
                           ) -> Material:
        """
        Keys and a certificate usable right now, issuing what is missing

        Raises:
            CertificateIssuanceFailedError: the issuer kept failing
            ConnectionCancelledError: the session was cleared meanwhile
            CredentialsMissingError: no API session
        """
        return self.refresh(force=False, features=features).result()

    def refresh(self, force: bool = False,
                features: Optional[Dict[str, object]] = None) -> Future:
        """
        Refresh the certificate. Without force a valid certificate bound to
        the current keys is kept. Joins a refresh or rekey already in flight.
        """
        with self._lock:
            if features is not None:
                self._features = dict(features)
            if self._inflight is not None and not self._inflight.done():
                return self._inflight
            cancel = self._session_cancel
            self._inflight = self._executor.submit(
                self._do_refresh, force, cancel
            )
            self._inflight_is_rekey = False
            return self._inflight

    def rekey(self, features: Optional[Dict[str, object]] = None) -> Future:
        """
        Replace the keypair and issue a certificate for it. Joins a rekey
        already in flight, queues behind a plain refresh.
        """
        with self._lock:
            if features is not None:
                self._features = dict(features)
            if (self._inflight is not None and not self._inflight.done()
                    and self._inflight_is_rekey):
                return self._inflight
            cancel = self._session_cancel
            self._inflight = self._executor.submit(self._do_rekey, cancel)
            self._inflight_is_rekey = True
            return self._inflight

    def _do_refresh(self, force: bool, cancel: threading.Event) -> Material:
        keys, certificate = self.storage.get()
        if keys is None:
            logger.info("Generating new client keys")
            keys = AuthenticationKeys.generate()
            self.storage.store_keys(keys)
            certificate = None

        if (not force and certificate is not None
                and certificate.is_bound_to(keys)
                and not certificate.needs_refresh(self.clock())):
            return keys, certificate

        if certificate is not None and not certificate.is_bound_to(keys):
            logger.warning("Stored certificate belongs to other keys, reissuing")

        return keys, self._issue(keys, cancel)

    def _do_rekey(self, cancel: threading.Event) -> Material:
        logger.info("Rotating client keys")
        keys = AuthenticationKeys.generate()
        self.storage.store_keys(keys)
        return keys, self._issue(keys, cancel)

    def _issue(self, keys: AuthenticationKeys,
               cancel: threading.Event) -> Certificate:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            if cancel.is_set():
                raise ConnectionCancelledError("Certificate refresh cancelled")
            try:
                data = self.api.request_certificate(
                    keys.public_key_pem, self._features, self.duration
                )
                certificate = Certificate(
                    pem=data['Certificate'],
                    expiration_time=float(data['ExpirationTime']),
                    refresh_time=float(data['RefreshTime']),
                    key_fingerprint=keys.fingerprint,
                )
            except (RemoteUnavailableError, ApiError, KeyError,
                    ValueError, TypeError) as e:
                last_error = e
                logger.warning(f"Certificate request {attempt + 1}/"
                               f"{self.max_attempts} failed: {e}")
                if attempt + 1 < self.max_attempts:
                    if cancel.wait(self.backoff_base ** attempt):
                        raise ConnectionCancelledError(
                            "Certificate refresh cancelled"
                        )
                continue

            if cancel.is_set():
                raise ConnectionCancelledError("Certificate refresh cancelled")
            self.storage.store_certificate(certificate)
            logger.info("New certificate valid until "
                        f"{time.ctime(certificate.expiration_time)}")
            return certificate

        raise CertificateIssuanceFailedError(
            f"Certificate issuance failed after {self.max_attempts} attempts: "
            f"{last_error}"
        ) from last_error

    def schedule_refresh(self, certificate: Certificate,
                         on_refreshed: Callable[[Future], None]):
        """
        Refresh proactively at the certificate's refresh time. The resulting
        future is handed to on_refreshed.
        """
        delay = max(0.0, certificate.refresh_time - self.clock())

        def fire():
            future = self.refresh(force=True)
            future.add_done_callback(on_refreshed)

        with self._lock:
            if self._refresh_timer is not None:
                self._refresh_timer.cancel()
            self._refresh_timer = self.timer_factory.schedule(
                delay, fire, repeats=False, name="VPN-CertRefresh"
            )
        logger.debug(f"Certificate refresh scheduled in {delay:.0f}s")

    def clear_session(self):
        """Cancel the scheduled refresh and any refresh of the ended session"""
        with self._lock:
            timer, self._refresh_timer = self._refresh_timer, None
            self._session_cancel.set()
            self._session_cancel = threading.Event()
            self._inflight = None
        if timer is not None:
            timer.cancel()

    def clear_everything(self):
        """Drop keys and certificate, used on logout"""
        self.clear_session()
        self.storage.clear()
        logger.info("Authentication material cleared")
