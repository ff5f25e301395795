"""
Persistent stores for credentials, servers and authentication material
"""

import json
import os
import threading
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import CredentialsMissingError, CredentialStoreError
from .types import (
    AuthenticationKeys, Certificate, Credentials, ServerCandidate,
    VpnCredentials,
)

logger = logging.getLogger(__name__)


def _write_private_json(path: Path, data):
    """Write JSON readable by the owner only"""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + '.tmp')
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


class CredentialStore(ABC):
    """Long-lived account credentials"""

    @abstractmethod
    def fetch(self) -> Credentials:
        """
        Returns:
            Stored credentials

        Raises:
            CredentialsMissingError: nothing stored
            CredentialStoreError: storage failed
        """

    @abstractmethod
    def store(self, credentials: Credentials):
        pass

    @abstractmethod
    def clear(self):
        pass

    def fetch_vpn(self) -> VpnCredentials:
        """VPN account part of the stored credentials"""
        credentials = self.fetch()
        if credentials.vpn is None:
            raise CredentialsMissingError("No VPN credentials stored")
        return credentials.vpn

    def store_vpn(self, vpn: VpnCredentials):
        credentials = self.fetch()
        self.store(Credentials(auth=credentials.auth, vpn=vpn))


class MemoryCredentialStore(CredentialStore):

    def __init__(self, credentials: Optional[Credentials] = None):
        self._credentials = credentials
        self._lock = threading.Lock()

    def fetch(self) -> Credentials:
        with self._lock:
            if self._credentials is None:
                raise CredentialsMissingError("No credentials stored")
            return self._credentials

    def store(self, credentials: Credentials):
        with self._lock:
            self._credentials = credentials

    def clear(self):
        with self._lock:
            self._credentials = None


class FileCredentialStore(CredentialStore):
    """Credentials kept in a JSON file with owner-only permissions"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def fetch(self) -> Credentials:
        with self._lock:
            if not self.path.exists():
                raise CredentialsMissingError("No credentials stored")
            try:
                with open(self.path, 'r') as f:
                    return Credentials.from_dict(json.load(f))
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise CredentialStoreError(
                    f"Failed to read credentials: {e}"
                ) from e

    def store(self, credentials: Credentials):
        with self._lock:
            try:
                _write_private_json(self.path, credentials.to_dict())
            except OSError as e:
                raise CredentialStoreError(
                    f"Failed to write credentials: {e}"
                ) from e

    def clear(self):
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass


class ServerDirectory(ABC):
    """Known server set"""

    @abstractmethod
    def fetch(self) -> List[ServerCandidate]:
        pass

    @abstractmethod
    def store(self, servers: List[ServerCandidate]):
        pass

    def find(self, server_id: str) -> Optional[ServerCandidate]:
        for server in self.fetch():
            if server.id == server_id:
                return server
        return None


class MemoryServerDirectory(ServerDirectory):

    def __init__(self, servers: Optional[List[ServerCandidate]] = None):
        self._servers = list(servers or [])
        self._lock = threading.Lock()

    def fetch(self) -> List[ServerCandidate]:
        with self._lock:
            return list(self._servers)

    def store(self, servers: List[ServerCandidate]):
        with self._lock:
            self._servers = list(servers)


class FileServerDirectory(ServerDirectory):
    """Server list cached in a JSON file"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._cache: Optional[List[ServerCandidate]] = None

    def fetch(self) -> List[ServerCandidate]:
        with self._lock:
            if self._cache is not None:
                return list(self._cache)
            if not self.path.exists():
                return []
            try:
                with open(self.path, 'r') as f:
                    data = json.load(f)
                self._cache = [ServerCandidate.from_dict(s) for s in data]
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Failed to load servers: {e}")
                return []
            return list(self._cache)

    def store(self, servers: List[ServerCandidate]):
        with self._lock:
            self._cache = list(servers)
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, 'w') as f:
                    json.dump([s.to_dict() for s in servers], f, indent=2)
                logger.debug(f"Stored {len(servers)} servers")
            except OSError as e:
                logger.error(f"Failed to save servers: {e}")


class AuthenticationStorage:
    """
    Keys and certificate of the authenticator. Only the authenticator
    writes here. With no path the material lives in memory only.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._keys: Optional[AuthenticationKeys] = None
        self._certificate: Optional[Certificate] = None
        self._loaded = self.path is None

    def _load(self):
        if self._loaded:
            return
        self._loaded = True
        if not self.path.exists():
            return
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            if data.get('private_key'):
                self._keys = AuthenticationKeys.from_private_pem(
                    data['private_key']
                )
            if data.get('certificate'):
                self._certificate = Certificate.from_dict(data['certificate'])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable authentication data: {e}")
            self._keys = None
            self._certificate = None

    def _save(self):
        if self.path is None:
            return
        data = {
            'private_key': self._keys.private_key_pem if self._keys else None,
            'certificate': (
                self._certificate.to_dict() if self._certificate else None
            ),
        }
        try:
            _write_private_json(self.path, data)
        except OSError as e:
            logger.error(f"Failed to save authentication data: {e}")

    def get(self) -> Tuple[Optional[AuthenticationKeys], Optional[Certificate]]:
        with self._lock:
            self._load()
            return self._keys, self._certificate

    def store_keys(self, keys: AuthenticationKeys):
        """New keys invalidate the stored certificate"""
        with self._lock:
            self._load()
            self._keys = keys
            self._certificate = None
            self._save()

    def store_certificate(self, certificate: Certificate):
        with self._lock:
            self._load()
            self._certificate = certificate
            self._save()

    def clear(self):
        with self._lock:
            self._keys = None
            self._certificate = None
            self._loaded = True
            if self.path is not None:
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
