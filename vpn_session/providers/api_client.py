"""
Remote API client for the VPN backend
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..core.errors import ApiError, RemoteUnavailableError
from ..core.storage import CredentialStore
from ..core.types import (
    ClientConfig, ServerCandidate, UserLocation, VpnCredentials,
)

logger = logging.getLogger(__name__)

SUCCESS_CODES = (1000, 1001)


class VpnApiClient:
    """Thin wrapper over the VPN API endpoints used by the session core"""

    def __init__(self, base_url: str, credential_store: CredentialStore,
                 timeout: float = 30, app_version: str = 'linux-vpn-session@1.0.0',
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.credential_store = credential_store
        self.timeout = timeout
        self.app_version = app_version
        self.session = session or requests.Session()

    def _request(self, method: str, path: str,
                 json_body: Optional[Dict] = None,
                 params: Optional[Dict] = None,
                 authenticated: bool = True) -> Dict[str, Any]:
        """
        Perform one API call

        Raises:
            CredentialsMissingError: authenticated call without credentials
            RemoteUnavailableError: transport failure, 5xx or throttling
            ApiError: the API refused the request
        """
        headers = {
            'x-pm-appversion': self.app_version,
            'Accept': 'application/vnd.protonmail.v1+json',
        }
        if authenticated:
            auth = self.credential_store.fetch().auth
            headers['x-pm-uid'] = auth.uid
            headers['Authorization'] = f"Bearer {auth.access_token}"

        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url,
                json=json_body,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise RemoteUnavailableError(f"{method} {path} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 500 or response.status_code == 429:
            raise RemoteUnavailableError(
                f"{method} {path} returned HTTP {response.status_code}",
                {'http_status': response.status_code},
            )

        code = data.get('Code', 1000 if response.ok else 0)
        if not response.ok or code not in SUCCESS_CODES:
            raise ApiError(
                data.get('Error') or response.reason or 'API error',
                http_status=response.status_code,
                code=code,
            )

        return data

    def server_list(self, free_tier: bool = False) -> List[ServerCandidate]:
        params = {'Tier': 0} if free_tier else None
        data = self._request('GET', '/vpn/logicals', params=params)
        return [ServerCandidate.from_api(s) for s in data.get('LogicalServers', [])]

    def server_loads(self) -> Dict[str, int]:
        data = self._request('GET', '/vpn/loads')
        return {
            str(s['ID']): s.get('Load', 0)
            for s in data.get('LogicalServers', [])
        }

    def server_state(self, server_id: str) -> int:
        """Live status of one server, 1 meaning online"""
        data = self._request('GET', f'/vpn/logicals/{server_id}')
        return data.get('Server', {}).get('Status', 0)

    def vpn_credentials(self) -> VpnCredentials:
        return VpnCredentials.from_api(self._request('GET', '/vpn'))

    def streaming_services(self) -> Dict[str, Any]:
        data = self._request('GET', '/vpn/streamingservices')
        return {
            'resource_base_url': data.get('ResourceBaseURL'),
            'services': data.get('StreamingServices', {}),
        }

    def client_config(self) -> ClientConfig:
        return ClientConfig.from_api(self._request('GET', '/vpn/clientconfig'))

    def location(self) -> UserLocation:
        data = self._request('GET', '/vpn/location', authenticated=False)
        return UserLocation(
            ip=data.get('IP', ''),
            country=data.get('Country', ''),
            isp=data.get('ISP', ''),
        )

    def request_certificate(self, public_key_pem: str,
                            features: Optional[Dict[str, object]] = None,
                            duration: str = '1440 min') -> Dict[str, Any]:
        """
        Ask the issuer for a certificate bound to the given public key

        Returns:
            dict with 'Certificate', 'ExpirationTime' and 'RefreshTime'
        """
        body: Dict[str, Any] = {
            'ClientPublicKey': public_key_pem,
            'ClientPublicKeyMode': 'EC',
            'Duration': duration,
        }
        if features:
            body['Features'] = features
        return self._request('POST', '/vpn/v1/certificate', json_body=body)

    def send_telemetry_event(self, event: Dict[str, Any]):
        self._request('POST', '/data/v1/stats', json_body=event)
