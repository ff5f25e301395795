"""
Configuration Manager for VPN session settings
"""

import copy
import yaml
from pathlib import Path
from typing import Optional, Dict, List, Any
import logging

from .types import VpnProtocol

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manage VPN session settings"""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize configuration manager

        Args:
            config_dir: Directory for configuration files
        """
        if config_dir is None:
            self.config_dir = Path.home() / '.config' / 'vpn-session'
        else:
            self.config_dir = Path(config_dir)

        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.settings_file = self.config_dir / 'settings.yaml'

        self.default_settings = {
            'log_level': 'INFO',
            'log_file': str(self.config_dir / 'logs' / 'vpn_session.log'),
            'api': {
                'base_url': 'https://vpn-api.proton.me',
                'timeout': 30,
                'app_version': 'linux-vpn-session@1.0.0',
            },
            'smart_protocol': {
                'timeout': 3.0,
                'ports': {
                    'ikev2': [500, 4500],
                    'openvpn_udp': [1194, 80, 51820, 4569, 5060],
                    'openvpn_tcp': [443, 7770, 8443],
                    'wireguard': [51820, 88, 1224],
                },
                'wireguard_ping': 'ping',
            },
            'fallback': {
                'protocol': 'wireguard',
                'port': 51820,
            },
            'refresh': {
                'full': 3 * 3600,
                'loads': 15 * 60,
                'account': 3 * 60,
                'streaming': 3 * 3600,
            },
            'maintenance': {
                'interval': 10 * 60,
            },
            'certificate': {
                'max_attempts': 3,
                'backoff_base': 2.0,
                'duration': '1440 min',
            },
            'telemetry': {
                'enabled': True,
                'use_buffer': True,
                'queue_path': str(self.config_dir / 'telemetry.sqlite3'),
                'max_tries': 10,
            },
            'storage': {
                'credentials_file': str(self.config_dir / 'credentials.json'),
                'servers_file': str(self.config_dir / 'servers.json'),
                'authentication_file': str(
                    self.config_dir / 'authentication.json'
                ),
            },
        }

        self.settings = self.load_settings()

    def load_settings(self) -> Dict:
        """Load settings from file or create default"""
        if self.settings_file.exists():
            try:
                with open(self.settings_file, 'r') as f:
                    settings = yaml.safe_load(f) or {}

                merged = self._deep_merge(
                    copy.deepcopy(self.default_settings), settings
                )
                logger.debug("Settings loaded successfully")
                return merged

            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Failed to load settings: {e}")
                logger.info("Using default settings")
                return copy.deepcopy(self.default_settings)
        else:
            self.save_settings(self.default_settings)
            return copy.deepcopy(self.default_settings)

    def save_settings(self, settings: Optional[Dict] = None):
        """Save settings to file"""
        if settings is None:
            settings = self.settings

        try:
            with open(self.settings_file, 'w') as f:
                yaml.dump(settings, f, default_flow_style=False, sort_keys=False)

            self.settings = settings
            logger.debug("Settings saved successfully")

        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get setting value using dot notation

        Args:
            key: Setting key (e.g., 'telemetry.enabled')
            default: Default value if key not found
        """
        keys = key.split('.')
        value = self.settings

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """
        Set setting value using dot notation

        Args:
            key: Setting key (e.g., 'telemetry.enabled')
            value: Value to set
        """
        keys = key.split('.')
        settings = self.settings

        for k in keys[:-1]:
            if k not in settings:
                settings[k] = {}
            settings = settings[k]

        settings[keys[-1]] = value
        self.save_settings()

    def protocol_ports(self) -> Dict[VpnProtocol, List[int]]:
        """Default port lists per protocol, used when a server has none"""
        ports = self.get('smart_protocol.ports', {})
        return {
            protocol: [int(p) for p in ports.get(protocol.value, [])]
            for protocol in VpnProtocol
        }

    def fallback_protocol(self) -> VpnProtocol:
        return VpnProtocol(self.get('fallback.protocol', 'wireguard'))

    def refresh_intervals(self) -> Dict[str, float]:
        return {
            name: float(self.get(f'refresh.{name}'))
            for name in ('full', 'loads', 'account', 'streaming')
        }

    @staticmethod
    def _deep_merge(base: Dict, update: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
