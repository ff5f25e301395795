"""
Type definitions for the VPN session core
"""

import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from typing import ClassVar, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey


class VpnProtocol(Enum):
    """Transport protocols the tunnel agent can be started with"""
    IKEV2 = "ikev2"
    OPENVPN_TCP = "openvpn_tcp"
    OPENVPN_UDP = "openvpn_udp"
    WIREGUARD = "wireguard"

    @property
    def priority(self) -> int:
        """Negotiation rank, lower wins"""
        return PROTOCOL_PRIORITY[self]

    @property
    def is_openvpn(self) -> bool:
        return self in (VpnProtocol.OPENVPN_TCP, VpnProtocol.OPENVPN_UDP)


PROTOCOL_PRIORITY: Dict[VpnProtocol, int] = {
    VpnProtocol.WIREGUARD: 1,
    VpnProtocol.IKEV2: 2,
    VpnProtocol.OPENVPN_UDP: 3,
    VpnProtocol.OPENVPN_TCP: 4,
}


class VpnTiers(IntEnum):
    FREE = 0
    BASIC = 1
    PLUS = 2
    INTERNAL = 3


class VpnTrigger(Enum):
    """What started a connection or disconnection"""
    QUICK = "quick"
    COUNTRY = "country"
    CITY = "city"
    SERVER = "server"
    PROFILE = "profile"
    MAP = "map"
    TRAY = "tray"
    WIDGET = "widget"
    AUTO = "auto"
    NEW_CONNECTION = "new_connection"


class NetShieldLevel(IntEnum):
    OFF = 0
    MALWARE = 1
    ADS_AND_MALWARE = 2


class NATType(Enum):
    STRICT = "strict"
    MODERATE = "moderate"


@dataclass(frozen=True)
class FeatureFlags:
    """Connection features negotiated with the tunnel agent"""
    netshield: NetShieldLevel = NetShieldLevel.OFF
    vpn_accelerator: bool = True
    nat_type: NATType = NATType.STRICT
    safe_mode: Optional[bool] = None

    def to_agent_features(self) -> Dict[str, object]:
        """Key/value map understood by the local agent and certificate API"""
        features: Dict[str, object] = {
            'netshield-level': int(self.netshield),
            'split-tcp': self.vpn_accelerator,
            'randomized-nat': self.nat_type == NATType.STRICT,
        }
        if self.safe_mode is not None:
            features['safe-mode'] = self.safe_mode
        return features


class TargetKind(Enum):
    FASTEST = auto()
    COUNTRY = auto()
    CITY = auto()
    SERVER = auto()
    PROFILE = auto()


@dataclass(frozen=True)
class ConnectionTarget:
    """Selector describing which server a request wants"""
    kind: TargetKind
    country_code: Optional[str] = None
    city_name: Optional[str] = None
    server_id: Optional[str] = None
    profile_id: Optional[str] = None

    @classmethod
    def fastest(cls) -> 'ConnectionTarget':
        return cls(TargetKind.FASTEST)

    @classmethod
    def for_country(cls, country_code: str) -> 'ConnectionTarget':
        return cls(TargetKind.COUNTRY, country_code=country_code.upper())

    @classmethod
    def for_city(cls, country_code: str, city: str) -> 'ConnectionTarget':
        return cls(TargetKind.CITY, country_code=country_code.upper(),
                   city_name=city)

    @classmethod
    def for_server(cls, server_id: str) -> 'ConnectionTarget':
        return cls(TargetKind.SERVER, server_id=server_id)

    @classmethod
    def for_profile(cls, profile_id: str,
                    country_code: Optional[str] = None,
                    server_id: Optional[str] = None) -> 'ConnectionTarget':
        """
        Profile targets carry whatever the profile resolved to: a server id,
        a country code, or neither (fastest).
        """
        return cls(TargetKind.PROFILE, profile_id=profile_id,
                   country_code=country_code.upper() if country_code else None,
                   server_id=server_id)


@dataclass(frozen=True)
class ConnectionRequest:
    """A single connect attempt as asked for by the caller"""
    target: ConnectionTarget = field(default_factory=ConnectionTarget.fastest)
    protocol: Optional[VpnProtocol] = None  # None means smart protocol
    features: FeatureFlags = field(default_factory=FeatureFlags)
    trigger: VpnTrigger = VpnTrigger.QUICK

    @property
    def is_auto_protocol(self) -> bool:
        return self.protocol is None


# Bitmask used by the server list API
SERVER_FEATURE_BITS: List[Tuple[int, str]] = [
    (1, 'secure_core'),
    (2, 'tor'),
    (4, 'p2p'),
    (8, 'streaming'),
    (16, 'ipv6'),
]


@dataclass(frozen=True)
class ServerCandidate:
    """Routable identity of a logical server"""
    id: str
    name: str
    country_code: str
    entry_ip: str
    exit_ip: str
    domain: str = ''
    city: Optional[str] = None
    tier: int = VpnTiers.FREE
    status: int = 1
    load: int = 0
    features: Tuple[str, ...] = ()
    ports: Dict[VpnProtocol, Tuple[int, ...]] = field(
        default_factory=dict, hash=False, compare=False
    )

    @property
    def under_maintenance(self) -> bool:
        return self.status != 1

    @property
    def is_free(self) -> bool:
        return self.tier == VpnTiers.FREE

    def ports_for(self, protocol: VpnProtocol,
                  defaults: Dict[VpnProtocol, List[int]]) -> List[int]:
        """Server specific ports, falling back to client config defaults"""
        if protocol in self.ports and self.ports[protocol]:
            return list(self.ports[protocol])
        return list(defaults.get(protocol, []))

    @classmethod
    def from_api(cls, data: Dict) -> 'ServerCandidate':
        """Build from a LogicalServers entry of the server list API"""
        physical = (data.get('Servers') or [{}])[0]
        bitmask = data.get('Features', 0)
        return cls(
            id=str(data['ID']),
            name=data.get('Name', ''),
            country_code=data.get('ExitCountry', ''),
            entry_ip=physical.get('EntryIP', ''),
            exit_ip=physical.get('ExitIP', ''),
            domain=physical.get('Domain', data.get('Domain', '')),
            city=data.get('City'),
            tier=data.get('Tier', VpnTiers.FREE),
            status=data.get('Status', 1),
            load=data.get('Load', 0),
            features=tuple(
                name for bit, name in SERVER_FEATURE_BITS if bitmask & bit
            ),
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'country_code': self.country_code,
            'entry_ip': self.entry_ip,
            'exit_ip': self.exit_ip,
            'domain': self.domain,
            'city': self.city,
            'tier': int(self.tier),
            'status': self.status,
            'load': self.load,
            'features': list(self.features),
            'ports': {
                protocol.value: list(ports)
                for protocol, ports in self.ports.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ServerCandidate':
        data = dict(data)
        data['features'] = tuple(data.get('features', ()))
        data['ports'] = {
            VpnProtocol(name): tuple(ports)
            for name, ports in data.get('ports', {}).items()
        }
        return cls(**data)


@dataclass(frozen=True)
class ProtocolAvailability:
    """Result of one availability probe"""
    is_available: bool = False
    ports: Tuple[int, ...] = ()

    @classmethod
    def unavailable(cls) -> 'ProtocolAvailability':
        return cls()

    @classmethod
    def available(cls, ports: List[int]) -> 'ProtocolAvailability':
        return cls(True, tuple(ports))


@dataclass(frozen=True)
class AuthenticationKeys:
    """Locally generated Ed25519 keypair used to request certificates"""
    private_key: Ed25519PrivateKey = field(repr=False)

    @classmethod
    def generate(cls) -> 'AuthenticationKeys':
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_private_pem(cls, pem: str) -> 'AuthenticationKeys':
        key = serialization.load_pem_private_key(pem.encode(), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError("Stored key is not an Ed25519 private key")
        return cls(key)

    @property
    def private_key_pem(self) -> str:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

    @property
    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @property
    def public_key_pem(self) -> str:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.public_key_bytes).hexdigest()


@dataclass(frozen=True)
class Certificate:
    """Short-lived client certificate bound to one keypair"""
    pem: str = field(repr=False)
    expiration_time: float
    refresh_time: float
    key_fingerprint: str

    def __post_init__(self):
        if self.refresh_time >= self.expiration_time:
            raise ValueError(
                "Certificate refresh time must be before its expiration time"
            )

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expiration_time

    def needs_refresh(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.refresh_time

    def is_bound_to(self, keys: AuthenticationKeys) -> bool:
        return self.key_fingerprint == keys.fingerprint

    def to_dict(self) -> Dict:
        return {
            'pem': self.pem,
            'expiration_time': self.expiration_time,
            'refresh_time': self.refresh_time,
            'key_fingerprint': self.key_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Certificate':
        return cls(**data)


@dataclass(frozen=True)
class VpnCredentials:
    """Account properties that decide which servers a user may use"""
    account_plan: str
    max_tier: int
    max_connect: int = 1
    delinquent: int = 0
    name: str = ''
    password: str = field(default='', repr=False)
    plan_name: Optional[str] = None

    @property
    def is_delinquent(self) -> bool:
        return self.delinquent > 2

    @property
    def is_free_tier(self) -> bool:
        return self.max_tier == VpnTiers.FREE

    @classmethod
    def from_api(cls, data: Dict) -> 'VpnCredentials':
        """Build from a /vpn response"""
        vpn = data.get('VPN', {})
        return cls(
            account_plan=vpn.get('PlanName') or 'free',
            plan_name=vpn.get('PlanTitle'),
            max_tier=vpn.get('MaxTier', VpnTiers.FREE),
            max_connect=vpn.get('MaxConnect', 1),
            delinquent=data.get('Delinquent', 0),
            name=vpn.get('Name', ''),
            password=vpn.get('Password', ''),
        )

    def to_dict(self) -> Dict:
        return {
            'account_plan': self.account_plan,
            'max_tier': self.max_tier,
            'max_connect': self.max_connect,
            'delinquent': self.delinquent,
            'name': self.name,
            'password': self.password,
            'plan_name': self.plan_name,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'VpnCredentials':
        return cls(**data)


@dataclass(frozen=True)
class AuthCredentials:
    """API session tokens"""
    uid: str
    access_token: str = field(repr=False)
    refresh_token: str = field(default='', repr=False)
    username: str = ''


@dataclass(frozen=True)
class Credentials:
    """Everything the credential store persists for one account"""
    auth: AuthCredentials
    vpn: Optional[VpnCredentials] = None

    def to_dict(self) -> Dict:
        return {
            'auth': {
                'uid': self.auth.uid,
                'access_token': self.auth.access_token,
                'refresh_token': self.auth.refresh_token,
                'username': self.auth.username,
            },
            'vpn': self.vpn.to_dict() if self.vpn else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Credentials':
        vpn = data.get('vpn')
        return cls(
            auth=AuthCredentials(**data['auth']),
            vpn=VpnCredentials.from_dict(vpn) if vpn else None,
        )


class StateKind(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    DISCONNECTING = auto()


class ConnectionState:
    """Base of the connection state variants"""
    kind: ClassVar[StateKind]
    attempt_id: int

    @property
    def is_connected(self) -> bool:
        return self.kind == StateKind.CONNECTED

    @property
    def is_disconnected(self) -> bool:
        return self.kind == StateKind.DISCONNECTED

    @property
    def is_active(self) -> bool:
        """Connecting or connected"""
        return self.kind in (StateKind.CONNECTING, StateKind.CONNECTED)


@dataclass(frozen=True)
class Disconnected(ConnectionState):
    kind: ClassVar[StateKind] = StateKind.DISCONNECTED
    attempt_id: int = 0


@dataclass(frozen=True)
class Connecting(ConnectionState):
    kind: ClassVar[StateKind] = StateKind.CONNECTING
    request: ConnectionRequest
    server: ServerCandidate
    protocol: Optional[VpnProtocol]
    attempt_id: int

    @property
    def target(self) -> ConnectionTarget:
        return self.request.target


@dataclass(frozen=True)
class Connected(ConnectionState):
    kind: ClassVar[StateKind] = StateKind.CONNECTED
    request: ConnectionRequest
    server: ServerCandidate
    protocol: VpnProtocol
    ports: Tuple[int, ...]
    connected_at: float
    attempt_id: int

    @property
    def target(self) -> ConnectionTarget:
        return self.request.target


@dataclass(frozen=True)
class Disconnecting(ConnectionState):
    kind: ClassVar[StateKind] = StateKind.DISCONNECTING
    attempt_id: int


@dataclass(frozen=True)
class ReconnectInfo:
    """Why the session moved from one server to another"""
    from_server: ServerCandidate
    to_server: ServerCandidate


@dataclass(frozen=True)
class UserLocation:
    ip: str
    country: str = ''
    isp: str = ''


@dataclass
class ClientConfig:
    """Client configuration served by the API"""
    default_ports: Dict[VpnProtocol, List[int]] = field(default_factory=dict)
    server_refresh_interval: int = 600
    feature_flags: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict) -> 'ClientConfig':
        ports = data.get('DefaultPorts', {})
        openvpn = ports.get('OpenVPN', {})
        default_ports = {
            VpnProtocol.OPENVPN_UDP: list(openvpn.get('UDP', [])),
            VpnProtocol.OPENVPN_TCP: list(openvpn.get('TCP', [])),
            VpnProtocol.WIREGUARD: list(ports.get('WireGuard', {}).get('UDP', [])),
            VpnProtocol.IKEV2: list(ports.get('IKEv2', {}).get('UDP', [])),
        }
        return cls(
            default_ports={k: v for k, v in default_ports.items() if v},
            server_refresh_interval=data.get('ServerRefreshInterval', 600),
            feature_flags=dict(data.get('FeatureFlags', {})),
        )


@dataclass
class TelemetryEvent:
    """One connection telemetry measurement"""
    event: str
    values: Dict[str, int]
    dimensions: Dict[str, str]
    timestamp: float = field(default_factory=time.time)
    measurement_group: str = 'vpn.any.connection'

    def to_dict(self) -> Dict:
        return {
            'MeasurementGroup': self.measurement_group,
            'Event': self.event,
            'Values': self.values,
            'Dimensions': self.dimensions,
        }


class UserAction(Enum):
    """Connection change the user asked for explicitly"""
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    ABORT = "abort"


@dataclass(frozen=True)
class StateChange:
    """One user visible transition as delivered to state observers"""
    previous: ConnectionState
    current: ConnectionState
    user_action: Optional[UserAction] = None
    trigger: Optional[VpnTrigger] = None
