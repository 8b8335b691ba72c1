"""
Data models for the unisrv CLI.

This module defines the session tuple persisted between invocations, the
resource kinds the provisioning API exposes, and the typed request/response
structures exchanged with it.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from jose import jwt, JWTError


# fromisoformat before 3.11 only accepts 3 or 6 fractional digits
_FRACTION_RE = re.compile(r"\.(\d+)")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an API timestamp into a timezone-aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def token_expiry_from_jwt(token: str) -> Optional[datetime]:
    """
    Read the expiration time from a JWT without verifying it.

    Args:
        token: JWT token string

    Returns:
        Expiration datetime or None if the token carries no usable ``exp`` claim
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    exp = claims.get('exp')
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class ResourceKind(Enum):
    """Resource kinds managed through the provisioning API."""
    INSTANCE = "instance"
    SERVICE = "service"
    NETWORK = "network"

    @property
    def list_path(self) -> str:
        return {
            ResourceKind.INSTANCE: '/instance/list',
            ResourceKind.SERVICE: '/services',
            ResourceKind.NETWORK: '/networks',
        }[self]

    @property
    def list_key(self) -> str:
        return {
            ResourceKind.INSTANCE: 'instances',
            ResourceKind.SERVICE: 'services',
            ResourceKind.NETWORK: 'networks',
        }[self]

    @property
    def create_path(self) -> str:
        return f'/{self.value}'

    def item_path(self, resource_id: str) -> str:
        return f'/{self.value}/{resource_id}'


class ReferenceKind(Enum):
    """How a user supplied resource reference is interpreted."""
    FULL_IDENTIFIER = "full_identifier"
    PARTIAL = "partial"


@dataclass
class ResourceReference:
    """A user-provided resource string, classified once per command."""
    raw: str
    kind: ReferenceKind

    @classmethod
    def classify(cls, raw: str) -> 'ResourceReference':
        """Classify a reference; any UUID spelling is kept in canonical form."""
        try:
            parsed = uuid.UUID(raw)
        except (ValueError, AttributeError, TypeError):
            return cls(raw=raw, kind=ReferenceKind.PARTIAL)
        return cls(raw=str(parsed), kind=ReferenceKind.FULL_IDENTIFIER)

    @property
    def is_full_identifier(self) -> bool:
        return self.kind == ReferenceKind.FULL_IDENTIFIER


@dataclass
class ResourceSummary:
    """Minimal fields of a listed resource, used for resolution and listing."""
    id: str
    name: Optional[str] = None
    status: Optional[str] = None


@dataclass
class Session:
    """
    Authenticated session persisted in the credential store.

    ``expires_at`` is the access token expiry; ``refresh_expires_at`` bounds
    how long the refresh token may be exchanged for a new access token.
    """
    access_token: str
    refresh_token: str
    expires_at: datetime
    user_id: Optional[str] = None
    refresh_session_id: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")
        if not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")

    def is_access_token_valid(self, now: Optional[datetime] = None, margin_seconds: float = 0) -> bool:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() > margin_seconds

    def is_refresh_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.refresh_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.refresh_expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'access_token': self.access_token,
            'expires_at': _format_timestamp(self.expires_at),
            'refresh_session_id': self.refresh_session_id,
            'refresh_token': self.refresh_token,
            'refresh_expires_at': _format_timestamp(self.refresh_expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        """Parse the persisted session document."""
        return cls(
            access_token=data['access_token'],
            refresh_token=data['refresh_token'],
            expires_at=_parse_timestamp(data['expires_at']),
            user_id=data.get('user_id'),
            refresh_session_id=data.get('refresh_session_id'),
            refresh_expires_at=_parse_timestamp(data.get('refresh_expires_at')),
        )

    @classmethod
    def from_login_response(cls, data: Dict[str, Any]) -> 'Session':
        """
        Build a session from a login or refresh response.

        The API names the access token ``token``. When ``expires_at`` is
        missing, the JWT ``exp`` claim of the access token is used.
        """
        token = data.get('token') or data.get('access_token')
        refresh_token = data.get('refresh_token')
        if not token or not refresh_token:
            raise ValueError("Login response is missing token fields")

        expires_at = _parse_timestamp(data.get('expires_at')) or token_expiry_from_jwt(token)
        if expires_at is None:
            raise ValueError("Login response carries no access token expiry")

        return cls(
            access_token=token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            user_id=data.get('user_id'),
            refresh_session_id=data.get('refresh_session_id'),
            refresh_expires_at=_parse_timestamp(data.get('refresh_expires_at')),
        )


@dataclass
class ServiceTargetInfo:
    """A service target as seen from an instance."""
    service_id: str
    service_type: str
    service_name: str
    instance_port: int
    id: Optional[str] = None


@dataclass
class Instance:
    """Entry of the instance list."""
    id: str
    state: str
    name: Optional[str] = None
    configuration: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    @property
    def container_image(self) -> str:
        return (self.configuration or {}).get('container_image') or 'Unknown'

    def to_summary(self) -> ResourceSummary:
        return ResourceSummary(id=self.id, name=self.name, status=self.state)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Instance':
        return cls(
            id=str(data['id']),
            state=data.get('state', 'unknown'),
            name=data.get('name'),
            configuration=data.get('configuration') or {},
            created_at=data.get('created_at'),
        )


@dataclass
class InstanceDetail(Instance):
    """Detailed instance information."""
    node_id: Optional[str] = None
    exit_code: Optional[int] = None
    exit_reason: Optional[str] = None
    network_id: Optional[str] = None
    network_ip: Optional[str] = None
    service_targets: Optional[List[ServiceTargetInfo]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstanceDetail':
        targets = data.get('service_targets')
        return cls(
            id=str(data['id']),
            state=data.get('state', 'unknown'),
            name=data.get('name'),
            configuration=data.get('configuration') or {},
            created_at=data.get('created_at'),
            node_id=data.get('node_id'),
            exit_code=data.get('exit_code'),
            exit_reason=data.get('exit_reason'),
            network_id=data.get('network_id'),
            network_ip=data.get('network_ip'),
            service_targets=None if targets is None else [
                ServiceTargetInfo(
                    id=t.get('id'),
                    service_id=str(t['service_id']),
                    service_type=t.get('service_type', ''),
                    service_name=t.get('service_name', ''),
                    instance_port=int(t.get('instance_port', 0)),
                )
                for t in targets
            ],
        )


@dataclass
class HTTPLocation:
    """A routing rule of an HTTP service."""
    path: str
    target: Dict[str, Any]
    override_404: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'override_404': self.override_404,
            'target': self.target,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HTTPLocation':
        return cls(
            path=data['path'],
            target=data.get('target') or {},
            override_404=data.get('override_404'),
        )


@dataclass
class HTTPServiceConfig:
    """Configuration document of an HTTP service."""
    locations: List[HTTPLocation] = field(default_factory=list)
    allow_http: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'locations': [location.to_dict() for location in self.locations],
            'allow_http': self.allow_http,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'HTTPServiceConfig':
        data = data or {}
        return cls(
            locations=[HTTPLocation.from_dict(loc) for loc in data.get('locations', [])],
            allow_http=bool(data.get('allow_http', False)),
        )


@dataclass
class Service:
    """Entry of the service list."""
    id: str
    name: str
    service_type: str

    def to_summary(self) -> ResourceSummary:
        return ResourceSummary(id=self.id, name=self.name, status=self.service_type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Service':
        return cls(id=str(data['id']), name=data.get('name', ''), service_type=data.get('type', ''))


@dataclass
class ServiceProvider:
    id: str
    route_address: str


@dataclass
class ServiceTarget:
    id: str
    instance_id: str
    instance_port: Optional[int] = None
    target_group: Optional[str] = None

    def to_summary(self) -> ResourceSummary:
        return ResourceSummary(id=self.id, name=None, status=self.target_group)


@dataclass
class ServiceDetail:
    """Detailed service information including its configuration."""
    id: str
    name: str
    service_type: str
    configuration: HTTPServiceConfig
    created_at: Optional[str] = None
    providers: List[ServiceProvider] = field(default_factory=list)
    targets: List[ServiceTarget] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceDetail':
        return cls(
            id=str(data['id']),
            name=data.get('name', ''),
            service_type=data.get('type', ''),
            configuration=HTTPServiceConfig.from_dict(data.get('configuration')),
            created_at=data.get('created_at'),
            providers=[
                ServiceProvider(id=str(p['id']), route_address=p.get('route_address', ''))
                for p in data.get('providers', [])
            ],
            targets=[
                ServiceTarget(
                    id=str(t['id']),
                    instance_id=str(t['instance_id']),
                    instance_port=t.get('instance_port'),
                    target_group=t.get('target_group'),
                )
                for t in data.get('targets', [])
            ],
        )


@dataclass
class Network:
    """Entry of the network list."""
    id: str
    name: str
    ipv4_cidr: str
    instance_count: Optional[int] = None

    def to_summary(self) -> ResourceSummary:
        return ResourceSummary(id=self.id, name=self.name, status=None)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Network':
        return cls(
            id=str(data['id']),
            name=data.get('name', ''),
            ipv4_cidr=data.get('ipv4_cidr', ''),
            instance_count=data.get('instance_count'),
        )


@dataclass
class NetworkInstance:
    id: str
    internal_ip: str


@dataclass
class NetworkDetail:
    """Detailed network information with attached instances."""
    id: str
    name: str
    ipv4_cidr: str
    created_at: Optional[str] = None
    instances: List[NetworkInstance] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NetworkDetail':
        return cls(
            id=str(data['id']),
            name=data.get('name', ''),
            ipv4_cidr=data.get('ipv4_cidr', ''),
            created_at=data.get('created_at'),
            instances=[
                NetworkInstance(id=str(i['id']), internal_ip=i.get('internal_ip', ''))
                for i in data.get('instances', [])
            ],
        )


class LogType(Enum):
    """Kinds of messages on the instance log stream."""
    STATE = "state"
    SYSTEM = "system"
    STDOUT = "stdout"
    STDERR = "stderr"


class InstanceInitState(Enum):
    """Boot progress reported through state log messages."""
    ONLINE = "online"
    PULLING_CONTAINER_IMAGE = "pulling_container_image"
    EXECUTING_CONTAINER = "executing_container"


@dataclass
class InstanceLogMessage:
    """A single decoded log stream message."""
    log_type: LogType
    timestamp_ms: int
    message: Optional[str] = None
    state: Optional[InstanceInitState] = None

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000, tz=timezone.utc)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstanceLogMessage':
        state = data.get('state')
        return cls(
            log_type=LogType(data['log_type']),
            timestamp_ms=int(data.get('timestamp_ms', 0)),
            message=data.get('message'),
            state=InstanceInitState(state) if state else None,
        )
