"""
Shared types for printer connectors.

A connector is any object with ``get_status() -> PrinterStatus``. Connectors
that can also list completed jobs implement ``get_job_history()``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

import requests

from printcloud.errors import ConnectorUnavailable, InvalidConfig, ValidationError

logger = logging.getLogger(__name__)


class IntegrationType(str, Enum):
    """Wire protocol used to reach a printer."""
    SNMP = 'SNMP'
    HTTP = 'HTTP'
    IPP = 'IPP'
    WSD = 'WSD'


class AuthType(str, Enum):
    """Authentication applied by a connector."""
    NONE = 'NONE'
    BASIC = 'BASIC'
    API_KEY = 'API_KEY'
    CERTIFICATE = 'CERTIFICATE'


class PrinterState(str, Enum):
    ONLINE = 'ONLINE'
    OFFLINE = 'OFFLINE'
    PRINTING = 'PRINTING'
    ERROR = 'ERROR'
    WARNING = 'WARNING'


@dataclass
class PrinterStatus:
    """Snapshot of device state returned by a single connector call."""
    status: PrinterState
    toner_levels: Dict[str, int] = field(default_factory=dict)
    paper_levels: Dict[str, int] = field(default_factory=dict)
    error_messages: List[str] = field(default_factory=list)
    job_queue: int = 0
    total_pages_month: Optional[int] = None
    page_count: Optional[int] = None
    last_updated: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': PrinterState(self.status).value,
            'toner_levels': self.toner_levels,
            'paper_levels': self.paper_levels,
            'error_messages': self.error_messages,
            'job_queue': self.job_queue,
            'total_pages_month': self.total_pages_month,
            'page_count': self.page_count,
            'last_updated': self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PrinterStatus':
        """Build a status from client-supplied JSON, rejecting malformed values."""
        if not isinstance(data, dict):
            raise ValidationError('Status payload must be an object')
        try:
            state = PrinterState(str(data.get('status', '')).upper())
        except ValueError:
            raise ValidationError(
                f"Invalid status: {data.get('status')}",
                field='status',
                details={'allowed': [s.value for s in PrinterState]},
            )
        try:
            return cls(
                status=state,
                toner_levels=coerce_levels(data.get('toner_levels')),
                paper_levels=coerce_levels(data.get('paper_levels')),
                error_messages=[str(m) for m in data.get('error_messages') or []],
                job_queue=int(data.get('job_queue') or 0),
                total_pages_month=_optional_int(data.get('total_pages_month')),
                page_count=_optional_int(data.get('page_count')),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f'Malformed status payload: {e}')

    @classmethod
    def failure(cls, message: str) -> 'PrinterStatus':
        """ERROR snapshot recorded when a device could not be reached."""
        return cls(status=PrinterState.ERROR, error_messages=[message])


@runtime_checkable
class PrinterConnector(Protocol):
    def get_status(self) -> PrinterStatus:
        ...


@runtime_checkable
class JobHistoryProvider(Protocol):
    def get_job_history(self) -> List[Dict[str, Any]]:
        ...


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    return int(value)


def coerce_levels(levels: Any) -> Dict[str, int]:
    """Normalize a ``{name: percent}`` mapping, raising ValueError when malformed."""
    if levels is None:
        return {}
    if not isinstance(levels, dict):
        raise ValueError('levels must be an object')
    result = {}
    for name, value in levels.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f'level for {name} is not numeric')
        result[str(name)] = max(0, min(100, int(value)))
    return result


def percent(level: int, capacity: int) -> Optional[int]:
    """Level as a percentage of capacity, or None when either is unknown."""
    if capacity <= 0 or level < 0:
        return None
    return max(0, min(100, int(level * 100 / capacity)))


def supply_key(description: str) -> str:
    """Map a supply description onto a toner colour key."""
    desc = description.lower()
    for colour in ('black', 'cyan', 'magenta', 'yellow'):
        if colour in desc:
            return colour
    if desc.startswith('k ') or desc == 'k':
        return 'black'
    return description[:20]


def require_http_endpoint(endpoint: str) -> str:
    """Validate an http(s) base URL and strip any trailing slash."""
    parsed = urlparse(endpoint or '')
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise InvalidConfig(
            'Endpoint must be an http:// or https:// URL',
            field='endpoint',
            details={'endpoint': endpoint},
        )
    return endpoint.rstrip('/')


class HTTPAuth:
    """Applies an integration's auth settings to a requests.Session."""

    def __init__(self, auth_type: Any, credentials: Optional[Dict[str, Any]]):
        self.auth_type = AuthType(str(auth_type or 'NONE').upper())
        self.credentials = credentials or {}

    def session(self) -> requests.Session:
        session = requests.Session()
        creds = self.credentials

        if self.auth_type == AuthType.BASIC:
            session.auth = (creds.get('username', ''), creds.get('password', ''))
        elif self.auth_type == AuthType.API_KEY:
            session.headers['X-API-Key'] = creds.get('api_key', '')
        elif self.auth_type == AuthType.CERTIFICATE:
            cert_path = creds.get('cert_path')
            key_path = creds.get('key_path')
            session.cert = (cert_path, key_path) if key_path else cert_path

        if 'verify_tls' in creds:
            session.verify = bool(creds['verify_tls'])
        return session


def transport_error(protocol: str, endpoint: str, error: Exception) -> ConnectorUnavailable:
    """Wrap a low-level failure in ConnectorUnavailable."""
    if isinstance(error, requests.Timeout):
        message = f'{protocol} request to {endpoint} timed out'
    else:
        message = f'{protocol} connection to {endpoint} failed: {error}'
    logger.debug(message)
    return ConnectorUnavailable(message, details={'protocol': protocol, 'endpoint': endpoint})
