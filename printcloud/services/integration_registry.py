"""
Integration Registry.

Stores per-printer connector configuration: protocol type, endpoint, auth
settings, poll interval and active flag. Credentials are encrypted at rest and
decrypted on every read.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import config as settings
from printcloud.errors import InvalidConfig, NotFound
from printcloud.models import Printer, now_iso, use_connection
from printcloud.services.connectors import AuthType, IntegrationType, get_connector_class
from printcloud.services.crypto import CredentialEncryption, get_credential_encryption, mask_credentials

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('printer_id', 'type', 'endpoint', 'auth_type')
UPDATABLE_FIELDS = ('endpoint', 'auth_type', 'credentials', 'poll_interval', 'is_active')

# Credential keys each auth type needs
REQUIRED_CREDENTIALS = {
    AuthType.NONE: (),
    AuthType.BASIC: ('username', 'password'),
    AuthType.API_KEY: ('api_key',),
    AuthType.CERTIFICATE: ('cert_path',),
}


@dataclass
class PrinterIntegration:
    """Connector configuration for one printer and protocol."""
    id: str
    printer_id: str
    type: IntegrationType
    endpoint: str
    auth_type: AuthType
    credentials: Dict[str, Any] = field(default_factory=dict)
    poll_interval: int = settings.DEFAULT_POLL_INTERVAL_SECONDS
    is_active: bool = True
    last_sync: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.credentials.get('webhook_secret') or None

    def to_dict(self, include_credentials: bool = False) -> Dict[str, Any]:
        return {
            'id': self.id,
            'printer_id': self.printer_id,
            'type': self.type.value,
            'endpoint': self.endpoint,
            'auth_type': self.auth_type.value,
            'credentials': self.credentials if include_credentials else mask_credentials(self.credentials),
            'poll_interval': self.poll_interval,
            'is_active': self.is_active,
            'last_sync': self.last_sync,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


def _parse_enum(enum_class, value: Any, field_name: str):
    try:
        return enum_class(str(getattr(value, 'value', value)).upper())
    except ValueError:
        raise InvalidConfig(
            f'Invalid {field_name}: {value}',
            field=field_name,
            details={'allowed': [member.value for member in enum_class]},
        )


def _validate_poll_interval(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidConfig('poll_interval must be a positive integer (seconds)',
                            field='poll_interval')
    return value


def _validate_credentials(auth_type: AuthType, credentials: Any) -> Dict[str, Any]:
    if credentials is None:
        credentials = {}
    if not isinstance(credentials, dict):
        raise InvalidConfig('credentials must be an object', field='credentials')
    missing = [key for key in REQUIRED_CREDENTIALS[auth_type] if not credentials.get(key)]
    if missing:
        raise InvalidConfig(
            f'{auth_type.value} authentication requires: {", ".join(missing)}',
            field='credentials',
            details={'missing': missing},
        )
    return credentials


class IntegrationRegistry:
    """CRUD over printer integrations. Writes are last-writer-wins per row."""

    def __init__(self, encryption: Optional[CredentialEncryption] = None):
        self._encryption = encryption

    @property
    def encryption(self) -> CredentialEncryption:
        if self._encryption is None:
            self._encryption = get_credential_encryption()
        return self._encryption

    def _from_row(self, row: sqlite3.Row) -> PrinterIntegration:
        return PrinterIntegration(
            id=row['id'],
            printer_id=row['printer_id'],
            type=IntegrationType(row['type']),
            endpoint=row['endpoint'],
            auth_type=AuthType(row['auth_type']),
            credentials=self.encryption.decrypt_credentials(row['credentials_encrypted']),
            poll_interval=row['poll_interval'],
            is_active=bool(row['is_active']),
            last_sync=row['last_sync'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def _validate(self, integration: PrinterIntegration) -> None:
        integration.credentials = _validate_credentials(integration.auth_type, integration.credentials)
        _validate_poll_interval(integration.poll_interval)
        # Connector constructors reject endpoints their protocol cannot use
        get_connector_class(integration.type)(integration)

    def create(self, config: Dict[str, Any]) -> PrinterIntegration:
        """
        Validate and store a new integration.

        Raises:
            InvalidConfig: missing field, unknown type/auth_type, bad credentials,
                or an integration of this type already exists for the printer.
            NotFound: the printer does not exist.
        """
        if not isinstance(config, dict):
            raise InvalidConfig('Integration config must be an object')

        missing = [name for name in REQUIRED_FIELDS if not config.get(name)]
        if missing:
            raise InvalidConfig(f'Missing required fields: {", ".join(missing)}',
                                details={'missing': missing})

        timestamp = now_iso()
        integration = PrinterIntegration(
            id=uuid.uuid4().hex,
            printer_id=str(config['printer_id']),
            type=_parse_enum(IntegrationType, config['type'], 'type'),
            endpoint=str(config['endpoint']).strip(),
            auth_type=_parse_enum(AuthType, config['auth_type'], 'auth_type'),
            credentials=config.get('credentials'),
            poll_interval=config.get('poll_interval', settings.DEFAULT_POLL_INTERVAL_SECONDS),
            is_active=bool(config.get('is_active', True)),
            created_at=timestamp,
            updated_at=timestamp,
        )
        self._validate(integration)

        with use_connection() as conn:
            if Printer.get(integration.printer_id, conn) is None:
                raise NotFound(f'Printer not found: {integration.printer_id}',
                               details={'printer_id': integration.printer_id})
            try:
                conn.execute("""
                    INSERT INTO printer_integrations
                    (id, printer_id, type, endpoint, auth_type, credentials_encrypted,
                     poll_interval, is_active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (integration.id, integration.printer_id, integration.type.value,
                      integration.endpoint, integration.auth_type.value,
                      self.encryption.encrypt_credentials(integration.credentials),
                      integration.poll_interval, int(integration.is_active),
                      integration.created_at, integration.updated_at))
            except sqlite3.IntegrityError:
                raise InvalidConfig(
                    f'{integration.type.value} integration already exists for printer {integration.printer_id}',
                    field='type',
                )

        logger.info(f"Created {integration.type.value} integration {integration.id} "
                    f"for printer {integration.printer_id}")
        return integration

    def get(self, printer_id: str, type: Any = None) -> PrinterIntegration:
        """
        Get the integration for a printer, optionally restricted to one type.

        Without a type, the oldest active integration wins.
        """
        query = "SELECT * FROM printer_integrations WHERE printer_id = ?"
        params: List[Any] = [printer_id]
        if type:
            query += " AND type = ?"
            params.append(_parse_enum(IntegrationType, type, 'type').value)
        query += " ORDER BY is_active DESC, created_at ASC LIMIT 1"

        with use_connection() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            raise NotFound(f'Integration not found for printer {printer_id}',
                           details={'printer_id': printer_id, 'type': type})
        return self._from_row(row)

    def get_by_id(self, integration_id: str) -> PrinterIntegration:
        with use_connection() as conn:
            row = conn.execute("SELECT * FROM printer_integrations WHERE id = ?",
                               (integration_id,)).fetchone()
        if row is None:
            raise NotFound(f'Integration not found: {integration_id}',
                           details={'integration_id': integration_id})
        return self._from_row(row)

    def list(self, printer_id: Optional[str] = None) -> List[PrinterIntegration]:
        query = "SELECT * FROM printer_integrations"
        params: List[Any] = []
        if printer_id:
            query += " WHERE printer_id = ?"
            params.append(printer_id)
        query += " ORDER BY created_at ASC"
        with use_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._from_row(row) for row in rows]

    def list_active(self) -> List[PrinterIntegration]:
        with use_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM printer_integrations
                WHERE is_active = 1
                ORDER BY created_at ASC
            """).fetchall()
        return [self._from_row(row) for row in rows]

    def update(self, integration_id: str, changes: Dict[str, Any]) -> PrinterIntegration:
        """Apply changes to an integration; type and printer are immutable."""
        if not isinstance(changes, dict):
            raise InvalidConfig('Integration changes must be an object')
        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise InvalidConfig(f'Fields cannot be updated: {", ".join(unknown)}',
                                details={'fields': unknown})

        integration = self.get_by_id(integration_id)
        if 'endpoint' in changes:
            integration.endpoint = str(changes['endpoint'] or '').strip()
        if 'auth_type' in changes:
            integration.auth_type = _parse_enum(AuthType, changes['auth_type'], 'auth_type')
        if 'credentials' in changes:
            integration.credentials = changes['credentials']
        if 'poll_interval' in changes:
            integration.poll_interval = changes['poll_interval']
        if 'is_active' in changes:
            integration.is_active = bool(changes['is_active'])
        self._validate(integration)
        integration.updated_at = now_iso()

        with use_connection() as conn:
            conn.execute("""
                UPDATE printer_integrations
                SET endpoint = ?, auth_type = ?, credentials_encrypted = ?,
                    poll_interval = ?, is_active = ?, updated_at = ?
                WHERE id = ?
            """, (integration.endpoint, integration.auth_type.value,
                  self.encryption.encrypt_credentials(integration.credentials),
                  integration.poll_interval, int(integration.is_active),
                  integration.updated_at, integration.id))

        logger.info(f"Updated integration {integration.id}")
        return integration

    def delete(self, integration_id: str) -> PrinterIntegration:
        integration = self.get_by_id(integration_id)
        with use_connection() as conn:
            conn.execute("DELETE FROM printer_integrations WHERE id = ?", (integration_id,))
        logger.info(f"Deleted integration {integration_id}")
        return integration

    def mark_synced(self, integration_id: str, timestamp: Optional[datetime] = None) -> None:
        synced_at = (timestamp or datetime.now()).isoformat()
        with use_connection() as conn:
            conn.execute("UPDATE printer_integrations SET last_sync = ? WHERE id = ?",
                         (synced_at, integration_id))
