"""
Printer status application and manual sync.

Every status write, whether from the scheduler, a manual sync, a pushed update
or a webhook, goes through ``PrinterStatusService.apply``.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from config import config as settings
from printcloud.errors import ConnectorUnavailable, NotFound, ValidationError
from printcloud.models import Printer, use_connection
from printcloud.services.connectors import PrinterState, PrinterStatus, create_connector
from printcloud.services.integration_registry import IntegrationRegistry

logger = logging.getLogger(__name__)


class PrinterStatusService:
    """Writes status snapshots into printer records."""

    def __init__(self, registry: IntegrationRegistry,
                 connector_factory: Callable = create_connector):
        self.registry = registry
        self.connector_factory = connector_factory

    def apply(self, printer_id: str, status: PrinterStatus, source: str = 'poll') -> Dict[str, Any]:
        """Fold a complete snapshot into the printer row."""
        if not Printer.update_status(printer_id, status.to_dict(), source=source):
            raise NotFound(f'Printer not found: {printer_id}', details={'printer_id': printer_id})
        logger.debug(f"Applied {status.status.value} status to printer {printer_id} ({source})")
        return Printer.get(printer_id)

    def record_failure(self, printer_id: str, message: str, source: str = 'poll') -> bool:
        """Mark a printer ERROR with the failure detail, keeping its last known levels."""
        return Printer.update_status(
            printer_id,
            {'status': PrinterState.ERROR.value, 'error_messages': [message]},
            source=source,
        )

    def push(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a client-supplied status document (``printer_id`` plus status fields)."""
        if not isinstance(data, dict) or not data.get('printer_id'):
            raise ValidationError('printer_id is required', field='printer_id')
        if not data.get('status'):
            raise ValidationError('status is required', field='status')
        return self.apply(str(data['printer_id']), PrinterStatus.from_dict(data), source='push')

    def get_latest(self, printer_id: str) -> Dict[str, Any]:
        printer = Printer.get(printer_id)
        if printer is None:
            raise NotFound(f'Printer not found: {printer_id}', details={'printer_id': printer_id})
        latest = Printer.latest_status(printer_id)
        if latest is None:
            raise NotFound(f'Printer status not found: {printer_id}',
                           details={'printer_id': printer_id})
        return {'printer': printer, 'status': latest}

    def sync(self, printer_id: str, integration_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Pull status from the device now and apply it.

        On connector failure an ERROR status carrying the failure detail is
        persisted before ConnectorUnavailable propagates. Unexpected errors
        from the connector are reported as ConnectorUnavailable too.
        """
        integration = self.registry.get(printer_id, integration_type)
        connector = self.connector_factory(integration)

        try:
            status = connector.get_status()
        except ConnectorUnavailable as e:
            logger.warning(f"Manual sync of printer {printer_id} failed: {e.message}")
            self.record_failure(printer_id, f'Connection failed: {e.message}', source='manual')
            raise
        except Exception as e:
            logger.exception(f"Manual sync of printer {printer_id} raised: {e}")
            self.record_failure(printer_id, f'Connection failed: {e}', source='manual')
            raise ConnectorUnavailable(str(e), details={'printer_id': printer_id}) from e

        printer = self.apply(printer_id, status, source='manual')
        synced_at = datetime.now()
        self.registry.mark_synced(integration.id, synced_at)
        logger.info(f"Manual sync of printer {printer_id} via {integration.type.value}: "
                    f"{status.status.value}")
        return {
            'printer': printer,
            'status': status.to_dict(),
            'integration_id': integration.id,
            'synced_at': synced_at.isoformat(),
        }

    def system_status(self, polling: Dict[str, Any]) -> Dict[str, Any]:
        """Health summary across printers, integrations, captures and the scheduler."""
        since = (datetime.now() - timedelta(hours=24)).isoformat()
        with use_connection() as conn:
            total_printers = conn.execute("SELECT COUNT(*) FROM printers").fetchone()[0]
            online_printers = conn.execute(
                "SELECT COUNT(*) FROM printers WHERE status IN ('ONLINE', 'PRINTING', 'WARNING')"
            ).fetchone()[0]
            total_integrations = conn.execute("SELECT COUNT(*) FROM printer_integrations").fetchone()[0]
            active_integrations = conn.execute(
                "SELECT COUNT(*) FROM printer_integrations WHERE is_active = 1"
            ).fetchone()[0]
            unprocessed = conn.execute(
                "SELECT COUNT(*) FROM print_job_captures WHERE status = 'CAPTURED'"
            ).fetchone()[0]
            recent = conn.execute(
                "SELECT COUNT(*) FROM print_job_captures WHERE captured_at >= ?", (since,)
            ).fetchone()[0]

        issues = []
        if not polling.get('running') and active_integrations > 0:
            issues.append('Polling service is not running but integrations are active')
        if unprocessed > settings.UNPROCESSED_CAPTURE_WARNING_THRESHOLD:
            issues.append(f'High number of unprocessed captures: {unprocessed}')
        if online_printers == 0:
            issues.append('No online printers found')

        return {
            'timestamp': datetime.now().isoformat(),
            'services': {
                'polling': polling,
                'database': {'connected': True},
            },
            'statistics': {
                'printers': {
                    'total': total_printers,
                    'online': online_printers,
                    'by_status': Printer.count_by_status(),
                },
                'integrations': {
                    'total': total_integrations,
                    'active': active_integrations,
                    'inactive': total_integrations - active_integrations,
                },
                'captures': {
                    'unprocessed': unprocessed,
                    'last_24_hours': recent,
                },
            },
            'health': {
                'overall': 'warning' if issues else 'healthy',
                'issues': issues,
            },
        }
