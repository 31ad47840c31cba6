"""
HTTP connector for printers and print servers exposing a JSON status API.

    GET {endpoint}/status -> {status, toner, paper, errors, queueSize, monthlyTotal}
    GET {endpoint}/jobs   -> [{jobId, fileName, pages, copies, isColor, ...}]
"""
import logging
from typing import Any, Dict, List, Optional

import requests

from config import config as settings
from printcloud.errors import ConnectorUnavailable
from printcloud.services.connectors.base import (
    HTTPAuth,
    PrinterState,
    PrinterStatus,
    coerce_levels,
    require_http_endpoint,
    transport_error,
)

logger = logging.getLogger(__name__)

# Vendor status strings that don't match a PrinterState name
VENDOR_STATUS_MAP = {
    'IDLE': PrinterState.ONLINE,
    'READY': PrinterState.ONLINE,
    'BUSY': PrinterState.PRINTING,
    'PROCESSING': PrinterState.PRINTING,
    'STOPPED': PrinterState.ERROR,
    'DOWN': PrinterState.OFFLINE,
}


def map_vendor_status(value: Any) -> PrinterState:
    name = str(value or '').strip().upper()
    if name in PrinterState.__members__:
        return PrinterState(name)
    return VENDOR_STATUS_MAP.get(name, PrinterState.WARNING)


def parse_status_payload(data: Any) -> PrinterStatus:
    """Convert the vendor JSON document into a PrinterStatus."""
    if not isinstance(data, dict):
        raise ValueError('status response is not a JSON object')

    errors = data.get('errors') or []
    if isinstance(errors, str):
        errors = [errors]

    monthly = data.get('monthlyTotal')
    page_count = data.get('pageCount')
    return PrinterStatus(
        status=map_vendor_status(data.get('status')),
        toner_levels=coerce_levels(data.get('toner')),
        paper_levels=coerce_levels(data.get('paper')),
        error_messages=[str(e) for e in errors],
        job_queue=int(data.get('queueSize') or 0),
        total_pages_month=int(monthly) if monthly is not None else None,
        page_count=int(page_count) if page_count is not None else None,
    )


class HTTPConnector:
    """JSON-over-HTTP status connector."""

    protocol = 'HTTP'

    def __init__(self, integration, timeout: Optional[float] = None):
        self.endpoint = require_http_endpoint(integration.endpoint)
        self.auth = HTTPAuth(integration.auth_type, integration.credentials)
        self.timeout = timeout or settings.CONNECTOR_TIMEOUT_SECONDS

    def _get_json(self, path: str) -> Any:
        url = f'{self.endpoint}{path}'
        try:
            with self.auth.session() as session:
                response = session.get(url, timeout=self.timeout,
                                       headers={'Accept': 'application/json'})
                if not response.ok:
                    raise ConnectorUnavailable(
                        f'HTTP {response.status_code} from {url}',
                        details={'protocol': self.protocol, 'status_code': response.status_code},
                    )
                try:
                    return response.json()
                except ValueError as e:
                    raise ConnectorUnavailable(f'Invalid JSON from {url}: {e}',
                                               details={'protocol': self.protocol})
        except requests.RequestException as e:
            raise transport_error(self.protocol, url, e)

    def get_status(self) -> PrinterStatus:
        data = self._get_json('/status')
        try:
            return parse_status_payload(data)
        except (TypeError, ValueError) as e:
            raise ConnectorUnavailable(f'Malformed status response from {self.endpoint}: {e}',
                                       details={'protocol': self.protocol})

    def get_job_history(self) -> List[Dict[str, Any]]:
        data = self._get_json('/jobs')
        if isinstance(data, dict):
            data = data.get('jobs', [])
        if not isinstance(data, list):
            raise ConnectorUnavailable(f'Malformed job history from {self.endpoint}',
                                       details={'protocol': self.protocol})
        return [job for job in data[:settings.JOB_HISTORY_LIMIT] if isinstance(job, dict)]
