"""
WSD (Web Services for Devices) connector using the WS-Print
GetPrinterElements operation over SOAP 1.2.
"""
import logging
import uuid
import xml.etree.ElementTree as ET
from typing import Optional

import requests

from config import config as settings
from printcloud.errors import ConnectorUnavailable
from printcloud.services.connectors.base import (
    HTTPAuth,
    PrinterState,
    PrinterStatus,
    percent,
    require_http_endpoint,
    supply_key,
    transport_error,
)

logger = logging.getLogger(__name__)

WSD_PRINT_NS = 'http://schemas.microsoft.com/windows/2006/08/wdp/print'
GET_PRINTER_ELEMENTS_ACTION = f'{WSD_PRINT_NS}/GetPrinterElements'

ENVELOPE_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://www.w3.org/2003/05/soap-envelope"
               xmlns:wsa="http://schemas.xmlsoap.org/ws/2004/08/addressing"
               xmlns:wprt="{ns}">
  <soap:Header>
    <wsa:To>{to}</wsa:To>
    <wsa:Action>{action}</wsa:Action>
    <wsa:MessageID>urn:uuid:{message_id}</wsa:MessageID>
    <wsa:ReplyTo>
      <wsa:Address>http://schemas.xmlsoap.org/ws/2004/08/addressing/role/anonymous</wsa:Address>
    </wsa:ReplyTo>
  </soap:Header>
  <soap:Body>
    <wprt:GetPrinterElementsRequest>
      <wprt:RequestedElements>
        <wprt:Name>wprt:PrinterStatus</wprt:Name>
        <wprt:Name>wprt:PrinterConfiguration</wprt:Name>
      </wprt:RequestedElements>
    </wprt:GetPrinterElementsRequest>
  </soap:Body>
</soap:Envelope>"""

PRINTER_STATES = {
    'idle': PrinterState.ONLINE,
    'processing': PrinterState.PRINTING,
    'stopped': PrinterState.ERROR,
}


def build_request(endpoint: str, message_id: Optional[str] = None) -> str:
    return ENVELOPE_TEMPLATE.format(
        ns=WSD_PRINT_NS,
        to=endpoint,
        action=GET_PRINTER_ELEMENTS_ACTION,
        message_id=message_id or uuid.uuid4(),
    )


def _text(element: Optional[ET.Element]) -> str:
    return (element.text or '').strip() if element is not None else ''


def _int(element: Optional[ET.Element], default: int = -1) -> int:
    try:
        return int(_text(element))
    except ValueError:
        return default


def parse_response(xml_text: bytes) -> PrinterStatus:
    """Parse a GetPrinterElementsResponse envelope."""
    root = ET.fromstring(xml_text)

    fault = root.find('.//{*}Body/{*}Fault')
    if fault is not None:
        reason = _text(fault.find('.//{*}Text')) or 'SOAP fault'
        raise ValueError(reason)

    status_el = root.find('.//{*}PrinterStatus')
    if status_el is None:
        raise ValueError('PrinterStatus element missing')

    state_text = _text(status_el.find('{*}PrinterState'))
    if not state_text:
        raise ValueError('PrinterState missing')
    state = PRINTER_STATES.get(state_text.lower(), PrinterState.WARNING)

    reasons = [_text(r) for r in status_el.findall('.//{*}PrinterStateReasons/{*}PrinterStateReason')]
    primary = _text(status_el.find('{*}PrinterPrimaryStateReason'))
    if primary and primary not in reasons:
        reasons.insert(0, primary)
    reasons = [r for r in reasons if r and r.lower() != 'none']

    if state == PrinterState.ONLINE and reasons:
        state = PrinterState.WARNING

    toner = {}
    for entry in root.findall('.//{*}PrinterConfiguration//{*}ConsumableEntry'):
        level = _int(entry.find('{*}Level'))
        if level < 0:
            continue
        label = _text(entry.find('{*}Color')) or _text(entry.find('{*}Type')) or entry.get('Name', '')
        toner[supply_key(label or f'supply{len(toner) + 1}')] = min(level, 100)

    paper = {}
    for index, entry in enumerate(root.findall('.//{*}PrinterConfiguration//{*}InputBinEntry')):
        level = _int(entry.find('{*}Level'))
        capacity = _int(entry.find('{*}Capacity'))
        pct = percent(level, capacity) if capacity > 0 else (min(level, 100) if level >= 0 else None)
        if pct is not None:
            paper[entry.get('Name') or f'tray{index + 1}'] = pct

    queued = _int(status_el.find('{*}QueuedJobCount'), default=0)
    return PrinterStatus(
        status=state,
        toner_levels=toner,
        paper_levels=paper,
        error_messages=reasons,
        job_queue=max(queued, 0),
    )


class WSDConnector:
    """Queries a WSD print service endpoint."""

    protocol = 'WSD'

    def __init__(self, integration, timeout: Optional[float] = None):
        self.endpoint = require_http_endpoint(integration.endpoint)
        self.auth = HTTPAuth(integration.auth_type, integration.credentials)
        self.timeout = timeout or settings.CONNECTOR_TIMEOUT_SECONDS

    def get_status(self) -> PrinterStatus:
        envelope = build_request(self.endpoint).encode('utf-8')
        headers = {'Content-Type': 'application/soap+xml; charset=utf-8'}
        try:
            with self.auth.session() as session:
                response = session.post(self.endpoint, data=envelope, headers=headers,
                                        timeout=self.timeout)
        except requests.RequestException as e:
            raise transport_error(self.protocol, self.endpoint, e)

        # SOAP 1.2 faults come back as HTTP 500 with a Fault body
        if response.status_code not in (200, 500):
            raise ConnectorUnavailable(f'HTTP {response.status_code} from {self.endpoint}',
                                       details={'protocol': self.protocol,
                                                'status_code': response.status_code})
        try:
            return parse_response(response.content)
        except (ET.ParseError, ValueError) as e:
            raise ConnectorUnavailable(f'WSD request to {self.endpoint} failed: {e}',
                                       details={'protocol': self.protocol})
