"""
IPP connector.

Only the Get-Printer-Attributes operation is implemented, encoded by hand in
the RFC 8010 binary framing and POSTed over HTTP as ``application/ipp``.
"""
import logging
import struct
from itertools import count
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

import requests

from config import config as settings
from printcloud.errors import ConnectorUnavailable, InvalidConfig
from printcloud.services.connectors.base import (
    HTTPAuth,
    PrinterState,
    PrinterStatus,
    percent,
    supply_key,
    transport_error,
)

logger = logging.getLogger(__name__)

IPP_VERSION = (1, 1)
OP_GET_PRINTER_ATTRIBUTES = 0x000B

# Delimiter tags
TAG_OPERATION_ATTRIBUTES = 0x01
TAG_END_OF_ATTRIBUTES = 0x03

# Value tags
TAG_INTEGER = 0x21
TAG_BOOLEAN = 0x22
TAG_ENUM = 0x23
TAG_OCTET_STRING = 0x30
TAG_TEXT = 0x41
TAG_NAME = 0x42
TAG_KEYWORD = 0x44
TAG_URI = 0x45
TAG_CHARSET = 0x47
TAG_LANGUAGE = 0x48
TAG_MIME_TYPE = 0x49

_STRING_TAGS = {TAG_OCTET_STRING, TAG_TEXT, TAG_NAME, TAG_KEYWORD, TAG_URI,
                TAG_CHARSET, TAG_LANGUAGE, TAG_MIME_TYPE}

REQUESTED_ATTRIBUTES = [
    'printer-state',
    'printer-state-reasons',
    'printer-state-message',
    'queued-job-count',
    'marker-names',
    'marker-colors',
    'marker-levels',
    'printer-input-tray',
    'printer-impressions-completed',
]

# printer-state enum (RFC 8011 5.4.11)
PRINTER_STATES = {
    3: PrinterState.ONLINE,    # idle
    4: PrinterState.PRINTING,  # processing
    5: PrinterState.ERROR,     # stopped
}

_request_ids = count(1)


def _attribute(tag: int, name: str, value: bytes) -> bytes:
    encoded_name = name.encode('utf-8')
    return (struct.pack('>BH', tag, len(encoded_name)) + encoded_name
            + struct.pack('>H', len(value)) + value)


def encode_get_printer_attributes(printer_uri: str, request_id: int,
                                  attributes: Optional[List[str]] = None) -> bytes:
    """Encode a Get-Printer-Attributes request."""
    body = bytearray(struct.pack('>BBHI', IPP_VERSION[0], IPP_VERSION[1],
                                 OP_GET_PRINTER_ATTRIBUTES, request_id))
    body.append(TAG_OPERATION_ATTRIBUTES)
    body += _attribute(TAG_CHARSET, 'attributes-charset', b'utf-8')
    body += _attribute(TAG_LANGUAGE, 'attributes-natural-language', b'en')
    body += _attribute(TAG_URI, 'printer-uri', printer_uri.encode('utf-8'))

    for index, keyword in enumerate(attributes or REQUESTED_ATTRIBUTES):
        # Additional values of a 1setOf carry an empty name
        name = 'requested-attributes' if index == 0 else ''
        body += _attribute(TAG_KEYWORD, name, keyword.encode('ascii'))

    body.append(TAG_END_OF_ATTRIBUTES)
    return bytes(body)


def _decode_value(tag: int, raw: bytes) -> Any:
    if tag in (TAG_INTEGER, TAG_ENUM):
        return struct.unpack('>i', raw)[0]
    if tag == TAG_BOOLEAN:
        return raw != b'\x00'
    if tag in _STRING_TAGS:
        return raw.decode('utf-8', errors='replace')
    return raw


def decode_response(data: bytes) -> Tuple[int, Dict[str, List[Any]]]:
    """Decode an IPP response into (status-code, {attribute: [values]}).

    Attributes from every group are merged; raises ValueError on truncated input.
    """
    if len(data) < 8:
        raise ValueError('IPP response too short')

    _major, _minor, status_code, _request_id = struct.unpack('>BBHI', data[:8])
    attributes: Dict[str, List[Any]] = {}
    offset = 8
    current: Optional[str] = None

    while offset < len(data):
        tag = data[offset]
        offset += 1
        if tag == TAG_END_OF_ATTRIBUTES:
            return status_code, attributes
        if tag <= 0x0F:
            current = None
            continue

        if offset + 2 > len(data):
            raise ValueError('truncated attribute name length')
        (name_length,) = struct.unpack('>H', data[offset:offset + 2])
        offset += 2
        name = data[offset:offset + name_length].decode('utf-8', errors='replace')
        offset += name_length

        if offset + 2 > len(data):
            raise ValueError('truncated attribute value length')
        (value_length,) = struct.unpack('>H', data[offset:offset + 2])
        offset += 2
        raw = data[offset:offset + value_length]
        if len(raw) != value_length:
            raise ValueError('truncated attribute value')
        offset += value_length

        if name_length:
            current = name
            attributes[current] = []
        elif current is None:
            raise ValueError('additional value without attribute')
        attributes[current].append(_decode_value(tag, raw))

    raise ValueError('missing end-of-attributes tag')


def _parse_input_tray(value: str) -> Tuple[Optional[str], Optional[int]]:
    """Parse a printer-input-tray string such as 'type=...;maxcapacity=250;level=100;name=Tray1;'."""
    fields = {}
    for part in value.split(';'):
        if '=' in part:
            key, _, val = part.partition('=')
            fields[key.strip()] = val.strip()
    try:
        level = int(fields.get('level', '-2'))
        capacity = int(fields.get('maxcapacity', '-2'))
    except ValueError:
        return None, None
    return fields.get('name'), percent(level, capacity)


def status_from_attributes(attributes: Dict[str, List[Any]]) -> PrinterStatus:
    """Map printer attributes onto a PrinterStatus."""
    if not attributes.get('printer-state'):
        raise ValueError('printer-state missing from response')

    state = PRINTER_STATES.get(attributes['printer-state'][0], PrinterState.WARNING)
    reasons = [r for r in attributes.get('printer-state-reasons', []) if r and r != 'none']

    if any(r.endswith('-error') for r in reasons):
        state = PrinterState.ERROR
    elif state == PrinterState.ONLINE and any(r.endswith('-warning') for r in reasons):
        state = PrinterState.WARNING

    messages = list(reasons)
    for message in attributes.get('printer-state-message', []):
        if message and state != PrinterState.ONLINE:
            messages.append(message)

    toner = {}
    names = attributes.get('marker-names', [])
    levels = attributes.get('marker-levels', [])
    for index, level in enumerate(levels):
        # Negative levels mean unknown or unavailable
        if not isinstance(level, int) or level < 0:
            continue
        name = names[index] if index < len(names) else f'marker{index + 1}'
        toner[supply_key(name)] = min(level, 100)

    paper = {}
    for index, tray in enumerate(attributes.get('printer-input-tray', [])):
        if isinstance(tray, bytes):
            tray = tray.decode('utf-8', errors='replace')
        name, pct = _parse_input_tray(tray)
        if pct is not None:
            paper[name or f'tray{index + 1}'] = pct

    queued = attributes.get('queued-job-count', [0])
    impressions = attributes.get('printer-impressions-completed')
    return PrinterStatus(
        status=state,
        toner_levels=toner,
        paper_levels=paper,
        error_messages=messages,
        job_queue=int(queued[0]) if queued else 0,
        page_count=int(impressions[0]) if impressions else None,
    )


def resolve_endpoint(endpoint: str) -> Tuple[str, str]:
    """Return (printer-uri, http url) for an ipp://, ipps:// or http(s):// endpoint."""
    parsed = urlparse(endpoint or '')
    if parsed.scheme not in ('ipp', 'ipps', 'http', 'https') or not parsed.hostname:
        raise InvalidConfig('IPP endpoint must be an ipp://, ipps:// or http(s):// URL',
                            field='endpoint', details={'endpoint': endpoint})

    path = parsed.path or '/ipp/print'
    secure = parsed.scheme in ('ipps', 'https')
    port = parsed.port or settings.IPP_DEFAULT_PORT
    netloc = f'{parsed.hostname}:{port}'
    printer_uri = urlunparse(('ipps' if secure else 'ipp', netloc, path, '', '', ''))
    http_url = urlunparse(('https' if secure else 'http', netloc, path, '', '', ''))
    return printer_uri, http_url


class IPPConnector:
    """Reads printer state through IPP Get-Printer-Attributes."""

    protocol = 'IPP'

    def __init__(self, integration, timeout: Optional[float] = None):
        self.printer_uri, self.url = resolve_endpoint(integration.endpoint)
        self.auth = HTTPAuth(integration.auth_type, integration.credentials)
        self.timeout = timeout or settings.CONNECTOR_TIMEOUT_SECONDS

    def get_status(self) -> PrinterStatus:
        payload = encode_get_printer_attributes(self.printer_uri, next(_request_ids))
        try:
            with self.auth.session() as session:
                response = session.post(self.url, data=payload, timeout=self.timeout,
                                        headers={'Content-Type': 'application/ipp'})
        except requests.RequestException as e:
            raise transport_error(self.protocol, self.url, e)

        if response.status_code != 200:
            raise ConnectorUnavailable(f'HTTP {response.status_code} from {self.url}',
                                       details={'protocol': self.protocol,
                                                'status_code': response.status_code})
        try:
            status_code, attributes = decode_response(response.content)
        except (ValueError, struct.error) as e:
            raise ConnectorUnavailable(f'Malformed IPP response from {self.url}: {e}',
                                       details={'protocol': self.protocol})

        # 0x0000-0x00FF are the successful-ok family
        if status_code > 0x00FF:
            raise ConnectorUnavailable(
                f'IPP status 0x{status_code:04x} from {self.url}',
                details={'protocol': self.protocol, 'ipp_status': status_code},
            )

        try:
            return status_from_attributes(attributes)
        except (TypeError, ValueError) as e:
            raise ConnectorUnavailable(f'Malformed IPP attributes from {self.url}: {e}',
                                       details={'protocol': self.protocol})
