"""
SNMP connector - SNMPv2c reads of the Host Resources and Printer MIBs
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from pysnmp.error import PySnmpError

from config import config as settings
from printcloud.errors import ConnectorUnavailable, InvalidConfig
from printcloud.services.connectors.base import PrinterState, PrinterStatus, percent, supply_key

logger = logging.getLogger(__name__)

SUPPLY_SLOTS = range(1, 5)
TRAY_SLOTS = range(1, 5)

PRINTER_OIDS = {
    # Host Resources MIB
    'hrDeviceStatus': '1.3.6.1.2.1.25.3.2.1.5.1',
    'hrPrinterStatus': '1.3.6.1.2.1.25.3.5.1.1.1',
    'hrPrinterDetectedErrorState': '1.3.6.1.2.1.25.3.5.1.2.1',

    # Printer MIB lifetime page counter
    'prtMarkerLifeCount': '1.3.6.1.2.1.43.10.2.1.4.1.1',
}
for _i in SUPPLY_SLOTS:
    PRINTER_OIDS[f'supply{_i}_desc'] = f'1.3.6.1.2.1.43.11.1.1.6.1.{_i}'
    PRINTER_OIDS[f'supply{_i}_max'] = f'1.3.6.1.2.1.43.11.1.1.8.1.{_i}'
    PRINTER_OIDS[f'supply{_i}_level'] = f'1.3.6.1.2.1.43.11.1.1.9.1.{_i}'
for _i in TRAY_SLOTS:
    PRINTER_OIDS[f'tray{_i}_max'] = f'1.3.6.1.2.1.43.8.2.1.9.1.{_i}'
    PRINTER_OIDS[f'tray{_i}_level'] = f'1.3.6.1.2.1.43.8.2.1.10.1.{_i}'
    PRINTER_OIDS[f'tray{_i}_name'] = f'1.3.6.1.2.1.43.8.2.1.13.1.{_i}'

# hrDeviceStatus: 1 unknown, 2 running, 3 warning, 4 testing, 5 down
DEVICE_RUNNING = 2
DEVICE_WARNING = 3
DEVICE_DOWN = 5

# hrPrinterStatus: 1 other, 2 unknown, 3 idle, 4 printing, 5 warmup
PRINTER_STATUS_CODES = {
    3: PrinterState.ONLINE,
    4: PrinterState.PRINTING,
    5: PrinterState.ONLINE,
}

# hrPrinterDetectedErrorState bits, most significant bit of the first octet is bit 0
ERROR_STATE_BITS = [
    ('lowPaper', False),
    ('noPaper', True),
    ('lowToner', False),
    ('noToner', True),
    ('doorOpen', True),
    ('jammed', True),
    ('offline', True),
    ('serviceRequested', True),
    ('inputTrayMissing', True),
    ('outputTrayMissing', True),
    ('markerSupplyMissing', True),
    ('outputNearFull', False),
    ('outputFull', True),
    ('inputTrayEmpty', False),
    ('overduePreventMaint', False),
]


def decode_error_state(raw: bytes) -> List[Tuple[str, bool]]:
    """Return the (condition, is_error) pairs set in an hrPrinterDetectedErrorState value."""
    active = []
    for bit, (name, is_error) in enumerate(ERROR_STATE_BITS):
        octet, offset = divmod(bit, 8)
        if octet < len(raw) and raw[octet] & (0x80 >> offset):
            active.append((name, is_error))
    return active


def status_from_values(values: Dict[str, Any]) -> PrinterStatus:
    """Build a PrinterStatus from decoded OID values."""
    device_status = values.get('hrDeviceStatus')
    printer_status = values.get('hrPrinterStatus')
    if device_status is None and printer_status is None:
        raise ValueError('device did not return Host Resources printer status')

    fallback = PrinterState.ONLINE if device_status == DEVICE_RUNNING else PrinterState.WARNING
    state = PRINTER_STATUS_CODES.get(printer_status, fallback)
    if device_status == DEVICE_WARNING and state == PrinterState.ONLINE:
        state = PrinterState.WARNING

    conditions = decode_error_state(values.get('hrPrinterDetectedErrorState') or b'')
    messages = [name for name, _ in conditions]
    if any(name == 'offline' for name, _ in conditions):
        state = PrinterState.OFFLINE
    elif device_status == DEVICE_DOWN or any(is_error for _, is_error in conditions):
        state = PrinterState.ERROR
    elif conditions and state == PrinterState.ONLINE:
        state = PrinterState.WARNING

    toner = {}
    for i in SUPPLY_SLOTS:
        level, capacity = values.get(f'supply{i}_level'), values.get(f'supply{i}_max')
        if level is None or capacity is None:
            continue
        pct = percent(int(level), int(capacity))
        if pct is not None:
            toner[supply_key(str(values.get(f'supply{i}_desc') or f'Supply {i}'))] = pct

    paper = {}
    for i in TRAY_SLOTS:
        level, capacity = values.get(f'tray{i}_level'), values.get(f'tray{i}_max')
        if level is None or capacity is None:
            continue
        pct = percent(int(level), int(capacity))
        if pct is not None:
            paper[str(values.get(f'tray{i}_name') or f'tray{i}')] = pct

    life_count = values.get('prtMarkerLifeCount')
    return PrinterStatus(
        status=state,
        toner_levels=toner,
        paper_levels=paper,
        error_messages=messages,
        page_count=int(life_count) if life_count is not None else None,
    )


def parse_endpoint(endpoint: str) -> Tuple[str, int]:
    """Accept 'host', 'host:port', 'snmp://host[:port]' or 'udp://host[:port]'."""
    endpoint = (endpoint or '').strip()
    if '://' in endpoint:
        parsed = urlparse(endpoint)
        if parsed.scheme not in ('snmp', 'udp'):
            parsed = None
        host, port = (parsed.hostname, parsed.port) if parsed else (None, None)
    else:
        host, _, port_text = endpoint.partition(':')
        port = int(port_text) if port_text.isdigit() else None
        if port_text and port is None:
            host = None

    if not host:
        raise InvalidConfig('SNMP endpoint must be a host name or address',
                            field='endpoint', details={'endpoint': endpoint})
    return host, port or settings.SNMP_PORT


def _convert(name: str, value: Any) -> Any:
    if name == 'hrPrinterDetectedErrorState':
        return bytes(value.asOctets())
    if name.endswith(('_desc', '_name')):
        return str(value)
    return int(value)


class SNMPConnector:
    """Reads printer state over SNMPv2c."""

    protocol = 'SNMP'

    def __init__(self, integration, timeout: Optional[float] = None):
        self.host, self.port = parse_endpoint(integration.endpoint)
        credentials = integration.credentials or {}
        self.community = credentials.get('community') or settings.SNMP_DEFAULT_COMMUNITY
        self.timeout = timeout or settings.CONNECTOR_TIMEOUT_SECONDS

    def get_status(self) -> PrinterStatus:
        # Total budget covers every retry of every request
        budget = self.timeout * (settings.SNMP_RETRIES + 1) + 1
        try:
            values = asyncio.run(asyncio.wait_for(self._query_all(), timeout=budget))
        except asyncio.TimeoutError:
            raise ConnectorUnavailable(
                f'SNMP request to {self.host}:{self.port} timed out',
                details={'protocol': self.protocol, 'host': self.host},
            )
        except (PySnmpError, OSError) as e:
            raise ConnectorUnavailable(
                f'SNMP transport to {self.host}:{self.port} failed: {e}',
                details={'protocol': self.protocol, 'host': self.host},
            )

        try:
            return status_from_values(values)
        except (TypeError, ValueError) as e:
            raise ConnectorUnavailable(f'Unusable SNMP response from {self.host}: {e}',
                                       details={'protocol': self.protocol, 'host': self.host})

    async def _query_all(self) -> Dict[str, Any]:
        from pysnmp.hlapi.v1arch.asyncio import (
            get_cmd, CommunityData, UdpTransportTarget,
            ObjectType, ObjectIdentity, SnmpDispatcher
        )
        from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

        dispatcher = SnmpDispatcher()

        async def query_oid(oid_name: str, oid_value: str) -> Optional[Tuple[str, Any]]:
            error_indication, error_status, _error_index, var_binds = await get_cmd(
                dispatcher,
                CommunityData(self.community),
                await UdpTransportTarget.create((self.host, self.port),
                                                timeout=self.timeout,
                                                retries=settings.SNMP_RETRIES),
                ObjectType(ObjectIdentity(oid_value))
            )
            if error_indication:
                raise ConnectorUnavailable(
                    f'SNMP error from {self.host}: {error_indication}',
                    details={'protocol': self.protocol, 'host': self.host},
                )
            if error_status:
                logger.debug(f"SNMP OID {oid_name} on {self.host}: {error_status.prettyPrint()}")
                return None
            for var_bind in var_binds:
                value = var_bind[1]
                if isinstance(value, (NoSuchObject, NoSuchInstance, EndOfMibView)):
                    return None
                try:
                    return oid_name, _convert(oid_name, value)
                except (TypeError, ValueError):
                    return None
            return None

        try:
            results = await asyncio.gather(
                *(query_oid(name, oid) for name, oid in PRINTER_OIDS.items())
            )
        finally:
            try:
                dispatcher.transport_dispatcher.close_dispatcher()
            except Exception as e:
                logger.debug(f"SNMP dispatcher close failed: {e}")

        return dict(result for result in results if result)
