"""
Printer connectors.

One connector class per wire protocol, selected by ``create_connector`` from
the integration's ``type``.
"""
import logging
from typing import Dict, Optional, Type

from printcloud.errors import UnsupportedProtocol
from printcloud.services.connectors.base import (
    AuthType,
    IntegrationType,
    JobHistoryProvider,
    PrinterConnector,
    PrinterState,
    PrinterStatus,
)
from printcloud.services.connectors.http import HTTPConnector
from printcloud.services.connectors.ipp import IPPConnector
from printcloud.services.connectors.snmp import SNMPConnector
from printcloud.services.connectors.wsd import WSDConnector

logger = logging.getLogger(__name__)

CONNECTOR_TYPES: Dict[IntegrationType, Type] = {
    IntegrationType.SNMP: SNMPConnector,
    IntegrationType.HTTP: HTTPConnector,
    IntegrationType.IPP: IPPConnector,
    IntegrationType.WSD: WSDConnector,
}


def get_connector_class(integration_type) -> Type:
    """Look up the connector class for an integration type."""
    try:
        kind = IntegrationType(str(getattr(integration_type, 'value', integration_type)).upper())
    except ValueError:
        raise UnsupportedProtocol(integration_type)
    return CONNECTOR_TYPES[kind]


def create_connector(integration, timeout: Optional[float] = None) -> PrinterConnector:
    """
    Build the connector for an integration.

    Raises:
        UnsupportedProtocol: unknown integration type.
        InvalidConfig: endpoint not usable by the selected protocol.
    """
    connector_class = get_connector_class(integration.type)
    return connector_class(integration, timeout=timeout)


__all__ = [
    'AuthType',
    'CONNECTOR_TYPES',
    'HTTPConnector',
    'IPPConnector',
    'IntegrationType',
    'JobHistoryProvider',
    'PrinterConnector',
    'PrinterState',
    'PrinterStatus',
    'SNMPConnector',
    'WSDConnector',
    'create_connector',
    'get_connector_class',
]
