"""
Services module for PrintCloud device integration

Business logic and background services, organized by domain.
"""

# Credential encryption
from printcloud.services.crypto import CredentialEncryption, get_credential_encryption

# Integration registry
from printcloud.services.integration_registry import IntegrationRegistry, PrinterIntegration

# Status application and manual sync
from printcloud.services.printer_status import PrinterStatusService

# Capture and reconciliation
from printcloud.services.capture import (
    CaptureOutcome,
    CaptureService,
    CaptureStatus,
    PrintJobCapture,
)

# Webhook intake
from printcloud.services.webhooks import WebhookService, validate_signature

# Polling
from printcloud.services.polling import PollingScheduler, PollOutcome


__all__ = [
    'CredentialEncryption',
    'get_credential_encryption',
    'IntegrationRegistry',
    'PrinterIntegration',
    'PrinterStatusService',
    'CaptureOutcome',
    'CaptureService',
    'CaptureStatus',
    'PrintJobCapture',
    'WebhookService',
    'validate_signature',
    'PollingScheduler',
    'PollOutcome',
]
