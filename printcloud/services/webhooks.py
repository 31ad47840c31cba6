"""
Webhook intake.

Print servers push job-completion and status events here. Deliveries are
authenticated with an HMAC-SHA256 signature over the raw body whenever the
printer's integration has a ``webhook_secret`` credential.
"""

import hashlib
import hmac
import json
import logging
import string
from typing import Any, Dict, List, Optional, Union

from config import config as settings
from printcloud.errors import (
    DuplicateCapture,
    NotFound,
    QuotaExceeded,
    QuotaNotFound,
    SignatureInvalid,
    UserNotFound,
    ValidationError,
)
from printcloud.models import Printer, WebhookEvent, now_iso
from printcloud.services.capture import CaptureService, normalize_vendor_job
from printcloud.services.connectors import PrinterStatus
from printcloud.services.integration_registry import IntegrationRegistry
from printcloud.services.printer_status import PrinterStatusService

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

_HEX_DIGITS = set(string.hexdigits)


def validate_signature(raw_body: Union[bytes, str], signature: Optional[str], secret: str) -> bool:
    """
    Check an HMAC-SHA256 signature of the raw request body.

    The signature is hex, optionally prefixed with ``sha256=``. Returns False
    for a missing, malformed or mismatched signature.

    Raises:
        ValidationError: body is not bytes/str, or the secret is empty.
    """
    if not isinstance(raw_body, (bytes, str)):
        raise ValidationError('Webhook body must be bytes or str')
    if not isinstance(secret, str) or not secret:
        raise ValidationError('Webhook secret must be a non-empty string')

    if not isinstance(signature, str) or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(settings.WEBHOOK_SIGNATURE_PREFIX):
        provided = provided[len(settings.WEBHOOK_SIGNATURE_PREFIX):]
    if len(provided) != hashlib.sha256().digest_size * 2 or not set(provided) <= _HEX_DIGITS:
        return False

    body = raw_body.encode('utf-8') if isinstance(raw_body, str) else raw_body
    expected = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided.lower(), expected)


class WebhookService:
    """Authenticates webhook deliveries and feeds them into capture or status."""

    def __init__(self, registry: IntegrationRegistry, captures: CaptureService,
                 status_service: PrinterStatusService):
        self.registry = registry
        self.captures = captures
        self.status_service = status_service

    validate_signature = staticmethod(validate_signature)

    def receive(self, printer_id: Optional[str], raw_body: Union[bytes, str],
                signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate, parse and process one delivery.

        Raises:
            ValidationError: missing printer header or a body that is not a JSON object.
            NotFound: unknown printer or no integration configured.
            SignatureInvalid: a secret is configured and the signature does not match.
        """
        if not printer_id:
            raise ValidationError('Missing printer ID header', field=settings.WEBHOOK_PRINTER_HEADER)
        if Printer.get(printer_id) is None:
            raise NotFound(f'Printer not found: {printer_id}', details={'printer_id': printer_id})

        try:
            integrations = self.registry.list(printer_id)
        except Exception as e:
            WebhookEvent.record(printer_id, None, None, 'failed', str(e))
            raise
        if not integrations:
            raise NotFound(f'No integration configured for printer {printer_id}',
                           details={'printer_id': printer_id})

        secrets = [i.webhook_secret for i in integrations if i.webhook_secret]
        signature_valid = None
        if secrets:
            signature_valid = any(validate_signature(raw_body, signature, s) for s in secrets)
            if not signature_valid:
                WebhookEvent.record(printer_id, None, False, 'rejected', 'invalid signature')
                audit_logger.warning('webhook_signature_rejected', extra={'printer_id': printer_id})
                raise SignatureInvalid(printer_id)
        else:
            logger.debug(f"No webhook secret configured for printer {printer_id}; "
                         f"signature check skipped")

        try:
            payload = json.loads(raw_body)
        except (TypeError, ValueError):
            WebhookEvent.record(printer_id, None, signature_valid, 'rejected', 'invalid JSON')
            raise ValidationError('Webhook body must be valid JSON')
        if not isinstance(payload, dict):
            WebhookEvent.record(printer_id, None, signature_valid, 'rejected', 'not an object')
            raise ValidationError('Webhook body must be a JSON object')

        event_type = payload.get('type')
        try:
            result = self.process_webhook(printer_id, payload)
        except ValidationError as e:
            WebhookEvent.record(printer_id, event_type, signature_valid, 'rejected', e.message)
            raise
        except Exception as e:
            WebhookEvent.record(printer_id, event_type, signature_valid, 'failed', str(e))
            raise

        WebhookEvent.record(printer_id, event_type, signature_valid, result['status'],
                            (result.get('reconciliation_error') or {}).get('message'))
        return result

    def recent_events(self, printer_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        events = WebhookEvent.get_recent(printer_id, limit)
        for event in events:
            if event['signature_valid'] is not None:
                event['signature_valid'] = bool(event['signature_valid'])
        return events

    def process_webhook(self, printer_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize a vendor payload and route it to capture or status update."""
        event_type = payload.get('type')

        if event_type == 'job_completed':
            return self._job_completed(printer_id, payload)

        if event_type == 'status_update':
            status = PrinterStatus.from_dict(payload.get('status'))
            self.status_service.apply(printer_id, status, source='webhook')
            logger.info(f"Webhook: status update for printer {printer_id}: {status.status.value}")
            return {'status': 'status_updated', 'printer_status': status.to_dict()}

        logger.info(f"Webhook: ignoring event type {event_type!r} for printer {printer_id}")
        return {'status': 'ignored', 'type': event_type}

    def _job_completed(self, printer_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        job = payload.get('job')
        if not isinstance(job, dict):
            raise ValidationError('job is required for job_completed events', field='job')

        data = normalize_vendor_job(printer_id, job, {
            'webhook': True,
            'source': payload.get('source', 'unknown'),
            'timestamp': payload.get('timestamp') or now_iso(),
        })
        try:
            capture = self.captures.capture_job(data)
        except DuplicateCapture as e:
            logger.info(f"Webhook: job {e.external_job_id} from printer {printer_id} already captured")
            return {
                'status': 'duplicate',
                'printer_id': e.printer_id,
                'external_job_id': e.external_job_id,
            }

        logger.info(f"Webhook: captured job {capture.external_job_id} from printer {printer_id}")
        result: Dict[str, Any] = {'status': 'captured', 'capture': capture.to_dict()}

        if capture.user_id:
            try:
                outcome = self.captures.process_capture(capture.id)
                result['status'] = 'processed'
                result['outcome'] = outcome.to_dict()
            except (QuotaExceeded, UserNotFound, QuotaNotFound) as e:
                result['reconciliation_error'] = e.to_dict()
        return result
