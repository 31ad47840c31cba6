"""
Tests for webhook signature validation and intake.
"""
import hashlib
import hmac
import json

import pytest

from printcloud.errors import NotFound, SignatureInvalid, ValidationError
from printcloud.models import Printer, PrintQuota, WebhookEvent
from printcloud.services.capture import CaptureStatus
from printcloud.services.printer_status import PrinterStatusService
from printcloud.services.webhooks import WebhookService, validate_signature

SECRET = 'whsec-test'


def sign(body, secret=SECRET):
    if isinstance(body, str):
        body = body.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def job_event(job_id='ext-1', user_id=None, pages=2):
    job = {'id': job_id, 'fileName': 'invoice.pdf', 'pages': pages, 'copies': 1}
    if user_id:
        job['userId'] = user_id
    return json.dumps({'type': 'job_completed', 'source': 'print-server', 'job': job}).encode()


@pytest.fixture
def webhooks(registry, captures):
    return WebhookService(registry, captures, PrinterStatusService(registry))


@pytest.fixture
def signed_integration(registry, printer):
    return registry.create({
        'printer_id': 'printer-1',
        'type': 'HTTP',
        'endpoint': 'http://printer.local/api',
        'auth_type': 'NONE',
        'credentials': {'webhook_secret': SECRET},
    })


@pytest.fixture
def unsigned_integration(registry, printer):
    return registry.create({
        'printer_id': 'printer-1',
        'type': 'SNMP',
        'endpoint': '192.168.1.50',
        'auth_type': 'NONE',
    })


class TestValidateSignature:

    def test_valid_signature(self):
        body = b'{"type": "job_completed"}'
        assert validate_signature(body, sign(body), SECRET) is True

    def test_prefixed_and_uppercase_signature(self):
        body = '{"a": 1}'
        assert validate_signature(body, 'sha256=' + sign(body).upper(), SECRET) is True

    def test_wrong_secret(self):
        body = b'{}'
        assert validate_signature(body, sign(body, 'other'), SECRET) is False

    def test_tampered_body(self):
        assert validate_signature(b'{"pages": 9}', sign(b'{"pages": 1}'), SECRET) is False

    @pytest.mark.parametrize('signature', [None, '', 'abc', 'z' * 64, 'sha256='])
    def test_missing_or_malformed_signature(self, signature):
        assert validate_signature(b'{}', signature, SECRET) is False

    def test_rejects_non_text_body(self):
        with pytest.raises(ValidationError):
            validate_signature({'type': 'x'}, 'abc', SECRET)

    def test_rejects_empty_secret(self):
        with pytest.raises(ValidationError):
            validate_signature(b'{}', 'abc', '')


class TestReceive:

    def test_signed_job_is_captured(self, webhooks, signed_integration):
        body = job_event()
        result = webhooks.receive('printer-1', body, sign(body))

        assert result['status'] == 'captured'
        assert result['capture']['external_job_id'] == 'ext-1'
        assert result['capture']['metadata']['webhook'] is True
        assert result['capture']['metadata']['source'] == 'print-server'

    def test_bad_signature_then_good_signature_captures_once(self, webhooks, signed_integration,
                                                             captures):
        body = job_event()
        with pytest.raises(SignatureInvalid) as exc_info:
            webhooks.receive('printer-1', body, sign(body, 'wrong'))
        assert exc_info.value.http_status == 401
        assert captures.list_captures()['pagination']['total'] == 0

        webhooks.receive('printer-1', body, sign(body))
        assert captures.list_captures()['pagination']['total'] == 1

        events = WebhookEvent.get_recent('printer-1')
        assert [e['status'] for e in events] == ['captured', 'rejected']
        assert events[1]['signature_valid'] == 0

    def test_replayed_delivery_is_duplicate(self, webhooks, signed_integration, captures):
        body = job_event()
        webhooks.receive('printer-1', body, sign(body))
        result = webhooks.receive('printer-1', body, sign(body))

        assert result == {'status': 'duplicate', 'printer_id': 'printer-1',
                          'external_job_id': 'ext-1'}
        assert captures.list_captures()['pagination']['total'] == 1

    def test_no_secret_skips_signature_check(self, webhooks, unsigned_integration):
        result = webhooks.receive('printer-1', job_event(), None)
        assert result['status'] == 'captured'
        assert WebhookEvent.get_recent('printer-1')[0]['signature_valid'] is None

    def test_job_with_user_is_processed(self, webhooks, unsigned_integration, make_user):
        make_user('user-1')
        result = webhooks.receive('printer-1', job_event(user_id='user-1'), None)

        assert result['status'] == 'processed'
        assert result['outcome']['status'] == CaptureStatus.PROCESSED.value
        assert PrintQuota.get('user-1')['current_usage'] == 2

    def test_reconciliation_failure_keeps_capture(self, webhooks, unsigned_integration, make_user):
        make_user('user-1', monthly_limit=1)
        result = webhooks.receive('printer-1', job_event(user_id='user-1'), None)

        assert result['status'] == 'captured'
        assert result['reconciliation_error']['error'] == 'QUOTA_EXCEEDED'

    def test_status_update_event(self, webhooks, unsigned_integration):
        body = json.dumps({'type': 'status_update',
                           'status': {'status': 'WARNING', 'toner_levels': {'black': 5}}})
        result = webhooks.receive('printer-1', body, None)

        assert result['status'] == 'status_updated'
        printer = Printer.get('printer-1')
        assert printer['status'] == 'WARNING'
        assert printer['toner_levels'] == {'black': 5}

    def test_unknown_event_is_ignored(self, webhooks, unsigned_integration):
        result = webhooks.receive('printer-1', b'{"type": "paper_added"}', None)
        assert result == {'status': 'ignored', 'type': 'paper_added'}

    def test_missing_printer_header(self, webhooks):
        with pytest.raises(ValidationError):
            webhooks.receive(None, job_event(), None)

    def test_unknown_printer(self, webhooks, db):
        with pytest.raises(NotFound):
            webhooks.receive('ghost', job_event(), None)

    def test_printer_without_integration(self, webhooks, printer):
        with pytest.raises(NotFound):
            webhooks.receive('printer-1', job_event(), None)

    @pytest.mark.parametrize('body', [b'not json', b'[1, 2]'])
    def test_body_must_be_json_object(self, webhooks, unsigned_integration, body):
        with pytest.raises(ValidationError):
            webhooks.receive('printer-1', body, None)

    def test_job_completed_requires_job(self, webhooks, unsigned_integration):
        with pytest.raises(ValidationError):
            webhooks.receive('printer-1', b'{"type": "job_completed"}', None)

    def test_storage_failure_is_audited(self, webhooks, unsigned_integration, monkeypatch):
        def broken_capture(data):
            raise RuntimeError('database is locked')
        monkeypatch.setattr(webhooks.captures, 'capture_job', broken_capture)

        with pytest.raises(RuntimeError):
            webhooks.receive('printer-1', job_event(), None)

        event = WebhookEvent.get_recent('printer-1')[0]
        assert event['status'] == 'failed'
        assert event['event_type'] == 'job_completed'
        assert event['error'] == 'database is locked'

    def test_unreadable_credentials_are_audited(self, webhooks, unsigned_integration, monkeypatch):
        def broken_list(printer_id=None):
            raise ValueError('Failed to decrypt credentials')
        monkeypatch.setattr(webhooks.registry, 'list', broken_list)

        with pytest.raises(ValueError):
            webhooks.receive('printer-1', job_event(), None)

        assert WebhookEvent.get_recent('printer-1')[0]['status'] == 'failed'

    def test_recent_events(self, webhooks, signed_integration):
        body = job_event()
        with pytest.raises(SignatureInvalid):
            webhooks.receive('printer-1', body, 'bad')
        webhooks.receive('printer-1', body, sign(body))

        events = webhooks.recent_events('printer-1', limit=1)
        assert len(events) == 1
        assert events[0]['status'] == 'captured'
        assert events[0]['signature_valid'] is True
