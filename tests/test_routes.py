"""
API tests through the Flask test client.
"""
import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import pytest
from pysnmp.error import PySnmpError

from printcloud.errors import ConnectorUnavailable
from printcloud.models import Printer
from printcloud.services.connectors import PrinterState, PrinterStatus, SNMPConnector

API = '/api/printer-integration'


class StubConnector:

    def __init__(self, status=None, error=None):
        self.status = status
        self.error = error

    def get_status(self):
        if self.error is not None:
            raise self.error
        return self.status


@pytest.fixture
def http_integration(client, printer):
    response = client.post(API, json={
        'printer_id': 'printer-1',
        'type': 'HTTP',
        'endpoint': 'http://printer.local/api',
        'auth_type': 'NONE',
        'credentials': {'webhook_secret': 'whsec-route'},
        'poll_interval': 300,
    })
    assert response.status_code == 201
    return response.get_json()['integration']


class TestIntegrationRoutes:

    def test_create_and_get(self, client, http_integration):
        response = client.get(f'{API}?printer_id=printer-1')

        assert response.status_code == 200
        integration = response.get_json()['integration']
        assert integration['id'] == http_integration['id']
        assert integration['type'] == 'HTTP'
        assert 'whsec-route' not in json.dumps(integration)

    def test_duplicate_type_rejected(self, client, http_integration):
        response = client.post(API, json={
            'printer_id': 'printer-1',
            'type': 'HTTP',
            'endpoint': 'http://printer.local/other',
            'auth_type': 'NONE',
        })
        assert response.status_code == 400
        assert response.get_json()['error'] == 'INVALID_CONFIG'

    def test_body_must_be_json_object(self, client, printer):
        response = client.post(API, data='nope', content_type='text/plain')
        assert response.status_code == 400
        assert response.get_json()['error'] == 'VALIDATION_ERROR'

    def test_unknown_printer(self, client, db):
        response = client.get(f'{API}?printer_id=ghost')
        assert response.status_code == 404

    def test_list_update_delete(self, client, http_integration):
        integration_id = http_integration['id']

        listed = client.get(API).get_json()['integrations']
        assert [i['id'] for i in listed] == [integration_id]

        response = client.put(f'{API}/{integration_id}', json={'poll_interval': 120})
        assert response.status_code == 200
        assert response.get_json()['integration']['poll_interval'] == 120

        response = client.delete(f'{API}/{integration_id}')
        assert response.get_json() == {'message': 'Integration deleted', 'id': integration_id}
        assert client.get(API).get_json()['integrations'] == []


class TestStatusRoutes:

    def test_push_then_read(self, client, printer):
        response = client.post(f'{API}/status', json={
            'printer_id': 'printer-1',
            'status': 'PRINTING',
            'toner_levels': {'black': 42},
            'job_queue': 2,
        })
        assert response.status_code == 200
        assert response.get_json()['printer']['status'] == 'PRINTING'

        latest = client.get(f'{API}/status?printer_id=printer-1').get_json()
        assert latest['status']['status'] == 'PRINTING'
        assert latest['printer']['toner_levels'] == {'black': 42}

    def test_push_rejects_unknown_state(self, client, printer):
        response = client.post(f'{API}/status', json={'printer_id': 'printer-1',
                                                       'status': 'ON_FIRE'})
        assert response.status_code == 400

    def test_status_requires_printer_id(self, client, db):
        response = client.get(f'{API}/status')
        assert response.status_code == 400
        assert response.get_json()['details']['field'] == 'printer_id'

    def test_manual_sync(self, app, client, http_integration):
        app.extensions['printer_status'].connector_factory = lambda integration: StubConnector(
            PrinterStatus(status=PrinterState.ONLINE, toner_levels={'black': 40}))

        response = client.put(f'{API}/status?printer_id=printer-1')

        assert response.status_code == 200
        body = response.get_json()
        assert body['status']['status'] == 'ONLINE'
        assert body['integration_id'] == http_integration['id']
        assert Printer.get('printer-1')['toner_levels'] == {'black': 40}

    def test_manual_sync_failure_returns_503_and_records_error(self, app, client,
                                                              http_integration):
        app.extensions['printer_status'].connector_factory = lambda integration: StubConnector(
            error=ConnectorUnavailable('HTTP request to printer.local timed out'))

        response = client.put(f'{API}/status?printer_id=printer-1')

        assert response.status_code == 503
        assert response.get_json()['error'] == 'CONNECTOR_UNAVAILABLE'
        stored = Printer.get('printer-1')
        assert stored['status'] == 'ERROR'
        assert stored['error_messages'] == [
            'Connection failed: HTTP request to printer.local timed out']

    def test_manual_sync_unexpected_error_returns_503_and_records_error(self, app, client,
                                                                       http_integration):
        app.extensions['printer_status'].connector_factory = lambda integration: StubConnector(
            error=OSError('Name or service not known'))

        response = client.put(f'{API}/status?printer_id=printer-1')

        assert response.status_code == 503
        assert response.get_json()['error'] == 'CONNECTOR_UNAVAILABLE'
        stored = Printer.get('printer-1')
        assert stored['status'] == 'ERROR'
        assert stored['error_messages'] == ['Connection failed: Name or service not known']

    def test_manual_sync_unresolvable_snmp_host(self, client, printer, monkeypatch):
        client.post(API, json={'printer_id': 'printer-1', 'type': 'SNMP',
                               'endpoint': 'no-such-printer.invalid', 'auth_type': 'NONE'})
        monkeypatch.setattr(SNMPConnector, '_query_all', AsyncMock(
            side_effect=PySnmpError('Bad IPv4/UDP transport address no-such-printer.invalid@161')))

        response = client.put(f'{API}/status?printer_id=printer-1')

        assert response.status_code == 503
        assert Printer.get('printer-1')['status'] == 'ERROR'

    def test_system_status(self, client, printer):
        body = client.get(f'{API}/status/system').get_json()

        assert body['services']['polling']['running'] is False
        assert body['statistics']['printers']['total'] == 1
        assert body['health']['overall'] == 'warning'


class TestPollingRoutes:

    def test_start_and_stop(self, client, db):
        response = client.post(f'{API}/polling', json={'action': 'start'})
        assert response.status_code == 200
        assert response.get_json()['polling']['running'] is True
        assert client.get(f'{API}/polling').get_json()['running'] is True

        response = client.post(f'{API}/polling', json={'action': 'stop'})
        assert response.get_json() == {'action': 'stop', 'polling': {
            'running': False, 'total_active_printers': 0, 'active_printers': [], 'printers': {}}}

    def test_invalid_action(self, client, db):
        response = client.post(f'{API}/polling', json={'action': 'explode'})
        assert response.status_code == 400
        assert 'restart' in response.get_json()['details']['allowed']

    def test_add_printer_requires_integration_id(self, client, db):
        response = client.post(f'{API}/polling', json={'action': 'add_printer'})
        assert response.status_code == 400

    def test_add_unknown_integration(self, client, db):
        response = client.post(f'{API}/polling', json={'action': 'add_printer',
                                                       'integration_id': 'missing'})
        assert response.status_code == 404


class TestCaptureRoutes:

    def test_capture_duplicate_and_invalid(self, client, printer, capture_data):
        response = client.post(f'{API}/capture', json=capture_data())
        assert response.status_code == 201
        assert response.get_json()['capture']['status'] == 'CAPTURED'

        response = client.post(f'{API}/capture', json=capture_data())
        assert response.status_code == 409
        assert response.get_json()['error'] == 'DUPLICATE_CAPTURE'

        response = client.post(f'{API}/capture', json=capture_data(pages=0))
        assert response.status_code == 400

    def test_process(self, client, printer, capture_data, make_user):
        make_user('user-1')
        capture_id = client.post(f'{API}/capture', json=capture_data()).get_json()['capture']['id']

        response = client.post(f'{API}/capture/{capture_id}/process', json={'user_id': 'user-1'})

        assert response.status_code == 200
        body = response.get_json()
        assert body['status'] == 'PROCESSED'
        assert body['cost'] == pytest.approx(0.30)

    def test_process_quota_exceeded(self, client, printer, capture_data, make_user):
        make_user('user-1', monthly_limit=5)
        capture_id = client.post(f'{API}/capture',
                                 json=capture_data(user_id='user-1')).get_json()['capture']['id']

        response = client.post(f'{API}/capture/{capture_id}/process')

        assert response.status_code == 400
        assert response.get_json()['error'] == 'QUOTA_EXCEEDED'

    def test_process_unknown_capture(self, client, db):
        assert client.post(f'{API}/capture/missing/process').status_code == 404

    def test_list(self, client, printer, capture_data):
        for i in range(3):
            client.post(f'{API}/capture', json=capture_data(external_job_id=f'job-{i}'))

        body = client.get(f'{API}/capture?printer_id=printer-1&limit=2').get_json()

        assert len(body['captures']) == 2
        assert body['pagination']['total'] == 3


class TestWebhookRoute:

    def test_signature_checked(self, client, http_integration):
        body = json.dumps({'type': 'job_completed',
                           'job': {'id': 'ext-9', 'fileName': 'a.pdf', 'pages': 1}}).encode()
        signature = hmac.new(b'whsec-route', body, hashlib.sha256).hexdigest()
        headers = {'X-Printer-Id': 'printer-1', 'Content-Type': 'application/json'}

        response = client.post(f'{API}/webhook', data=body,
                               headers={**headers, 'X-Webhook-Signature': 'sha256=' + '0' * 64})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'SIGNATURE_INVALID'

        response = client.post(f'{API}/webhook', data=body,
                               headers={**headers, 'X-Webhook-Signature': signature})
        assert response.status_code == 200
        assert response.get_json()['status'] == 'captured'

        events = client.get(f'{API}/webhook/events?printer_id=printer-1').get_json()['events']
        assert [e['status'] for e in events] == ['captured', 'rejected']
        assert events[1]['signature_valid'] is False

    def test_webhook_events_rejects_bad_limit(self, client, db):
        response = client.get(f'{API}/webhook/events?limit=0')
        assert response.status_code == 400


class TestErrorHandlers:

    def test_unknown_route(self, client, db):
        response = client.get('/api/nothing-here')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'NOT_FOUND'

    def test_wrong_method(self, client, db):
        response = client.patch(f'{API}/status')
        assert response.status_code == 405
        assert response.get_json()['error'] == 'METHOD_NOT_ALLOWED'
