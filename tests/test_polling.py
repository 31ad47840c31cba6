"""
Tests for the polling scheduler, using fake registry, status and connectors.
"""
import threading
import time
from unittest.mock import Mock

import pytest

from printcloud.errors import ConnectorUnavailable, NotFound
from printcloud.services.connectors import AuthType, IntegrationType, PrinterState, PrinterStatus
from printcloud.services.integration_registry import PrinterIntegration
from printcloud.services.polling import PollingScheduler


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_integration(printer_id, is_active=True):
    return PrinterIntegration(
        id=f'int-{printer_id}',
        printer_id=printer_id,
        type=IntegrationType.HTTP,
        endpoint='http://printer.local/api',
        auth_type=AuthType.NONE,
        poll_interval=3600,
        is_active=is_active,
    )


class FakeRegistry:

    def __init__(self, *integrations):
        self.integrations = {i.id: i for i in integrations}
        self.synced = []

    def list_active(self):
        return [i for i in self.integrations.values() if i.is_active]

    def get_by_id(self, integration_id):
        if integration_id not in self.integrations:
            raise NotFound(f'Integration not found: {integration_id}')
        return self.integrations[integration_id]

    def get(self, printer_id, type=None):
        candidates = sorted((i for i in self.integrations.values() if i.printer_id == printer_id),
                            key=lambda i: not i.is_active)
        if not candidates:
            raise NotFound(f'Integration not found for printer {printer_id}')
        return candidates[0]

    def mark_synced(self, integration_id, timestamp=None):
        self.synced.append(integration_id)


class FakeStatusService:

    def __init__(self):
        self.lock = threading.Lock()
        self.writes = []

    def apply(self, printer_id, status, source='poll'):
        with self.lock:
            self.writes.append((printer_id, status.status.value, source))

    def record_failure(self, printer_id, message, source='poll'):
        with self.lock:
            self.writes.append((printer_id, 'ERROR', message))

    def writes_for(self, printer_id):
        with self.lock:
            return [w for w in self.writes if w[0] == printer_id]


class FakeConnector:

    def __init__(self, state=PrinterState.ONLINE, error=None, release=None, delay=0.0):
        self.state = state
        self.error = error
        self.release = release
        self.delay = delay
        self.started = threading.Event()
        self.calls = 0

    def get_status(self):
        self.calls += 1
        self.started.set()
        if self.release is not None:
            self.release.wait(10)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PrinterStatus(status=self.state)


@pytest.fixture
def harness():
    """Build a scheduler over fakes; stops it afterwards."""
    schedulers = []

    def _build(connectors, integrations=None, **kwargs):
        registry = FakeRegistry(*(integrations or [make_integration(pid) for pid in connectors]))
        status_service = FakeStatusService()
        scheduler = PollingScheduler(
            registry,
            status_service,
            connector_factory=lambda integration: connectors[integration.printer_id],
            **kwargs,
        )
        schedulers.append(scheduler)
        return scheduler, registry, status_service

    yield _build
    for scheduler in schedulers:
        scheduler.stop()


class TestLifecycle:

    def test_start_polls_every_active_printer(self, harness):
        connectors = {'p1': FakeConnector(), 'p2': FakeConnector(PrinterState.PRINTING)}
        scheduler, registry, status = harness(connectors)

        result = scheduler.start()

        assert result['running'] is True
        assert result['active_printers'] == ['p1', 'p2']
        assert wait_for(lambda: len(status.writes) == 2)
        assert set(registry.synced) == {'int-p1', 'int-p2'}
        assert status.writes_for('p2') == [('p2', 'PRINTING', 'poll')]

    def test_start_twice_is_harmless(self, harness):
        scheduler, _, status = harness({'p1': FakeConnector()})
        scheduler.start()
        scheduler.start()
        assert wait_for(lambda: len(status.writes) == 1)
        assert scheduler.status()['total_active_printers'] == 1

    def test_inactive_integrations_are_not_polled(self, harness):
        connectors = {'p1': FakeConnector(), 'p2': FakeConnector()}
        scheduler, _, _ = harness(connectors, [make_integration('p1'),
                                               make_integration('p2', is_active=False)])
        assert scheduler.start()['active_printers'] == ['p1']

    def test_restart(self, harness):
        scheduler, _, status = harness({'p1': FakeConnector()})
        scheduler.start()
        assert wait_for(lambda: len(status.writes) == 1)

        result = scheduler.restart()

        assert result['running'] is True
        assert result['active_printers'] == ['p1']
        assert wait_for(lambda: len(status.writes) == 2)

    def test_stop_waits_for_in_flight_poll_then_nothing_writes(self, harness):
        release = threading.Event()
        connector = FakeConnector(release=release)
        scheduler, _, status = harness({'p1': connector})
        scheduler.start()
        assert connector.started.wait(5)

        stopper = threading.Thread(target=scheduler.stop)
        stopper.start()
        time.sleep(0.2)
        assert stopper.is_alive()

        release.set()
        stopper.join(5)
        assert not stopper.is_alive()

        assert scheduler.running is False
        writes_after_stop = list(status.writes)
        assert writes_after_stop == [('p1', 'ONLINE', 'poll')]
        time.sleep(0.2)
        assert status.writes == writes_after_stop
        assert scheduler.status() == {'running': False, 'total_active_printers': 0,
                                      'active_printers': [], 'printers': {}}


class TestPollBehaviour:

    def test_failure_is_isolated_to_one_printer(self, harness):
        connectors = {
            'p1': FakeConnector(error=ConnectorUnavailable('HTTP request to p1 timed out')),
            'p2': FakeConnector(),
        }
        scheduler, registry, status = harness(connectors)
        scheduler.start()

        assert wait_for(lambda: len(status.writes) == 2)
        assert status.writes_for('p1') == [
            ('p1', 'ERROR', 'Connection failed: HTTP request to p1 timed out')]
        assert status.writes_for('p2') == [('p2', 'ONLINE', 'poll')]
        assert registry.synced == ['int-p2']

        printers = scheduler.status()['printers']
        assert printers['p1']['last_poll']['result'] == 'error'
        assert printers['p2']['last_poll']['result'] == 'ok'

    def test_unexpected_exception_is_contained(self, harness):
        connectors = {'p1': FakeConnector(error=RuntimeError('boom')), 'p2': FakeConnector()}
        scheduler, _, status = harness(connectors)
        scheduler.start()

        assert wait_for(lambda: len(status.writes) == 2)
        assert scheduler.poll_printer('p2').result == 'ok'

    def test_overlapping_poll_is_skipped(self, harness):
        release = threading.Event()
        connector = FakeConnector(release=release)
        scheduler, _, status = harness({'p1': connector})
        scheduler.start()
        assert connector.started.wait(5)

        outcome = scheduler.poll_printer('p1')

        assert outcome.result == 'skipped'
        assert connector.calls == 1
        assert scheduler.status()['printers']['p1']['skipped_ticks'] == 1
        release.set()
        assert wait_for(lambda: len(status.writes) == 1)

    def test_concurrency_cap(self, harness):
        active = {'now': 0, 'max': 0}
        lock = threading.Lock()

        class CountingConnector(FakeConnector):
            def get_status(self):
                with lock:
                    active['now'] += 1
                    active['max'] = max(active['max'], active['now'])
                time.sleep(0.1)
                with lock:
                    active['now'] -= 1
                return super().get_status()

        connectors = {f'p{i}': CountingConnector() for i in range(4)}
        scheduler, _, status = harness(connectors, max_concurrent=1)
        scheduler.start()

        assert wait_for(lambda: len(status.writes) == 4)
        assert active['max'] == 1

    def test_deactivated_integration_skips_write(self, harness):
        scheduler, registry, status = harness({'p1': FakeConnector()})
        scheduler.start()
        assert wait_for(lambda: len(status.writes) == 1)

        registry.integrations['int-p1'].is_active = False
        outcome = scheduler.poll_printer('p1')

        assert outcome.result == 'inactive'
        assert len(status.writes) == 1

    def test_job_history_is_captured(self, harness):
        class HistoryConnector(FakeConnector):
            def get_job_history(self):
                return [{'jobId': 'a'}, {'jobId': 'b'}]

        captures = Mock()
        captures.ingest_job_history.return_value = {'captured': 2, 'duplicates': 0, 'invalid': 0}
        scheduler, _, status = harness({'p1': HistoryConnector()}, captures=captures)
        scheduler.start()

        assert wait_for(lambda: captures.ingest_job_history.called)
        captures.ingest_job_history.assert_called_with('p1', [{'jobId': 'a'}, {'jobId': 'b'}])
        assert wait_for(lambda: (scheduler.status()['printers']['p1']['last_poll'] or {})
                        .get('jobs_captured') == 2)

    def test_poll_printer_requires_supervised_printer(self, harness):
        scheduler, _, _ = harness({'p1': FakeConnector()})
        with pytest.raises(NotFound):
            scheduler.poll_printer('p1')


class TestSupervision:

    def test_remove_printer_does_not_block_others(self, harness):
        release = threading.Event()
        slow = FakeConnector(release=release)
        connectors = {'p1': slow, 'p2': FakeConnector()}
        scheduler, _, status = harness(connectors)
        scheduler.start()
        assert slow.started.wait(5)
        assert wait_for(lambda: len(status.writes_for('p2')) == 1)

        started = time.monotonic()
        result = scheduler.remove_printer('p1')
        assert time.monotonic() - started < 1.0
        assert result['active_printers'] == ['p2']

        assert scheduler.poll_printer('p2').result == 'ok'
        assert len(status.writes_for('p2')) == 2

        release.set()

    def test_remove_unknown_printer_is_noop(self, harness):
        scheduler, _, _ = harness({'p1': FakeConnector()})
        scheduler.start()
        assert scheduler.remove_printer('ghost')['active_printers'] == ['p1']

    def test_add_printer(self, harness):
        connectors = {'p1': FakeConnector(), 'p2': FakeConnector()}
        scheduler, registry, status = harness(connectors, [make_integration('p1')])
        scheduler.start()

        registry.integrations['int-p2'] = make_integration('p2')
        result = scheduler.add_printer('int-p2')

        assert result['active_printers'] == ['p1', 'p2']
        assert wait_for(lambda: len(status.writes_for('p2')) == 1)

    def test_add_unknown_integration(self, harness):
        scheduler, _, _ = harness({'p1': FakeConnector()})
        scheduler.start()
        with pytest.raises(NotFound):
            scheduler.add_printer('int-ghost')

    def test_add_inactive_integration_is_ignored(self, harness):
        connectors = {'p1': FakeConnector(), 'p2': FakeConnector()}
        scheduler, _, _ = harness(connectors, [make_integration('p1'),
                                               make_integration('p2', is_active=False)])
        scheduler.start()
        assert scheduler.add_printer('int-p2')['active_printers'] == ['p1']

    def test_add_while_stopped_waits_for_start(self, harness):
        scheduler, _, status = harness({'p1': FakeConnector()})
        assert scheduler.add_printer('int-p1')['active_printers'] == []
        assert status.writes == []

    def test_refresh_printer_follows_registry(self, harness):
        connectors = {'p1': FakeConnector()}
        scheduler, registry, _ = harness(connectors)
        scheduler.start()

        registry.integrations['int-p1'].is_active = False
        assert scheduler.refresh_printer('p1')['active_printers'] == []

        registry.integrations['int-p1'].is_active = True
        assert scheduler.refresh_printer('p1')['active_printers'] == ['p1']
