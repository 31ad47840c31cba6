"""
Polling Scheduler.

Supervises one APScheduler interval job per printer. Each run reads the
integration from the registry, calls the connector and writes the result
through the printer status service.

- Single-flight: a tick that finds the printer's previous poll still running
  is skipped, never queued.
- Failures are recorded against the printer that raised them.
- A global semaphore caps concurrent connector calls.
- ``stop()`` returns only after in-flight polls have finished writing.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import config as settings
from printcloud.errors import NotFound, PrintCloudError
from printcloud.services.capture import CaptureService
from printcloud.services.connectors import JobHistoryProvider, create_connector
from printcloud.services.integration_registry import IntegrationRegistry, PrinterIntegration
from printcloud.services.printer_status import PrinterStatusService

logger = logging.getLogger(__name__)


@dataclass
class PollOutcome:
    """Result of one poll attempt for a printer."""
    printer_id: str
    integration_id: str
    result: str  # 'ok', 'error', 'skipped', 'cancelled', 'inactive'
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    status: Optional[str] = None
    error: Optional[str] = None
    jobs_captured: int = 0

    def to_dict(self) -> Dict[str, Any]:
        duration_ms = None
        if self.finished_at:
            duration_ms = int((self.finished_at - self.started_at).total_seconds() * 1000)
        return {
            'printer_id': self.printer_id,
            'integration_id': self.integration_id,
            'result': self.result,
            'status': self.status,
            'error': self.error,
            'jobs_captured': self.jobs_captured,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_ms': duration_ms,
        }


class _PrinterWorker:
    """Scheduling state for one supervised printer."""

    def __init__(self, integration: PrinterIntegration, flight: threading.Lock):
        self.printer_id = integration.printer_id
        self.integration_id = integration.id
        self.integration_type = integration.type.value
        self.interval = integration.poll_interval
        self.flight = flight
        self.cancelled = threading.Event()
        self.skipped_ticks = 0
        self.last_outcome: Optional[PollOutcome] = None

    @property
    def job_id(self) -> str:
        return f'poll_{self.printer_id}'


class PollingScheduler:
    """Per-printer polling supervisor with an explicit start/stop lifecycle."""

    def __init__(self, registry: IntegrationRegistry, status_service: PrinterStatusService,
                 captures: Optional[CaptureService] = None,
                 connector_factory: Callable = create_connector,
                 max_concurrent: Optional[int] = None,
                 executor_workers: Optional[int] = None):
        self.registry = registry
        self.status_service = status_service
        self.captures = captures
        self.connector_factory = connector_factory
        self.executor_workers = executor_workers or settings.POLL_EXECUTOR_WORKERS

        self._lock = threading.RLock()
        self._gate = threading.BoundedSemaphore(max_concurrent or settings.POLL_MAX_CONCURRENT)
        self._workers: Dict[str, _PrinterWorker] = {}
        # Outlive workers so a replaced worker and its successor never overlap
        self._flights: Dict[str, threading.Lock] = {}
        self._scheduler: Optional[BackgroundScheduler] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> Dict[str, Any]:
        """Start polling every active integration (oldest integration per printer)."""
        with self._lock:
            if self._running:
                logger.info("Polling scheduler already running")
                return self.status()

            self._scheduler = BackgroundScheduler(
                executors={'default': ThreadPoolExecutor(self.executor_workers)},
                job_defaults={'coalesce': True, 'max_instances': 1},
            )
            self._scheduler.add_listener(self._on_job_event,
                                         EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES)
            self._scheduler.start()
            self._running = True

            for integration in self.registry.list_active():
                if integration.printer_id not in self._workers:
                    self._schedule(integration)

            logger.info(f"Polling scheduler started with {len(self._workers)} printers")
            return self.status()

    def stop(self) -> Dict[str, Any]:
        """
        Stop all polling.

        In-flight polls finish their connector call and status write; nothing
        writes after this returns.
        """
        with self._lock:
            if not self._running:
                return self.status()
            self._running = False
            workers = list(self._workers.values())
            self._workers.clear()
            scheduler, self._scheduler = self._scheduler, None
            for worker in workers:
                worker.cancelled.set()

        # Outside the lock: running jobs need it to record their outcome
        scheduler.remove_all_jobs()
        scheduler.shutdown(wait=True)
        for worker in workers:
            # Drain polls started through poll_printer()
            with worker.flight:
                pass

        logger.info(f"Polling scheduler stopped ({len(workers)} printers)")
        return self.status()

    def restart(self) -> Dict[str, Any]:
        self.stop()
        return self.start()

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def add_printer(self, integration_id: str) -> Dict[str, Any]:
        """Start (or replace) polling for the integration's printer."""
        integration = self.registry.get_by_id(integration_id)

        with self._lock:
            if not integration.is_active:
                logger.warning(f"Integration {integration_id} is inactive; not polling "
                               f"printer {integration.printer_id}")
                return self.status()

            if not self._running:
                logger.info(f"Polling scheduler not running; printer {integration.printer_id} "
                            f"will be polled on start")
                return self.status()

            existing = self._workers.get(integration.printer_id)
            if existing is not None:
                existing.cancelled.set()
            self._schedule(integration)
            logger.info(f"Added printer {integration.printer_id} to polling "
                        f"({integration.type.value}, every {integration.poll_interval}s)")
            return self.status()

    def remove_printer(self, printer_id: str) -> Dict[str, Any]:
        """Stop polling one printer without touching the others."""
        with self._lock:
            worker = self._workers.pop(printer_id, None)
            if worker is None:
                logger.info(f"Printer {printer_id} is not being polled")
                return self.status()

            worker.cancelled.set()
            if self._scheduler is not None:
                try:
                    self._scheduler.remove_job(worker.job_id)
                except JobLookupError:
                    pass
            logger.info(f"Removed printer {printer_id} from polling")
            return self.status()

    def refresh_printer(self, printer_id: str) -> Dict[str, Any]:
        """Re-select a printer's integration after its registry entries changed."""
        if not self._running:
            return self.status()
        self.remove_printer(printer_id)
        try:
            integration = self.registry.get(printer_id)
        except NotFound:
            return self.status()
        if integration.is_active:
            return self.add_printer(integration.id)
        return self.status()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            printers = {}
            for printer_id, worker in self._workers.items():
                next_run = None
                if self._scheduler is not None:
                    job = self._scheduler.get_job(worker.job_id)
                    if job is not None and job.next_run_time:
                        next_run = job.next_run_time.isoformat()
                printers[printer_id] = {
                    'integration_id': worker.integration_id,
                    'type': worker.integration_type,
                    'poll_interval': worker.interval,
                    'skipped_ticks': worker.skipped_ticks,
                    'next_run_time': next_run,
                    'last_poll': worker.last_outcome.to_dict() if worker.last_outcome else None,
                }
            return {
                'running': self._running,
                'total_active_printers': len(self._workers),
                'active_printers': sorted(self._workers),
                'printers': printers,
            }

    def poll_printer(self, printer_id: str) -> PollOutcome:
        """Poll a supervised printer now, subject to the same single-flight rule."""
        with self._lock:
            worker = self._workers.get(printer_id)
        if worker is None:
            raise NotFound(f'Printer {printer_id} is not being polled',
                           details={'printer_id': printer_id})
        return self._run_poll(worker)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule(self, integration: PrinterIntegration) -> None:
        flight = self._flights.setdefault(integration.printer_id, threading.Lock())
        worker = _PrinterWorker(integration, flight)
        self._workers[worker.printer_id] = worker
        self._scheduler.add_job(
            self._run_poll,
            trigger=IntervalTrigger(seconds=worker.interval),
            args=[worker],
            id=worker.job_id,
            name=f'Poll printer {worker.printer_id}',
            replace_existing=True,
            next_run_time=datetime.now(),
        )

    def _on_job_event(self, event) -> None:
        printer_id = event.job_id[len('poll_'):] if event.job_id.startswith('poll_') else None
        if event.code == EVENT_JOB_MAX_INSTANCES:
            with self._lock:
                worker = self._workers.get(printer_id)
                if worker is not None:
                    worker.skipped_ticks += 1
            logger.debug(f"Skipped poll of printer {printer_id}: previous poll still running")
        elif event.code == EVENT_JOB_ERROR:
            logger.error(f"Poll job {event.job_id} raised: {event.exception}")

    def _record(self, worker: _PrinterWorker, outcome: PollOutcome) -> PollOutcome:
        outcome.finished_at = outcome.finished_at or datetime.now()
        with self._lock:
            if outcome.result == 'skipped':
                worker.skipped_ticks += 1
            else:
                worker.last_outcome = outcome
        return outcome

    def _run_poll(self, worker: _PrinterWorker) -> PollOutcome:
        if worker.cancelled.is_set():
            return PollOutcome(worker.printer_id, worker.integration_id, 'cancelled')

        if not worker.flight.acquire(blocking=False):
            logger.debug(f"Poll of printer {worker.printer_id} still in flight; skipping tick")
            return self._record(worker, PollOutcome(worker.printer_id, worker.integration_id,
                                                    'skipped'))
        try:
            with self._gate:
                if worker.cancelled.is_set():
                    return PollOutcome(worker.printer_id, worker.integration_id, 'cancelled')
                return self._record(worker, self._poll(worker))
        finally:
            worker.flight.release()

    def _poll(self, worker: _PrinterWorker) -> PollOutcome:
        outcome = PollOutcome(worker.printer_id, worker.integration_id, 'ok')

        try:
            # Re-read every time so credential and endpoint changes apply on the next tick
            integration = self.registry.get_by_id(worker.integration_id)
            if not integration.is_active:
                outcome.result = 'inactive'
                return outcome
            connector = self.connector_factory(integration)
            status = connector.get_status()
        except Exception as e:
            message = e.message if isinstance(e, PrintCloudError) else str(e)
            logger.warning(f"Poll of printer {worker.printer_id} failed: {message}")
            outcome.result = 'error'
            outcome.error = message
            self._record_failure(worker, message)
            return outcome

        try:
            self.status_service.apply(worker.printer_id, status, source='poll')
            self.registry.mark_synced(integration.id, datetime.now())
            outcome.status = status.status.value
        except Exception as e:
            logger.exception(f"Failed to store status for printer {worker.printer_id}: {e}")
            outcome.result = 'error'
            outcome.error = str(e)
            return outcome

        if self.captures is not None and isinstance(connector, JobHistoryProvider):
            outcome.jobs_captured = self._capture_history(worker, connector)
        return outcome

    def _record_failure(self, worker: _PrinterWorker, message: str) -> None:
        try:
            self.status_service.record_failure(worker.printer_id, f'Connection failed: {message}')
        except Exception as e:
            logger.exception(f"Failed to record error status for printer {worker.printer_id}: {e}")

    def _capture_history(self, worker: _PrinterWorker, connector: JobHistoryProvider) -> int:
        try:
            jobs: List[Dict[str, Any]] = connector.get_job_history()
            counts = self.captures.ingest_job_history(worker.printer_id, jobs)
        except Exception as e:
            logger.warning(f"Job history capture for printer {worker.printer_id} failed: {e}")
            return 0
        if counts['captured']:
            logger.info(f"Captured {counts['captured']} jobs from printer {worker.printer_id}")
        return counts['captured']
