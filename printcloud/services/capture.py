"""
Capture & Reconciliation.

Captures are immutable records of physically observed print events. Processing
a capture bills it: the quota check, quota increment, PrintJob creation and the
capture's state transition all happen in one SQLite write transaction.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from config import config as settings
from printcloud.errors import (
    DuplicateCapture,
    NotFound,
    QuotaExceeded,
    QuotaNotFound,
    UserNotFound,
    ValidationError,
)
from printcloud.models import (
    Printer,
    PrintCost,
    PrintJob,
    PrintQuota,
    User,
    now_iso,
    transaction,
    use_connection,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

REQUIRED_FIELDS = ('printer_id', 'external_job_id', 'file_name', 'pages', 'copies',
                   'paper_size', 'paper_type', 'quality')


class CaptureStatus(str, Enum):
    CAPTURED = 'CAPTURED'
    PROCESSED = 'PROCESSED'
    ERROR = 'ERROR'


@dataclass
class PrintJobCapture:
    """A print event observed at a printer, not yet billed."""
    id: str
    printer_id: str
    external_job_id: str
    file_name: str
    pages: int
    copies: int
    is_color: bool
    paper_size: str
    paper_type: str
    quality: str
    status: CaptureStatus
    captured_at: str
    user_id: Optional[str] = None
    metadata: Optional[Any] = None
    print_job_id: Optional[str] = None
    error_message: Optional[str] = None
    processed_at: Optional[str] = None

    @property
    def total_pages(self) -> int:
        return self.pages * self.copies

    @property
    def is_terminal(self) -> bool:
        return self.status in (CaptureStatus.PROCESSED, CaptureStatus.ERROR)

    @classmethod
    def from_row(cls, row) -> 'PrintJobCapture':
        return cls(
            id=row['id'],
            printer_id=row['printer_id'],
            external_job_id=row['external_job_id'],
            file_name=row['file_name'],
            pages=row['pages'],
            copies=row['copies'],
            is_color=bool(row['is_color']),
            paper_size=row['paper_size'],
            paper_type=row['paper_type'],
            quality=row['quality'],
            status=CaptureStatus(row['status']),
            captured_at=row['captured_at'],
            user_id=row['user_id'],
            metadata=json.loads(row['metadata']) if row['metadata'] else None,
            print_job_id=row['print_job_id'],
            error_message=row['error_message'],
            processed_at=row['processed_at'],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'printer_id': self.printer_id,
            'external_job_id': self.external_job_id,
            'file_name': self.file_name,
            'pages': self.pages,
            'copies': self.copies,
            'total_pages': self.total_pages,
            'is_color': self.is_color,
            'paper_size': self.paper_size,
            'paper_type': self.paper_type,
            'quality': self.quality,
            'status': self.status.value,
            'user_id': self.user_id,
            'metadata': self.metadata,
            'print_job_id': self.print_job_id,
            'error_message': self.error_message,
            'captured_at': self.captured_at,
            'processed_at': self.processed_at,
        }


@dataclass
class CaptureOutcome:
    """Result of reconciling a capture."""
    capture_id: str
    status: CaptureStatus
    user_id: Optional[str]
    total_pages: int
    print_job_id: Optional[str] = None
    cost: Optional[float] = None
    error: Optional[str] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'capture_id': self.capture_id,
            'status': self.status.value,
            'user_id': self.user_id,
            'total_pages': self.total_pages,
            'print_job_id': self.print_job_id,
            'cost': self.cost,
            'error': self.error,
            'replayed': self.replayed,
        }


def _require_positive_int(data: Dict[str, Any], name: str) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f'{name} must be a positive integer', field=name)
    return value


def validate_capture_data(data: Any) -> Dict[str, Any]:
    """Check a capture submission and return the normalized field set."""
    if not isinstance(data, dict):
        raise ValidationError('Capture payload must be an object')

    for name in REQUIRED_FIELDS:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f'{name} is required', field=name)

    pages = _require_positive_int(data, 'pages')
    copies = _require_positive_int(data, 'copies')

    is_color = data.get('is_color', False)
    if not isinstance(is_color, bool):
        raise ValidationError('is_color must be a boolean', field='is_color')

    user_id = data.get('user_id')
    metadata = data.get('metadata')
    try:
        metadata_json = json.dumps(metadata) if metadata is not None else None
    except (TypeError, ValueError):
        raise ValidationError('metadata must be JSON serializable', field='metadata')

    return {
        'printer_id': str(data['printer_id']),
        'external_job_id': str(data['external_job_id']),
        'file_name': str(data['file_name']),
        'pages': pages,
        'copies': copies,
        'is_color': is_color,
        'paper_size': str(data['paper_size']),
        'paper_type': str(data['paper_type']),
        'quality': str(data['quality']),
        'user_id': str(user_id) if user_id else None,
        'metadata': metadata_json,
    }


def normalize_vendor_job(printer_id: str, job: Dict[str, Any],
                         metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Map a vendor job record (camelCase or snake_case) onto capture fields.

    Missing attributes fall back to 1 page, 1 copy, A4, Plain, Normal.
    """
    def pick(*keys, default=None):
        for key in keys:
            if job.get(key) is not None:
                return job[key]
        return default

    job_metadata = pick('metadata', default={})
    if not isinstance(job_metadata, dict):
        job_metadata = {'vendor': job_metadata}

    return {
        'printer_id': printer_id,
        'external_job_id': pick('id', 'jobId', 'job_id', 'external_job_id'),
        'file_name': pick('fileName', 'file_name', 'name', default='Unknown document'),
        'pages': pick('pages', default=1),
        'copies': pick('copies', default=1),
        'is_color': bool(pick('isColor', 'is_color', default=False)),
        'paper_size': pick('paperSize', 'paper_size', default='A4'),
        'paper_type': pick('paperType', 'paper_type', default='Plain'),
        'quality': pick('quality', default='Normal'),
        'user_id': pick('userId', 'user_id'),
        'metadata': {**job_metadata, **(metadata or {})},
    }


class CaptureService:
    """Capture ingestion and capture-to-billing reconciliation."""

    def capture_job(self, data: Dict[str, Any]) -> PrintJobCapture:
        """
        Store a new capture in state CAPTURED.

        Raises:
            ValidationError: missing or malformed fields.
            NotFound: unknown printer.
            DuplicateCapture: (printer_id, external_job_id) already captured.
        """
        fields = validate_capture_data(data)
        fields.update(id=uuid.uuid4().hex, status=CaptureStatus.CAPTURED.value,
                      captured_at=now_iso())

        with use_connection() as conn:
            if Printer.get(fields['printer_id'], conn) is None:
                raise NotFound(f"Printer not found: {fields['printer_id']}",
                               details={'printer_id': fields['printer_id']})
            try:
                conn.execute("""
                    INSERT INTO print_job_captures
                    (id, printer_id, external_job_id, user_id, file_name, pages, copies,
                     is_color, paper_size, paper_type, quality, metadata, status, captured_at)
                    VALUES (:id, :printer_id, :external_job_id, :user_id, :file_name, :pages,
                            :copies, :is_color, :paper_size, :paper_type, :quality, :metadata,
                            :status, :captured_at)
                """, {**fields, 'is_color': int(fields['is_color'])})
            except sqlite3.IntegrityError as e:
                if 'UNIQUE' not in str(e):
                    raise
                raise DuplicateCapture(fields['printer_id'], fields['external_job_id'])

            row = conn.execute("SELECT * FROM print_job_captures WHERE id = ?",
                               (fields['id'],)).fetchone()

        capture = PrintJobCapture.from_row(row)
        logger.info(f"Captured job {capture.external_job_id} from printer {capture.printer_id} "
                    f"({capture.total_pages} pages)")
        return capture

    def get(self, capture_id: str, conn: Optional[sqlite3.Connection] = None) -> PrintJobCapture:
        with use_connection(conn) as c:
            row = c.execute("SELECT * FROM print_job_captures WHERE id = ?",
                            (capture_id,)).fetchone()
        if row is None:
            raise NotFound(f'Capture not found: {capture_id}', details={'capture_id': capture_id})
        return PrintJobCapture.from_row(row)

    def _replay(self, capture: PrintJobCapture, requested_user: Optional[str],
                conn: sqlite3.Connection) -> CaptureOutcome:
        if requested_user and capture.user_id and requested_user != capture.user_id:
            logger.info(f"Capture {capture.id} already {capture.status.value} for user "
                        f"{capture.user_id}; ignoring user {requested_user}")
        cost = None
        if capture.print_job_id:
            row = conn.execute("SELECT cost FROM print_jobs WHERE id = ?",
                               (capture.print_job_id,)).fetchone()
            cost = row['cost'] if row else None
        return CaptureOutcome(
            capture_id=capture.id,
            status=capture.status,
            user_id=capture.user_id,
            total_pages=capture.total_pages,
            print_job_id=capture.print_job_id,
            cost=cost,
            error=capture.error_message,
            replayed=True,
        )

    def process_capture(self, capture_id: str, user_id: Optional[str] = None) -> CaptureOutcome:
        """
        Bill a capture against the effective user's quota.

        ``user_id`` overrides the user stored on the capture. A capture that is
        already PROCESSED or ERROR is returned unchanged with ``replayed=True``.

        Raises:
            NotFound: unknown capture.
            UserNotFound / QuotaNotFound: capture stays CAPTURED.
            QuotaExceeded: capture is moved to ERROR.
        """
        rejection: Optional[QuotaExceeded] = None

        with transaction() as conn:
            capture = self.get(capture_id, conn)
            if capture.is_terminal:
                return self._replay(capture, user_id, conn)

            effective_user = user_id or capture.user_id
            if not effective_user:
                raise UserNotFound()
            user = User.get(effective_user, conn)
            if user is None:
                raise UserNotFound(effective_user)
            quota = PrintQuota.get(effective_user, conn)
            if quota is None:
                raise QuotaNotFound(effective_user)

            total_pages = capture.total_pages
            processed_at = now_iso()

            if not PrintQuota.try_increment(effective_user, capture.is_color, total_pages, conn):
                usage, limit = ((quota['color_usage'], quota['color_limit']) if capture.is_color
                                else (quota['current_usage'], quota['monthly_limit']))
                rejection = QuotaExceeded(effective_user, capture.is_color, total_pages, usage, limit)
                conn.execute("""
                    UPDATE print_job_captures
                    SET status = ?, user_id = ?, error_message = ?, processed_at = ?
                    WHERE id = ?
                """, (CaptureStatus.ERROR.value, effective_user, rejection.message,
                      processed_at, capture.id))
                outcome = CaptureOutcome(capture.id, CaptureStatus.ERROR, effective_user,
                                         total_pages, error=rejection.message)
            else:
                rates = PrintCost.get_by_department(user.get('department'), conn)
                if capture.is_color:
                    rate = rates['color_page'] if rates else settings.DEFAULT_COLOR_PAGE_COST
                else:
                    rate = rates['black_and_white_page'] if rates else settings.DEFAULT_BW_PAGE_COST
                cost = float(Decimal(str(rate)) * total_pages)

                job_id = uuid.uuid4().hex
                PrintJob.create({
                    'id': job_id,
                    'capture_id': capture.id,
                    'user_id': effective_user,
                    'printer_id': capture.printer_id,
                    'file_name': capture.file_name,
                    'pages': capture.pages,
                    'copies': capture.copies,
                    'total_pages': total_pages,
                    'is_color': int(capture.is_color),
                    'paper_size': capture.paper_size,
                    'paper_type': capture.paper_type,
                    'quality': capture.quality,
                    'cost': cost,
                    'status': 'COMPLETED',
                    'printed_at': processed_at,
                }, conn)
                conn.execute("""
                    UPDATE print_job_captures
                    SET status = ?, user_id = ?, print_job_id = ?, processed_at = ?
                    WHERE id = ?
                """, (CaptureStatus.PROCESSED.value, effective_user, job_id,
                      processed_at, capture.id))
                outcome = CaptureOutcome(capture.id, CaptureStatus.PROCESSED, effective_user,
                                         total_pages, print_job_id=job_id, cost=cost)

        audit_logger.info('capture_processed', extra={
            'capture_id': outcome.capture_id,
            'status': outcome.status.value,
            'user_id': outcome.user_id,
            'total_pages': outcome.total_pages,
            'cost': outcome.cost,
            'print_job_id': outcome.print_job_id,
        })
        if rejection is not None:
            logger.warning(f"Capture {capture_id} rejected: {rejection.message} "
                           f"(user {rejection.details['user_id']})")
            raise rejection

        logger.info(f"Processed capture {capture_id} for user {outcome.user_id}: "
                    f"{outcome.total_pages} pages, cost {outcome.cost:.2f}")
        return outcome

    def list_captures(self, printer_id: Optional[str] = None, status: Optional[str] = None,
                      page: int = 1, limit: int = 20) -> Dict[str, Any]:
        if status:
            try:
                status = CaptureStatus(status.upper()).value
            except ValueError:
                raise ValidationError(f'Invalid status: {status}', field='status',
                                      details={'allowed': [s.value for s in CaptureStatus]})
        if page < 1 or limit < 1:
            raise ValidationError('page and limit must be positive integers')

        filters = []
        params: List[Any] = []
        if printer_id:
            filters.append("printer_id = ?")
            params.append(printer_id)
        if status:
            filters.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(filters)}" if filters else ''

        with use_connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM print_job_captures{where}",
                                 params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM print_job_captures{where} "
                f"ORDER BY captured_at DESC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()

        return {
            'captures': [PrintJobCapture.from_row(row).to_dict() for row in rows],
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'total_pages': (total + limit - 1) // limit,
            },
        }

    def ingest_job_history(self, printer_id: str, jobs: List[Dict[str, Any]]) -> Dict[str, int]:
        """Capture jobs reported by a connector; already-seen jobs are skipped."""
        counts = {'captured': 0, 'duplicates': 0, 'invalid': 0}
        for job in jobs:
            data = normalize_vendor_job(printer_id, job, {'source': 'poll'})
            try:
                self.capture_job(data)
                counts['captured'] += 1
            except DuplicateCapture:
                counts['duplicates'] += 1
            except ValidationError as e:
                counts['invalid'] += 1
                logger.warning(f"Skipping job {data.get('external_job_id')} from printer "
                               f"{printer_id}: {e.message}")
        return counts
