"""
Database models for PrintCloud device integration
"""
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from config import config as settings


def get_db_connection(autocommit: bool = False) -> sqlite3.Connection:
    """Get a database connection with row factory and optimized settings.

    With ``autocommit`` the connection runs with ``isolation_level=None`` so the
    caller controls transactions explicitly (see ``transaction``).
    """
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(settings.DATABASE_PATH), timeout=15.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if autocommit:
        conn.isolation_level = None

    # Enable WAL mode for better concurrent access
    conn.execute('PRAGMA journal_mode=WAL')
    conn.execute('PRAGMA synchronous=NORMAL')
    conn.execute('PRAGMA foreign_keys=ON')
    conn.execute('PRAGMA temp_store=MEMORY')

    return conn


@contextmanager
def use_connection(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    """Reuse ``conn`` when given, otherwise open, commit and close a fresh one."""
    if conn is not None:
        yield conn
        return

    own = get_db_connection()
    try:
        yield own
        own.commit()
    except BaseException:
        own.rollback()
        raise
    finally:
        own.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block inside one ``BEGIN IMMEDIATE`` transaction.

    The write lock is taken up front, so concurrent writers serialize instead
    of failing at commit time.
    """
    conn = get_db_connection(autocommit=True)
    try:
        conn.execute('BEGIN IMMEDIATE')
        yield conn
        conn.execute('COMMIT')
    except BaseException:
        if conn.in_transaction:
            conn.execute('ROLLBACK')
        raise
    finally:
        conn.close()


def now_iso() -> str:
    return datetime.now().isoformat()


def _loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def init_db():
    """Initialize the database schema."""
    conn = get_db_connection()
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS printers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            location TEXT DEFAULT '',
            department TEXT,
            model TEXT DEFAULT '',
            ip TEXT,
            status TEXT DEFAULT 'OFFLINE',
            toner_levels TEXT,
            paper_levels TEXT,
            error_messages TEXT,
            job_queue INTEGER DEFAULT 0,
            total_pages_month INTEGER DEFAULT 0,
            page_count INTEGER,
            last_updated TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS printer_status_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            printer_id TEXT NOT NULL,
            status TEXT NOT NULL,
            toner_levels TEXT,
            paper_levels TEXT,
            error_messages TEXT,
            job_queue INTEGER DEFAULT 0,
            total_pages_month INTEGER DEFAULT 0,
            page_count INTEGER,
            source TEXT DEFAULT 'poll',
            recorded_at TIMESTAMP NOT NULL,
            FOREIGN KEY (printer_id) REFERENCES printers(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_status_history_printer
        ON printer_status_history(printer_id, recorded_at DESC)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS printer_integrations (
            id TEXT PRIMARY KEY,
            printer_id TEXT NOT NULL,
            type TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            auth_type TEXT NOT NULL DEFAULT 'NONE',
            credentials_encrypted TEXT,
            poll_interval INTEGER NOT NULL DEFAULT 300,
            is_active INTEGER NOT NULL DEFAULT 1,
            last_sync TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            UNIQUE (printer_id, type),
            FOREIGN KEY (printer_id) REFERENCES printers(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT UNIQUE,
            department TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_quotas (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL UNIQUE,
            monthly_limit INTEGER NOT NULL DEFAULT 0,
            current_usage INTEGER NOT NULL DEFAULT 0,
            color_limit INTEGER NOT NULL DEFAULT 0,
            color_usage INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_costs (
            id TEXT PRIMARY KEY,
            department TEXT NOT NULL UNIQUE,
            black_and_white_page REAL NOT NULL,
            color_page REAL NOT NULL
        )
    """)

    # The (printer_id, external_job_id) constraint is what rejects duplicate
    # captures under concurrent submission.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_job_captures (
            id TEXT PRIMARY KEY,
            printer_id TEXT NOT NULL,
            external_job_id TEXT NOT NULL,
            user_id TEXT,
            file_name TEXT NOT NULL,
            pages INTEGER NOT NULL,
            copies INTEGER NOT NULL,
            is_color INTEGER NOT NULL DEFAULT 0,
            paper_size TEXT NOT NULL,
            paper_type TEXT NOT NULL,
            quality TEXT NOT NULL,
            metadata TEXT,
            status TEXT NOT NULL DEFAULT 'CAPTURED',
            print_job_id TEXT,
            error_message TEXT,
            captured_at TIMESTAMP NOT NULL,
            processed_at TIMESTAMP,
            UNIQUE (printer_id, external_job_id),
            FOREIGN KEY (printer_id) REFERENCES printers(id)
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_captures_status
        ON print_job_captures(status, captured_at DESC)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_jobs (
            id TEXT PRIMARY KEY,
            capture_id TEXT UNIQUE,
            user_id TEXT NOT NULL,
            printer_id TEXT NOT NULL,
            file_name TEXT NOT NULL,
            pages INTEGER NOT NULL,
            copies INTEGER NOT NULL,
            total_pages INTEGER NOT NULL,
            is_color INTEGER NOT NULL DEFAULT 0,
            paper_size TEXT,
            paper_type TEXT,
            quality TEXT,
            cost REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'COMPLETED',
            printed_at TIMESTAMP NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (printer_id) REFERENCES printers(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS webhook_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            printer_id TEXT,
            event_type TEXT,
            signature_valid INTEGER,
            status TEXT NOT NULL,
            error TEXT,
            received_at TIMESTAMP NOT NULL
        )
    """)

    conn.commit()
    conn.close()


class Printer:
    """Printer records and their folded-in live status."""

    _JSON_FIELDS = {'toner_levels': {}, 'paper_levels': {}, 'error_messages': []}

    @staticmethod
    def _to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        for key, default in Printer._JSON_FIELDS.items():
            if key in data:
                data[key] = _loads(data[key], default)
        return data

    @staticmethod
    def get(printer_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        with use_connection(conn) as c:
            row = c.execute("SELECT * FROM printers WHERE id = ?", (printer_id,)).fetchone()
        return Printer._to_dict(row) if row else None

    @staticmethod
    def create(printer_id: str, name: str, location: str = '', department: Optional[str] = None,
               model: str = '', ip: Optional[str] = None,
               conn: Optional[sqlite3.Connection] = None) -> Dict[str, Any]:
        with use_connection(conn) as c:
            c.execute("""
                INSERT INTO printers (id, name, location, department, model, ip)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (printer_id, name, location, department, model, ip))
        return Printer.get(printer_id, conn)

    @staticmethod
    def update_status(printer_id: str, status: Dict[str, Any], source: str = 'poll',
                      conn: Optional[sqlite3.Connection] = None) -> bool:
        """Fold a status snapshot into the printer row and append it to history.

        Fields absent from ``status`` keep their stored value. Returns False
        when the printer does not exist.
        """
        def _json(key):
            value = status.get(key)
            return json.dumps(value) if value is not None else None

        job_queue = status.get('job_queue')
        values = (
            status['status'],
            _json('toner_levels'),
            _json('paper_levels'),
            _json('error_messages'),
            int(job_queue) if job_queue is not None else None,
            status.get('total_pages_month'),
            status.get('page_count'),
        )
        last_updated = status.get('last_updated') or now_iso()

        with use_connection(conn) as c:
            cursor = c.execute("""
                UPDATE printers
                SET status = ?,
                    toner_levels = COALESCE(?, toner_levels),
                    paper_levels = COALESCE(?, paper_levels),
                    error_messages = COALESCE(?, error_messages),
                    job_queue = COALESCE(?, job_queue),
                    total_pages_month = COALESCE(?, total_pages_month),
                    page_count = COALESCE(?, page_count),
                    last_updated = ?
                WHERE id = ?
            """, values + (last_updated, printer_id))
            if cursor.rowcount == 0:
                return False
            c.execute("""
                INSERT INTO printer_status_history
                (status, toner_levels, paper_levels, error_messages, job_queue,
                 total_pages_month, page_count, printer_id, source, recorded_at)
                VALUES (?, ?, ?, ?, COALESCE(?, 0), ?, ?, ?, ?, ?)
            """, values + (printer_id, source, last_updated))
        return True

    @staticmethod
    def latest_status(printer_id: str) -> Optional[Dict[str, Any]]:
        with use_connection() as c:
            row = c.execute("""
                SELECT * FROM printer_status_history
                WHERE printer_id = ?
                ORDER BY recorded_at DESC, id DESC
                LIMIT 1
            """, (printer_id,)).fetchone()
        return Printer._to_dict(row) if row else None

    @staticmethod
    def count_by_status() -> Dict[str, int]:
        with use_connection() as c:
            rows = c.execute("SELECT status, COUNT(*) AS n FROM printers GROUP BY status").fetchall()
        return {row['status']: row['n'] for row in rows}


class User:
    """Application users, as far as billing needs them."""

    @staticmethod
    def get(user_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        with use_connection(conn) as c:
            row = c.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def create(user_id: str, name: str, email: Optional[str] = None,
               department: Optional[str] = None) -> Dict[str, Any]:
        with use_connection() as c:
            c.execute("INSERT INTO users (id, name, email, department) VALUES (?, ?, ?, ?)",
                      (user_id, name, email, department))
        return User.get(user_id)


class PrintQuota:
    """Per-user page budgets."""

    @staticmethod
    def get(user_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        with use_connection(conn) as c:
            row = c.execute("SELECT * FROM print_quotas WHERE user_id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def set(user_id: str, monthly_limit: int, color_limit: int,
            current_usage: int = 0, color_usage: int = 0) -> Dict[str, Any]:
        """Create or replace a user's quota."""
        with use_connection() as c:
            c.execute("""
                INSERT INTO print_quotas
                (id, user_id, monthly_limit, current_usage, color_limit, color_usage, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    monthly_limit = excluded.monthly_limit,
                    current_usage = excluded.current_usage,
                    color_limit = excluded.color_limit,
                    color_usage = excluded.color_usage,
                    updated_at = excluded.updated_at
            """, (uuid.uuid4().hex, user_id, monthly_limit, current_usage,
                  color_limit, color_usage, now_iso()))
        return PrintQuota.get(user_id)

    @staticmethod
    def try_increment(user_id: str, is_color: bool, pages: int,
                      conn: sqlite3.Connection) -> bool:
        """Add ``pages`` to the matching usage counter only if it stays within its limit.

        A single conditional UPDATE; returns False when the limit would be exceeded.
        """
        if is_color:
            sql = """
                UPDATE print_quotas
                SET color_usage = color_usage + ?, updated_at = ?
                WHERE user_id = ? AND color_usage + ? <= color_limit
            """
        else:
            sql = """
                UPDATE print_quotas
                SET current_usage = current_usage + ?, updated_at = ?
                WHERE user_id = ? AND current_usage + ? <= monthly_limit
            """
        cursor = conn.execute(sql, (pages, now_iso(), user_id, pages))
        return cursor.rowcount == 1


class PrintCost:
    """Per-department page rates."""

    @staticmethod
    def get_by_department(department: Optional[str],
                          conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        if not department:
            return None
        with use_connection(conn) as c:
            row = c.execute("SELECT * FROM print_costs WHERE department = ?", (department,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def set(department: str, black_and_white_page: float, color_page: float) -> Dict[str, Any]:
        """Create or replace a department's page rates."""
        with use_connection() as c:
            c.execute("""
                INSERT INTO print_costs (id, department, black_and_white_page, color_page)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(department) DO UPDATE SET
                    black_and_white_page = excluded.black_and_white_page,
                    color_page = excluded.color_page
            """, (uuid.uuid4().hex, department, black_and_white_page, color_page))
        return PrintCost.get_by_department(department)


class PrintJob:
    """Billed print jobs. Cost is fixed at creation."""

    @staticmethod
    def create(job: Dict[str, Any], conn: sqlite3.Connection) -> None:
        conn.execute("""
            INSERT INTO print_jobs
            (id, capture_id, user_id, printer_id, file_name, pages, copies, total_pages,
             is_color, paper_size, paper_type, quality, cost, status, printed_at)
            VALUES (:id, :capture_id, :user_id, :printer_id, :file_name, :pages, :copies,
                    :total_pages, :is_color, :paper_size, :paper_type, :quality, :cost,
                    :status, :printed_at)
        """, job)

    @staticmethod
    def get(job_id: str) -> Optional[Dict[str, Any]]:
        with use_connection() as c:
            row = c.execute("SELECT * FROM print_jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        data = dict(row)
        data['is_color'] = bool(data['is_color'])
        return data


class WebhookEvent:
    """Audit trail of webhook deliveries."""

    @staticmethod
    def record(printer_id: Optional[str], event_type: Optional[str],
               signature_valid: Optional[bool], status: str,
               error: Optional[str] = None) -> None:
        with use_connection() as c:
            c.execute("""
                INSERT INTO webhook_events
                (printer_id, event_type, signature_valid, status, error, received_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (printer_id, event_type,
                  None if signature_valid is None else int(signature_valid),
                  status, error, now_iso()))

    @staticmethod
    def get_recent(printer_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = "SELECT * FROM webhook_events"
        params: List[Any] = []
        if printer_id:
            query += " WHERE printer_id = ?"
            params.append(printer_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with use_connection() as c:
            rows = c.execute(query, params).fetchall()
        return [dict(row) for row in rows]
