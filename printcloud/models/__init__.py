"""
Database models for PrintCloud

This module re-exports all models from the base models file.
"""

from printcloud.models.base import (
    get_db_connection,
    use_connection,
    transaction,
    init_db,
    now_iso,
    Printer,
    User,
    PrintQuota,
    PrintCost,
    PrintJob,
    WebhookEvent,
)


__all__ = [
    # Database utilities
    'get_db_connection',
    'use_connection',
    'transaction',
    'init_db',
    'now_iso',
    # Records
    'Printer',
    'User',
    'PrintQuota',
    'PrintCost',
    'PrintJob',
    'WebhookEvent',
]
