#!/usr/bin/env python3
"""
Database initialization script with demo data.
Run this to set up a fresh database with a few printers, users and integrations.
"""

import secrets
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import config as settings  # noqa: E402
from printcloud.errors import InvalidConfig  # noqa: E402
from printcloud.models import Printer, PrintCost, PrintQuota, User, init_db  # noqa: E402
from printcloud.services import IntegrationRegistry  # noqa: E402


DEMO_PRINTERS = [
    ('printer-hq-1', 'HQ Floor 1', 'Headquarters, 1st floor', 'Engineering', 'HP LaserJet M607', '192.168.1.50'),
    ('printer-hq-2', 'HQ Floor 2 Color', 'Headquarters, 2nd floor', 'Marketing', 'Canon iR-ADV C5535', '192.168.1.51'),
    ('printer-lab', 'Lab Printer', 'Research lab', 'Research', 'Brother HL-L8360CDW', '192.168.1.52'),
]

DEMO_USERS = [
    ('user-alice', 'Alice Smith', 'alice@example.com', 'Engineering', 1000, 200),
    ('user-bob', 'Bob Jones', 'bob@example.com', 'Marketing', 500, 500),
]

DEMO_COSTS = [
    ('Engineering', 0.04, 0.12),
    ('Marketing', 0.05, 0.20),
]


def seed_printers():
    for printer_id, name, location, department, model, ip in DEMO_PRINTERS:
        if Printer.get(printer_id):
            print(f"  - {printer_id} already exists")
            continue
        Printer.create(printer_id, name, location, department, model, ip)
        print(f"  ✓ {printer_id} ({model})")


def seed_users():
    for user_id, name, email, department, monthly, color in DEMO_USERS:
        if not User.get(user_id):
            User.create(user_id, name, email, department)
        PrintQuota.set(user_id, monthly_limit=monthly, color_limit=color)
        print(f"  ✓ {user_id}: {monthly} pages/month, {color} color")
    for department, bw, color in DEMO_COSTS:
        PrintCost.set(department, bw, color)
        print(f"  ✓ {department}: {bw:.2f} / {color:.2f} per page")


def seed_integrations():
    registry = IntegrationRegistry()
    webhook_secret = secrets.token_urlsafe(32)
    configs = [
        {'printer_id': 'printer-hq-1', 'type': 'SNMP', 'endpoint': '192.168.1.50',
         'auth_type': 'NONE', 'credentials': {'community': 'public'}, 'poll_interval': 300},
        {'printer_id': 'printer-hq-2', 'type': 'IPP', 'endpoint': 'ipp://192.168.1.51/ipp/print',
         'auth_type': 'NONE', 'poll_interval': 300},
        {'printer_id': 'printer-lab', 'type': 'HTTP', 'endpoint': 'http://192.168.1.52/api',
         'auth_type': 'API_KEY', 'poll_interval': 600,
         'credentials': {'api_key': secrets.token_hex(16), 'webhook_secret': webhook_secret}},
    ]
    for config in configs:
        try:
            integration = registry.create(config)
        except InvalidConfig as e:
            print(f"  - {config['printer_id']} {config['type']}: {e.message}")
            continue
        print(f"  ✓ {integration.printer_id} via {integration.type.value} ({integration.id})")

    print(f"\n  Webhook endpoint for printer-lab:")
    print(f"  POST {settings.API_PREFIX}/webhook  ({settings.WEBHOOK_PRINTER_HEADER}: printer-lab)")
    print(f"  Secret: {webhook_secret}")


def main():
    print("=" * 70)
    print("DATABASE INITIALIZATION")
    print("=" * 70)
    print(f"\nDatabase: {settings.DATABASE_PATH}")

    init_db()

    print("\nSeeding printers...")
    seed_printers()
    print("\nSeeding users, quotas and page costs...")
    seed_users()
    print("\nSeeding integrations...")
    seed_integrations()

    print("\n" + "=" * 70)
    print("✓ Database initialization complete!")
    print("=" * 70)


if __name__ == '__main__':
    main()
