"""
Shared fixtures: every test gets its own SQLite database and encryption key.
"""
import pytest
from cryptography.fernet import Fernet

from config import config as settings
from printcloud.models import Printer, PrintCost, PrintQuota, User, init_db
from printcloud.services import crypto
from printcloud.services.capture import CaptureService
from printcloud.services.crypto import CredentialEncryption
from printcloud.services.integration_registry import IntegrationRegistry


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Point the models at a fresh database under tmp_path."""
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    monkeypatch.setattr(settings, 'DATA_DIR', data_dir)
    monkeypatch.setattr(settings, 'DATABASE_PATH', data_dir / 'test.db')
    monkeypatch.setattr(settings, 'LOG_DIR', tmp_path / 'logs')
    init_db()
    return data_dir / 'test.db'


@pytest.fixture
def encryption(db, monkeypatch):
    instance = CredentialEncryption(key=Fernet.generate_key().decode())
    monkeypatch.setattr(crypto, '_encryption', instance)
    return instance


@pytest.fixture
def registry(encryption):
    return IntegrationRegistry(encryption)


@pytest.fixture
def captures(db):
    return CaptureService()


@pytest.fixture
def printer(db):
    return Printer.create('printer-1', 'Floor 1', location='HQ', department='Engineering')


@pytest.fixture
def make_user(db):
    """Create a user with a quota; returns the user id."""
    def _make(user_id='user-1', department=None, monthly_limit=100, color_limit=50,
              current_usage=0, color_usage=0, with_quota=True):
        User.create(user_id, f'User {user_id}', f'{user_id}@example.com', department)
        if with_quota:
            PrintQuota.set(user_id, monthly_limit=monthly_limit, color_limit=color_limit,
                           current_usage=current_usage, color_usage=color_usage)
        return user_id
    return _make


@pytest.fixture
def department_rates(db):
    return PrintCost.set('Finance', 0.02, 0.10)


@pytest.fixture
def capture_data():
    """Build a valid capture submission for printer-1."""
    def _build(**overrides):
        data = {
            'printer_id': 'printer-1',
            'external_job_id': 'job-1',
            'file_name': 'report.pdf',
            'pages': 3,
            'copies': 2,
            'is_color': False,
            'paper_size': 'A4',
            'paper_type': 'Plain',
            'quality': 'Normal',
        }
        data.update(overrides)
        return data
    return _build


@pytest.fixture
def app(encryption):
    from printcloud import create_app

    app = create_app({'TESTING': True, 'RATELIMIT_ENABLED': False, 'POLLING_AUTOSTART': False})
    yield app
    app.extensions['polling_scheduler'].stop()


@pytest.fixture
def client(app):
    return app.test_client()
