"""
PrintCloud device integration configuration.
Values can be overridden through environment variables.
"""
import os
import secrets
from pathlib import Path


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


def _get_or_create_secret_key(data_dir: Path) -> str:
    """Get secret key from file or generate a new one."""
    secret_file = data_dir / '.secret_key'

    try:
        if secret_file.exists():
            return secret_file.read_text().strip()
    except OSError:
        pass

    secret_key = secrets.token_hex(32)

    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        secret_file.write_text(secret_key)
        secret_file.chmod(0o600)
    except OSError:
        pass

    return secret_key


# =============================================================================
# Path Configuration
# =============================================================================

BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.environ.get('PRINTCLOUD_DATA_DIR') or BASE_DIR / 'printcloud' / 'data')
LOG_DIR = Path(os.environ.get('PRINTCLOUD_LOG_DIR') or BASE_DIR / 'logs')

for _dir in [DATA_DIR, LOG_DIR]:
    try:
        _dir.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass

DATABASE_PATH = Path(os.environ.get('PRINTCLOUD_DATABASE') or DATA_DIR / 'printcloud.db')

# =============================================================================
# Web Application Settings
# =============================================================================

SECRET_KEY = os.environ.get('SECRET_KEY') or _get_or_create_secret_key(DATA_DIR)
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')
API_PREFIX = '/api/printer-integration'

# =============================================================================
# Credential Encryption
# =============================================================================

# Fernet key; when unset a key file is generated in DATA_DIR
ENCRYPTION_KEY = os.environ.get('PRINTCLOUD_ENCRYPTION_KEY')
ENCRYPTION_KEY_FILE_NAME = '.integration_key'

# =============================================================================
# Polling Settings
# =============================================================================

DEFAULT_POLL_INTERVAL_SECONDS = 300

# Upper bound on simultaneous outbound connector calls across all printers
POLL_MAX_CONCURRENT = int(os.environ.get('POLL_MAX_CONCURRENT', '8'))
POLL_EXECUTOR_WORKERS = int(os.environ.get('POLL_EXECUTOR_WORKERS', '20'))
POLLING_AUTOSTART = _env_bool('POLLING_AUTOSTART', 'false')

# =============================================================================
# Connector Settings
# =============================================================================

CONNECTOR_TIMEOUT_SECONDS = float(os.environ.get('CONNECTOR_TIMEOUT_SECONDS', '5'))
SNMP_PORT = 161
SNMP_RETRIES = 1
SNMP_DEFAULT_COMMUNITY = 'public'
IPP_DEFAULT_PORT = 631
JOB_HISTORY_LIMIT = 50

# =============================================================================
# Billing
# =============================================================================

# Per-page fallbacks when a department has no row in print_costs
DEFAULT_BW_PAGE_COST = 0.05
DEFAULT_COLOR_PAGE_COST = 0.15

UNPROCESSED_CAPTURE_WARNING_THRESHOLD = 100

# =============================================================================
# Webhooks
# =============================================================================

WEBHOOK_PRINTER_HEADER = 'X-Printer-Id'
WEBHOOK_SIGNATURE_HEADER = 'X-Webhook-Signature'
WEBHOOK_SIGNATURE_PREFIX = 'sha256='

# =============================================================================
# Logging Configuration
# =============================================================================

LOG_STRUCTURED = _env_bool('LOG_STRUCTURED', 'false')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

LOG_MAX_SIZE_MB = 10
LOG_BACKUP_COUNT = 5

LOG_LEVEL_DEFAULT = os.environ.get('LOG_LEVEL', 'INFO').upper()
LOG_LEVEL_POLLING = os.environ.get('LOG_LEVEL_POLLING', 'INFO').upper()
