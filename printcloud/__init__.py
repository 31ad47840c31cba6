"""
Flask application factory and main application
"""
import logging
import os
import warnings
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_compress import Compress
from flask_cors import CORS
from flask_limiter import Limiter
from werkzeug.exceptions import TooManyRequests

from config import config as settings
from printcloud.utils.rate_limiting import (
    RATE_LIMITS,
    get_ip_for_ratelimit,
    handle_rate_limit_exceeded,
)


limiter = Limiter(
    key_func=get_ip_for_ratelimit,
    default_limits=[RATE_LIMITS['api_default']],
    storage_uri="memory://",
    strategy="fixed-window"
)
compress = Compress()


def create_app(config_overrides: Optional[Dict[str, Any]] = None) -> Flask:
    """Create and configure the Flask application."""
    from printcloud.version import __version__, VERSION_STRING
    from printcloud.models import init_db
    from printcloud.services import (
        CaptureService,
        IntegrationRegistry,
        PollingScheduler,
        PrinterStatusService,
        WebhookService,
    )

    app = Flask('printcloud')

    app.config['SECRET_KEY'] = settings.SECRET_KEY
    app.config['VERSION'] = __version__
    app.config['VERSION_STRING'] = VERSION_STRING
    app.config['JSON_SORT_KEYS'] = False
    if config_overrides:
        app.config.update(config_overrides)

    limiter.init_app(app)

    app.config.setdefault('COMPRESS_MIMETYPES', ['application/json'])
    app.config.setdefault('COMPRESS_LEVEL', 6)
    app.config.setdefault('COMPRESS_MIN_SIZE', 500)
    compress.init_app(app)

    CORS(app, resources={r"/api/*": {"origins": settings.CORS_ORIGINS}})

    setup_logging(app)

    init_db()

    registry = IntegrationRegistry()
    status_service = PrinterStatusService(registry)
    captures = CaptureService()
    app.extensions['integration_registry'] = registry
    app.extensions['printer_status'] = status_service
    app.extensions['captures'] = captures
    app.extensions['webhooks'] = WebhookService(registry, captures, status_service)
    app.extensions['polling_scheduler'] = PollingScheduler(registry, status_service, captures)

    from printcloud.routes import printer_integration_bp
    app.register_blueprint(printer_integration_bp)

    register_error_handlers(app)

    # Skip the reloader's parent process so only one scheduler polls devices
    autostart = app.config.get('POLLING_AUTOSTART', settings.POLLING_AUTOSTART)
    if autostart and (not app.debug or os.environ.get('WERKZEUG_RUN_MAIN') == 'true'):
        app.extensions['polling_scheduler'].start()

    app.logger.info(f"{VERSION_STRING} started")

    return app


def setup_logging(app: Flask):
    """Configure application logging with JSON structured format for syslog/Splunk."""
    from pythonjsonlogger import jsonlogger

    # pysnmp leaves transport tasks pending when a query loop is closed
    warnings.filterwarnings('ignore', message='.*Task was destroyed but it is pending.*')
    warnings.filterwarnings('ignore', category=ResourceWarning, message='.*unclosed.*')

    settings.LOG_DIR.mkdir(parents=True, exist_ok=True)

    json_formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(message)s',
        rename_fields={'asctime': 'timestamp', 'name': 'logger', 'levelname': 'level'}
    )
    console_formatter = logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
    file_formatter = json_formatter if settings.LOG_STRUCTURED else console_formatter
    level = getattr(logging, settings.LOG_LEVEL_DEFAULT, logging.INFO)

    file_handler = RotatingFileHandler(
        settings.LOG_DIR / 'app.log',
        maxBytes=settings.LOG_MAX_SIZE_MB * 1024 * 1024,
        backupCount=settings.LOG_BACKUP_COUNT
    )
    file_handler.setFormatter(file_formatter)
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(level)

    # Audit log is always structured JSON for parsing
    audit_handler = RotatingFileHandler(
        settings.LOG_DIR / 'audit.log',
        maxBytes=settings.LOG_MAX_SIZE_MB * 1024 * 1024,
        backupCount=settings.LOG_BACKUP_COUNT
    )
    audit_handler.setFormatter(json_formatter)
    audit_handler.setLevel(logging.INFO)

    # app.logger is the 'printcloud' logger, parent of every module logger
    for name, handlers in (('printcloud', [file_handler, console_handler]),
                           ('audit', [audit_handler])):
        target = logging.getLogger(name)
        # create_app may run more than once per process (tests)
        for handler in list(target.handlers):
            if isinstance(handler, (RotatingFileHandler, logging.StreamHandler)):
                target.removeHandler(handler)
                handler.close()
        for handler in handlers:
            target.addHandler(handler)
        target.setLevel(level if name != 'audit' else logging.INFO)

    logging.getLogger('printcloud.services.polling').setLevel(
        getattr(logging, settings.LOG_LEVEL_POLLING, logging.INFO))

    # Silence noisy third-party loggers
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('pysnmp').setLevel(logging.WARNING)

    app.logger.info("Logging configured", extra={
        'format': 'json' if settings.LOG_STRUCTURED else 'text',
        'log_dir': str(settings.LOG_DIR)
    })


def register_error_handlers(app: Flask):
    """Register error handlers that return JSON for API errors."""
    app.errorhandler(429)(handle_rate_limit_exceeded)
    app.errorhandler(TooManyRequests)(handle_rate_limit_exceeded)

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'error': 'NOT_FOUND', 'message': f'No route for {request.path}'}), 404

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        return jsonify({'error': 'METHOD_NOT_ALLOWED', 'message': str(error.description)}), 405

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}")
        return jsonify({'error': 'INTERNAL_ERROR', 'message': 'Internal server error'}), 500
