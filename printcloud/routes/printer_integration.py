"""
API Routes for printer integration.

Provides REST endpoints for:
- Managing per-printer integrations
- Reading, pushing and syncing printer status
- Controlling the polling scheduler
- Capturing and reconciling print jobs
- Receiving print server webhooks
"""

import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from config import config as settings
from printcloud import limiter
from printcloud.errors import PrintCloudError, ValidationError
from printcloud.utils.rate_limiting import RATE_LIMITS

logger = logging.getLogger(__name__)

printer_integration_bp = Blueprint('printer_integration', __name__,
                                   url_prefix=settings.API_PREFIX)

POLLING_ACTIONS = ('start', 'stop', 'restart', 'add_printer', 'remove_printer')


def handle_api_errors(fn):
    """Decorator to turn service errors into JSON responses."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PrintCloudError as e:
            if e.http_status >= 500:
                logger.warning(f'{fn.__name__}: {e.code}: {e.message}')
            return jsonify(e.to_dict()), e.http_status
        except Exception as e:
            logger.exception(f'Printer integration API error: {e}')
            return jsonify({
                'error': 'INTERNAL_ERROR',
                'message': 'Internal server error',
            }), 500
    return wrapper


def _service(name: str):
    return current_app.extensions[name]


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _require_arg(name: str) -> str:
    value = request.args.get(name)
    if not value:
        raise ValidationError(f'{name} query parameter is required', field=name)
    return value


# =============================================================================
# Integrations
# =============================================================================

@printer_integration_bp.route('', methods=['GET'])
@handle_api_errors
def get_integrations():
    """
    Get a printer's integration, or list all integrations.

    Query params:
    - printer_id: Printer to look up (omit to list all)
    - type: Restrict the lookup to one protocol
    """
    registry = _service('integration_registry')
    printer_id = request.args.get('printer_id')
    if printer_id:
        integration = registry.get(printer_id, request.args.get('type'))
        return jsonify({'integration': integration.to_dict()})
    return jsonify({'integrations': [i.to_dict() for i in registry.list()]})


@printer_integration_bp.route('', methods=['POST'])
@handle_api_errors
def create_integration():
    integration = _service('integration_registry').create(_json_body())
    _service('polling_scheduler').refresh_printer(integration.printer_id)
    return jsonify({'integration': integration.to_dict()}), 201


@printer_integration_bp.route('/<integration_id>', methods=['PUT'])
@handle_api_errors
def update_integration(integration_id: str):
    integration = _service('integration_registry').update(integration_id, _json_body())
    _service('polling_scheduler').refresh_printer(integration.printer_id)
    return jsonify({'integration': integration.to_dict()})


@printer_integration_bp.route('/<integration_id>', methods=['DELETE'])
@handle_api_errors
def delete_integration(integration_id: str):
    integration = _service('integration_registry').delete(integration_id)
    _service('polling_scheduler').refresh_printer(integration.printer_id)
    return jsonify({'message': 'Integration deleted', 'id': integration.id})


# =============================================================================
# Printer Status
# =============================================================================

@printer_integration_bp.route('/status', methods=['GET'])
@handle_api_errors
def get_status():
    return jsonify(_service('printer_status').get_latest(_require_arg('printer_id')))


@printer_integration_bp.route('/status', methods=['POST'])
@handle_api_errors
def push_status():
    printer = _service('printer_status').push(_json_body())
    return jsonify({'printer': printer})


@printer_integration_bp.route('/status', methods=['PUT'])
@limiter.limit(RATE_LIMITS['manual_sync'])
@handle_api_errors
def sync_status():
    """Pull status from the device now. Connector failures return 503."""
    result = _service('printer_status').sync(_require_arg('printer_id'),
                                             request.args.get('type'))
    return jsonify(result)


@printer_integration_bp.route('/status/system', methods=['GET'])
@handle_api_errors
def system_status():
    polling = _service('polling_scheduler').status()
    return jsonify(_service('printer_status').system_status(polling))


# =============================================================================
# Polling
# =============================================================================

@printer_integration_bp.route('/polling', methods=['GET'])
@handle_api_errors
def polling_status():
    return jsonify(_service('polling_scheduler').status())


@printer_integration_bp.route('/polling', methods=['POST'])
@limiter.limit(RATE_LIMITS['polling_control'])
@handle_api_errors
def control_polling():
    """
    Control the polling scheduler.

    Body: {"action": "start|stop|restart|add_printer|remove_printer",
           "integration_id": "...", "printer_id": "..."}
    """
    data = _json_body()
    action = data.get('action')
    if action not in POLLING_ACTIONS:
        raise ValidationError(f'Invalid action: {action}', field='action',
                              details={'allowed': list(POLLING_ACTIONS)})

    scheduler = _service('polling_scheduler')
    if action == 'add_printer':
        if not data.get('integration_id'):
            raise ValidationError('integration_id is required', field='integration_id')
        status = scheduler.add_printer(data['integration_id'])
    elif action == 'remove_printer':
        if not data.get('printer_id'):
            raise ValidationError('printer_id is required', field='printer_id')
        status = scheduler.remove_printer(data['printer_id'])
    else:
        status = getattr(scheduler, action)()

    logger.info(f"Polling action '{action}' completed")
    return jsonify({'action': action, 'polling': status})


# =============================================================================
# Capture & Reconciliation
# =============================================================================

@printer_integration_bp.route('/capture', methods=['GET'])
@handle_api_errors
def list_captures():
    """
    List captures, newest first.

    Query params:
    - printer_id, status: Filters
    - page, limit: Pagination (defaults 1 and 20)
    """
    result = _service('captures').list_captures(
        printer_id=request.args.get('printer_id'),
        status=request.args.get('status'),
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int),
    )
    return jsonify(result)


@printer_integration_bp.route('/capture', methods=['POST'])
@handle_api_errors
def capture_job():
    capture = _service('captures').capture_job(_json_body())
    return jsonify({'capture': capture.to_dict()}), 201


@printer_integration_bp.route('/capture/<capture_id>/process', methods=['POST'])
@handle_api_errors
def process_capture(capture_id: str):
    data = request.get_json(silent=True) or {}
    outcome = _service('captures').process_capture(capture_id, data.get('user_id'))
    return jsonify(outcome.to_dict())


# =============================================================================
# Webhooks
# =============================================================================

@printer_integration_bp.route('/webhook', methods=['POST'])
@limiter.limit(RATE_LIMITS['webhook'])
@handle_api_errors
def receive_webhook():
    """Receive a print server event. The signature covers the raw body."""
    result = _service('webhooks').receive(
        request.headers.get(settings.WEBHOOK_PRINTER_HEADER),
        request.get_data(),
        request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER),
    )
    return jsonify(result)


@printer_integration_bp.route('/webhook/events', methods=['GET'])
@handle_api_errors
def webhook_events():
    """
    Recent webhook deliveries, newest first.

    Query params:
    - printer_id: Filter to one printer
    - limit: Maximum rows (default 50, max 200)
    """
    limit = request.args.get('limit', 50, type=int)
    if limit is None or limit < 1:
        raise ValidationError('limit must be a positive integer', field='limit')
    events = _service('webhooks').recent_events(request.args.get('printer_id'), min(limit, 200))
    return jsonify({'events': events})
