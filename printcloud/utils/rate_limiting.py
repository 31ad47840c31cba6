"""
Rate limiting configuration and custom handlers
"""
from flask import jsonify, request


def handle_rate_limit_exceeded(e):
    """Custom handler for rate limit errors."""
    return jsonify({
        'error': 'RATE_LIMITED',
        'message': str(e.description),
        'retry_after': e.retry_after if hasattr(e, 'retry_after') else None
    }), 429


def get_ip_for_ratelimit():
    """Get client IP for rate limiting (handles proxies)."""
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    if request.headers.get('X-Real-IP'):
        return request.headers.get('X-Real-IP')
    return request.remote_addr or '127.0.0.1'


# Rate limit configurations for different endpoint types
RATE_LIMITS = {
    'webhook': '300 per minute',        # Print servers may burst on queue flush
    'manual_sync': '30 per minute',     # Each call reaches out to a device
    'polling_control': '20 per minute', # Scheduler start/stop/restart
    'api_default': '100 per minute',
}
