"""
Error taxonomy for the device integration core.

Every error carries a stable ``code`` so the API layer can render a precise
message, plus an HTTP status used by the route error handler.
"""

from typing import Any, Dict, Optional


class PrintCloudError(Exception):
    """Base exception for device integration errors."""

    http_status = 500

    def __init__(self, message: str, code: str = 'INTERNAL_ERROR',
                 details: Optional[Dict[str, Any]] = None,
                 remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.remediation = remediation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details,
            'remediation': self.remediation,
        }


class ValidationError(PrintCloudError):
    """Missing or malformed input."""

    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None,
                 code: str = 'VALIDATION_ERROR'):
        super().__init__(
            message=message,
            code=code,
            details={**(details or {}), 'field': field} if field else details,
            remediation='Please check the submitted values and try again.'
        )
        self.field = field


class InvalidConfig(ValidationError):
    """Integration configuration rejected by the registry."""

    def __init__(self, message: str, field: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, field=field, details=details, code='INVALID_CONFIG')


class NotFound(PrintCloudError):
    """Entity absent: capture, integration, printer, user or quota."""

    http_status = 404

    def __init__(self, message: str, code: str = 'NOT_FOUND',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code=code, details=details)


class UserNotFound(NotFound):

    def __init__(self, user_id: Optional[str] = None):
        super().__init__(
            f'User not found: {user_id}' if user_id else 'No user associated with capture',
            code='USER_NOT_FOUND',
            details={'user_id': user_id},
        )


class QuotaNotFound(NotFound):

    def __init__(self, user_id: str):
        super().__init__(
            f'Print quota not found for user {user_id}',
            code='QUOTA_NOT_FOUND',
            details={'user_id': user_id},
        )


class DuplicateCapture(PrintCloudError):
    """A capture for this (printer, external job) pair already exists."""

    http_status = 409

    def __init__(self, printer_id: str, external_job_id: str):
        super().__init__(
            message='Job already captured',
            code='DUPLICATE_CAPTURE',
            details={'printer_id': printer_id, 'external_job_id': external_job_id},
        )
        self.printer_id = printer_id
        self.external_job_id = external_job_id


class QuotaExceeded(PrintCloudError):
    """Reconciliation rejected by the user's page budget."""

    http_status = 400

    def __init__(self, user_id: str, is_color: bool, requested: int, usage: int, limit: int):
        kind = 'Color' if is_color else 'Monthly'
        super().__init__(
            message=f'{kind} print quota exceeded',
            code='QUOTA_EXCEEDED',
            details={
                'user_id': user_id,
                'is_color': is_color,
                'requested_pages': requested,
                'current_usage': usage,
                'limit': limit,
            },
            remediation='Ask an administrator to raise the quota or override the job.',
        )


class ConnectorUnavailable(PrintCloudError):
    """Device unreachable, timed out or returned an unusable response."""

    http_status = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code='CONNECTOR_UNAVAILABLE',
            details=details,
            remediation='Check that the printer is powered on and reachable from the server.',
        )


class UnsupportedProtocol(PrintCloudError):

    http_status = 400

    def __init__(self, protocol: Any):
        super().__init__(
            message=f'Unsupported integration type: {protocol}',
            code='UNSUPPORTED_PROTOCOL',
            details={'type': protocol},
        )


class SignatureInvalid(PrintCloudError):
    """Webhook rejected by signature verification."""

    http_status = 401

    def __init__(self, printer_id: str):
        super().__init__(
            message='Invalid webhook signature',
            code='SIGNATURE_INVALID',
            details={'printer_id': printer_id},
        )
