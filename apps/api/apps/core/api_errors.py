"""
Error bodies for domain failures returned by the REST layer.

Body: ``{"error": ..., "error_type": ...}`` plus whichever context the
exception carries (current_status, requested_status, missing_fields, ...).
"""
from django.core.exceptions import ValidationError
from rest_framework.response import Response

CONTEXT_ATTRS = (
    'current_status',
    'requested_status',
    'missing_fields',
    'value',
    'remaining',
    'requested',
    'used',
    'status',
    'case_id',
    'appointment_id',
)


def error_message(exc):
    if isinstance(exc, ValidationError):
        if hasattr(exc, 'error_dict'):
            return exc.message_dict
        return ' '.join(exc.messages)
    return str(exc)


def error_response(exc, http_status):
    body = {
        'error': error_message(exc),
        'error_type': exc.__class__.__name__,
    }
    for attr in CONTEXT_ATTRS:
        value = getattr(exc, attr, None)
        if value is not None:
            body[attr] = value if isinstance(value, (list, int, dict)) else str(value)
    return Response(body, status=http_status)
