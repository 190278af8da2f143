"""
Structured logging with PHI/PII protection.

Clinical free text (assessment, SOAP), patient identity and contact details
must never reach a log sink. Everything logged through the helpers here is
passed through the redaction below.
"""
import json
import logging
from datetime import datetime, timezone

from .correlation import get_request_id, get_trace_id, get_user_id, get_user_roles


# Fields that should NEVER be logged (PHI/PII)
SENSITIVE_FIELDS = {
    'password',
    'token',
    'secret',
    'api_key',
    # Case / assessment
    'diagnosis',
    'pt_diagnosis',
    'pt_chief_complaint',
    'pt_present_history',
    'chief_complaint',
    'present_history',
    # SOAP
    'subjective',
    'objective',
    'assessment',
    'plan',
    # Free text
    'notes',
    'reason',
    'change_reason',
    'cancellation_reason',
    # Identity / contact
    'first_name',
    'last_name',
    'walk_in_name',
    'walk_in_phone',
    'walk_in_email',
    'email',
    'phone',
    'address',
    'date_of_birth',
}

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message', 'asctime',
}

REDACTED = '[REDACTED]'


class CorrelationFilter(logging.Filter):
    """
    Logging filter that injects correlation context into log records.
    """

    def filter(self, record):
        record.request_id = get_request_id() or '-'
        record.trace_id = get_trace_id() or '-'
        record.user_id = get_user_id() or '-'
        record.user_roles = ','.join(get_user_roles()) or '-'
        return True


class SanitizedJSONFormatter(logging.Formatter):
    """
    JSON formatter that redacts sensitive fields.
    """

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'request_id': getattr(record, 'request_id', '-'),
            'trace_id': getattr(record, 'trace_id', '-'),
            'user_id': getattr(record, 'user_id', '-'),
            'user_roles': getattr(record, 'user_roles', '-'),
        }

        for key, value in record.__dict__.items():
            if key in log_data or key.startswith('_') or key in _RESERVED_ATTRS:
                continue
            if key.lower() in SENSITIVE_FIELDS:
                log_data[key] = REDACTED
            else:
                log_data[key] = self._sanitize_value(value)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)

    def _sanitize_value(self, value):
        if isinstance(value, dict):
            return sanitize_dict(value)
        if isinstance(value, (list, tuple)):
            return [self._sanitize_value(v) for v in value]
        return value


def get_sanitized_logger(name):
    """
    Get a logger with correlation filter applied.

    Usage:
        logger = get_sanitized_logger(__name__)
        logger.info('Case accepted', extra={'event': 'case_transition', 'case_id': str(case.id)})
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())

    return logger


def sanitize_dict(data):
    """
    Return a copy of ``data`` with sensitive keys redacted, recursively.
    """
    if not isinstance(data, dict):
        return data

    sanitized = {}
    for key, value in data.items():
        if str(key).lower() in SENSITIVE_FIELDS:
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = sanitize_dict(value)
        elif isinstance(value, (list, tuple)):
            sanitized[key] = [
                sanitize_dict(v) if isinstance(v, dict) else v
                for v in value
            ]
        else:
            sanitized[key] = value

    return sanitized
