"""
Exception hierarchy and the per-service translation of raw Graph failures.

translate_error() is the only place that looks at status codes and error text.
It prefers the structured ``error.code`` Graph returns and only falls back to
substring matching on the message where no code is usable.
"""

import re


class ReconcileError(Exception):
    """Base class for everything this package raises"""


class ConfigurationError(ReconcileError):
    pass


class AuthenticationError(ReconcileError):
    pass


class IdentityValidationError(ReconcileError, ValueError):
    pass


class DeviceServiceError(ReconcileError):
    """A backing-service call failed"""

    kind = 'unknown'

    def __init__(self, message, service=None, status_code=None, code=None, pending=False):
        super().__init__(message)
        self.message = message
        self.service = service
        self.status_code = status_code
        self.code = code
        self.pending = pending

    def __str__(self):
        prefix = f"HTTP {self.status_code}: " if self.status_code else ''
        return f"{prefix}{self.message}"


class NotFoundError(DeviceServiceError):
    kind = 'not_found'


class ConflictError(DeviceServiceError):
    """4xx that usually means the service is already working on the object"""
    kind = 'conflict'


class TransientError(DeviceServiceError):
    kind = 'transient'


class UnknownServiceError(DeviceServiceError):
    kind = 'unknown'


NOT_FOUND_CODES = {
    'resourcenotfound',
    'request_resourcenotfound',
    'itemnotfound',
    'notfound',
}

CONFLICT_CODES = {
    'conflict',
    'request_badrequest',
    'badrequest',
    'invalidrequest',
}

TRANSIENT_CODES = {
    'serviceunavailable',
    'toomanyrequests',
    'activitylimitreached',
    'timeout',
    'generalexception',
}

TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}

# Message fragments that mean a deletion/action is already queued for the object.
# Keyed by service value so the models module is not needed here.
PENDING_PATTERNS = {
    'management': [
        r'pending',
        r'already (been )?(queued|requested|in progress)',
        r'wipe .*in progress',
        r'retire .*in progress',
    ],
    'registry': [
        r'pending',
        r'deletion (is )?already in progress',
        r'already (been )?(queued|scheduled|requested)',
        r'ztd ?device ?delet',
    ],
    'directory': [
        r'pending',
        r'already (being )?deleted',
        r'already in progress',
    ],
}

NOT_FOUND_PATTERNS = [
    r'does not exist',
    r'not found',
    r'no longer exists',
]


def _service_key(service):
    if service is None:
        return None
    return getattr(service, 'value', service)


def extract_error(payload):
    """Pull (code, message) out of a Graph error body, tolerating odd shapes"""
    if not isinstance(payload, dict):
        text = str(payload or '').strip()
        return None, text
    error = payload.get('error', payload)
    if isinstance(error, str):
        return None, payload.get('error_description') or error
    if not isinstance(error, dict):
        return None, str(error)
    code = error.get('code')
    message = error.get('message') or ''
    inner = error.get('innerError') or error.get('innererror') or {}
    if not message and isinstance(inner, dict):
        message = inner.get('message', '')
    return code, str(message)


def is_pending_message(service, message):
    if not message:
        return False
    patterns = PENDING_PATTERNS.get(_service_key(service), []) or PENDING_PATTERNS['management']
    lowered = message.lower()
    return any(re.search(pattern, lowered) for pattern in patterns)


def translate_error(service, status_code, payload):
    """Map one failed HTTP response to a DeviceServiceError subclass.

    Precedence: structured error code, then status code, then message text.
    """
    code, message = extract_error(payload)
    message = message or f"Request failed with status {status_code}"
    normalized_code = (code or '').replace(' ', '').lower()
    kwargs = {'service': service, 'status_code': status_code, 'code': code}

    if normalized_code in NOT_FOUND_CODES or status_code in (404, 410):
        return NotFoundError(message, **kwargs)

    if normalized_code in TRANSIENT_CODES or status_code in TRANSIENT_STATUS:
        return TransientError(message, **kwargs)

    if normalized_code in CONFLICT_CODES or status_code in (400, 409):
        # A generic 400 sometimes means the object vanished between lookup and delete
        if status_code == 400 and any(re.search(p, message.lower()) for p in NOT_FOUND_PATTERNS):
            return NotFoundError(message, **kwargs)
        return ConflictError(message, pending=is_pending_message(service, message), **kwargs)

    return UnknownServiceError(message, **kwargs)


def translate_transport_error(service, exc):
    """Connection resets, DNS failures and timeouts never carry a status"""
    return TransientError(f"{type(exc).__name__}: {exc}", service=service)
