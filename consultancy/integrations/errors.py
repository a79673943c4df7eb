"""Structured error taxonomy shared by the outbound integration clients."""

ERROR_NOT_CONFIGURED = 'not_configured'
ERROR_DISABLED = 'disabled'
ERROR_AUTH_FAILED = 'auth_failed'
ERROR_RATE_LIMITED = 'rate_limited'
ERROR_NOT_FOUND = 'not_found'
ERROR_HTTP = 'http_error'
ERROR_NETWORK = 'network_error'
ERROR_INVALID_RESPONSE = 'invalid_response'
ERROR_CODES = (
    ERROR_NOT_CONFIGURED,
    ERROR_DISABLED,
    ERROR_AUTH_FAILED,
    ERROR_RATE_LIMITED,
    ERROR_NOT_FOUND,
    ERROR_HTTP,
    ERROR_NETWORK,
    ERROR_INVALID_RESPONSE,
)
ERROR_CODE_LABELS = {
    ERROR_NOT_CONFIGURED: 'Not configured',
    ERROR_DISABLED: 'Integration disabled',
    ERROR_AUTH_FAILED: 'Authentication failed',
    ERROR_RATE_LIMITED: 'Rate limited',
    ERROR_NOT_FOUND: 'Not found',
    ERROR_HTTP: 'Provider error',
    ERROR_NETWORK: 'Network error',
    ERROR_INVALID_RESPONSE: 'Invalid response',
}
RETRYABLE_ERROR_CODES = frozenset({ERROR_RATE_LIMITED, ERROR_NETWORK, ERROR_HTTP})


def error_code_for_status(http_status):
    if http_status == 429:
        return ERROR_RATE_LIMITED
    if http_status in (401, 403):
        return ERROR_AUTH_FAILED
    if http_status == 404:
        return ERROR_NOT_FOUND
    return ERROR_HTTP


class IntegrationError(Exception):
    provider = 'integration'

    def __init__(self, code, message, http_status=None, retry_after=None):
        super().__init__(message)
        self.code = code if code in ERROR_CODES else ERROR_HTTP
        self.message = message
        self.http_status = http_status
        self.retry_after = retry_after

    @property
    def is_rate_limited(self):
        return self.code == ERROR_RATE_LIMITED

    @property
    def retryable(self):
        return self.code in RETRYABLE_ERROR_CODES

    def to_dict(self):
        payload = {
            'provider': self.provider,
            'code': self.code,
            'label': ERROR_CODE_LABELS.get(self.code, self.code),
            'message': self.message,
            'retryable': self.retryable,
        }
        if self.http_status is not None:
            payload['http_status'] = self.http_status
        if self.retry_after is not None:
            payload['retry_after'] = self.retry_after
        return payload


class SuiteDashError(IntegrationError):
    provider = 'suitedash'


class RingCentralError(IntegrationError):
    provider = 'ringcentral'
