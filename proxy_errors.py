"""Error taxonomy for the stream proxy"""
import requests


class ProxyError(Exception):
    """Base class for every error the relay reports to its caller"""

    status_code = 500

    def __init__(self, message, status_code=None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self, request_id=None):
        body = {'success': False, 'error': self.message}
        if self.details:
            body['details'] = self.details
        if request_id:
            body['requestId'] = request_id
        return body


class ValidationError(ProxyError):
    """Missing/invalid url parameter or a request that looks automated"""

    status_code = 400


class RateLimitError(ProxyError):
    status_code = 429

    def __init__(self, retry_after, decision=None):
        super().__init__('Too many requests', details=f'Retry after {retry_after} seconds')
        self.retry_after = retry_after
        self.decision = decision


class UpstreamHeaderError(ProxyError):
    """Upstream rejected the header set (401/403/405/406)"""

    def __init__(self, status_code, strategy):
        super().__init__(f'Upstream rejected headers of strategy {strategy!r}', status_code)
        self.strategy = strategy


class UpstreamTransientError(ProxyError):
    """5xx/408/429 from upstream, worth retrying on the same strategy"""

    def __init__(self, status_code, strategy):
        super().__init__(f'Transient upstream failure with strategy {strategy!r}', status_code)
        self.strategy = strategy


class NetworkError(ProxyError):
    """DNS, connection or timeout failure before any status was received"""

    def __init__(self, message, timeout=False):
        super().__init__(message, 408 if timeout else 502)
        self.timeout = timeout

    @classmethod
    def from_exception(cls, exc):
        # requests reports a read timeout mid-body as a ConnectionError
        timeout = isinstance(exc, requests.exceptions.Timeout) or 'timed out' in str(exc).lower()
        return cls(f"{type(exc).__name__}: {exc}", timeout=timeout)


class UpstreamUnreachableError(ProxyError):
    """Every header strategy was exhausted without a 2xx response"""

    def __init__(self, attempts, last_status=None, last_error=None):
        if last_error is not None and last_status is None:
            status = last_error.status_code
            message = ('Stream request timeout' if last_error.timeout
                       else 'Failed to connect to stream source')
            details = last_error.message
        else:
            status = last_status or 502
            message = f'Stream fetch failed: {status}'
            details = None
        super().__init__(message, status, details)
        self.attempts = attempts
        self.last_status = last_status
        self.last_error = last_error


class ManifestRewriteError(ProxyError):
    """A single manifest line could not be resolved to an absolute URL"""

    def __init__(self, line, reason):
        super().__init__(f'Cannot rewrite manifest line {line[:100]!r}: {reason}')
        self.line = line
