"""
Resilient upstream fetching

Walks the header strategy ladder depth-first: each strategy is retried with
exponential backoff on transient failures, and abandoned for the next one on
header rejections, exhausted retries or any other non-2xx answer. Attempts
are strictly sequential.
"""
import enum
import random
import time

import requests
from requests.structures import CaseInsensitiveDict

import proxy_config
from proxy_errors import (NetworkError, UpstreamHeaderError,
                          UpstreamTransientError, UpstreamUnreachableError)
from proxy_logging import logger as default_logger, short

HEADER_FAILURE_STATUSES = frozenset({401, 403, 405, 406})
RETRYABLE_STATUSES = frozenset({408, 429, 502, 503, 504})

NETWORK_EXCEPTIONS = (
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
)


class FetchState(enum.Enum):
    ATTEMPTING = 'attempting'
    HEADER_FALLBACK = 'header_fallback'
    BACKOFF = 'backoff'
    SUCCESS = 'success'
    EXHAUSTED_STRATEGIES = 'exhausted_strategies'


class RetryPolicy:
    def __init__(self, max_retries=None, base_delay=None, max_delay=None,
                 backoff_factor=None, jitter=None):
        config = proxy_config.RETRY_CONFIG
        self.max_retries = config['max_retries'] if max_retries is None else max_retries
        self.base_delay = config['base_delay'] if base_delay is None else base_delay
        self.max_delay = config['max_delay'] if max_delay is None else max_delay
        self.backoff_factor = config['backoff_factor'] if backoff_factor is None else backoff_factor
        self.jitter = config['jitter'] if jitter is None else jitter

    def delay(self, retry_count, rng=random.random):
        """Backoff before retry number ``retry_count + 1``"""
        delay = min(self.base_delay * (self.backoff_factor ** retry_count), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * rng()
        return delay


def is_header_failure(status):
    return status in HEADER_FAILURE_STATUSES


def is_retryable(status):
    return status >= 500 or status in RETRYABLE_STATUSES


class Attempt:
    """One outbound request and what came of it"""

    def __init__(self, strategy, retry_count, status=None, error=None, delay=0.0):
        self.strategy = strategy
        self.retry_count = retry_count
        self.status = status
        self.error = error
        self.delay = delay

    def __repr__(self):
        outcome = self.status if self.error is None else type(self.error).__name__
        return f"Attempt({self.strategy.name!r}, retry={self.retry_count}, {outcome})"


class FetchResult:
    def __init__(self, response, strategy, attempts):
        self.response = response
        self.strategy = strategy
        self.attempts = attempts

    @property
    def status_code(self):
        return self.response.status_code

    @property
    def headers(self):
        return self.response.headers


class ResilientFetcher:
    def __init__(self, session=None, policy=None, timeout=None, sleep=time.sleep,
                 rng=random.random):
        self.session = session or requests.Session()
        self.policy = policy or RetryPolicy()
        self.timeout = proxy_config.DEFAULT_TIMEOUT if timeout is None else timeout
        self.sleep = sleep
        self.rng = rng

    def request_headers(self, strategy):
        """
        Exactly the strategy's headers. Session defaults (python-requests
        User-Agent, Accept, ...) are masked with None so requests drops them.
        """
        headers = CaseInsensitiveDict({name: None for name in getattr(self.session, 'headers', {})})
        headers.update(strategy.headers)
        return headers

    def fetch(self, url, strategies, method='GET', timeout=None, log=None):
        """
        Fetch ``url`` trying ``strategies`` in order.

        Returns a FetchResult whose response body has not been read yet
        (``stream=True``); the caller owns closing it. Raises
        UpstreamUnreachableError once every strategy is exhausted.
        """
        log = log or default_logger
        timeout = self.timeout if timeout is None else timeout
        attempts = []
        index = 0
        retry_count = 0
        last_status = None
        last_error = None
        state = FetchState.ATTEMPTING

        while True:
            if index >= len(strategies):
                state = FetchState.EXHAUSTED_STRATEGIES
                log.error(f"All {len(strategies)} header strategies failed for {short(url)} "
                          f"after {len(attempts)} attempts (last status={last_status}, "
                          f"last error={last_error})")
                raise UpstreamUnreachableError(attempts, last_status, last_error)

            strategy = strategies[index]
            attempt = Attempt(strategy, retry_count)
            attempts.append(attempt)
            state = FetchState.ATTEMPTING

            try:
                response = self.session.request(
                    method,
                    url,
                    headers=self.request_headers(strategy),
                    stream=True,
                    timeout=timeout,
                    allow_redirects=True,
                )
            except NETWORK_EXCEPTIONS as e:
                error = NetworkError.from_exception(e)
                attempt.error = error
                last_error, last_status = error, None
                log.warning(f"Network failure with strategy {strategy.name!r} "
                            f"(retry {retry_count}): {error.message}")
                if retry_count < self.policy.max_retries:
                    state = FetchState.BACKOFF
                else:
                    state = FetchState.HEADER_FALLBACK
            else:
                status = response.status_code
                attempt.status = status

                if 200 <= status < 300:
                    state = FetchState.SUCCESS
                    log.info(f"Upstream {status} for {short(url)} with strategy "
                             f"{strategy.name!r} after {len(attempts)} attempts")
                    return FetchResult(response, strategy, attempts)

                response.close()
                last_status, last_error = status, None

                if is_header_failure(status):
                    attempt.error = UpstreamHeaderError(status, strategy.name)
                    log.info(f"Upstream {status} rejected strategy {strategy.name!r}, "
                             f"falling back")
                    state = FetchState.HEADER_FALLBACK
                elif is_retryable(status):
                    attempt.error = UpstreamTransientError(status, strategy.name)
                    if retry_count < self.policy.max_retries:
                        state = FetchState.BACKOFF
                    else:
                        log.warning(f"Retries exhausted for strategy {strategy.name!r} "
                                    f"(last status {status})")
                        state = FetchState.HEADER_FALLBACK
                else:
                    log.info(f"Upstream {status} with strategy {strategy.name!r}, "
                             f"trying next strategy")
                    state = FetchState.HEADER_FALLBACK

            if state is FetchState.BACKOFF:
                delay = self.policy.delay(retry_count, self.rng)
                attempt.delay = delay
                log.info(f"Backing off {delay:.2f}s before retry {retry_count + 1} "
                         f"of strategy {strategy.name!r}")
                self.sleep(delay)
                retry_count += 1
            else:
                index += 1
                retry_count = 0

    def close(self):
        self.session.close()
