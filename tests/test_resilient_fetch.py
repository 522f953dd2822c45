"""Tests for the retry / strategy fallback state machine"""
import unittest

import requests
from requests.adapters import HTTPAdapter

from header_strategies import HeaderStrategy, strategies
from proxy_errors import UpstreamUnreachableError
from resilient_fetch import ResilientFetcher, RetryPolicy, is_header_failure, is_retryable
from tests.fakes import FakeSession, SleepRecorder, make_response

URL = 'https://cdn.example/video.m3u8'


def ladder(count):
    return [HeaderStrategy(f's{i}', {'X-Strategy': str(i)}) for i in range(count)]


class FetcherTestCase(unittest.TestCase):

    def fetcher(self, script, **policy):
        self.session = FakeSession(script)
        self.sleep = SleepRecorder()
        defaults = {'max_retries': 3, 'base_delay': 1.0, 'max_delay': 10.0,
                    'backoff_factor': 2, 'jitter': 0}
        defaults.update(policy)
        return ResilientFetcher(session=self.session, policy=RetryPolicy(**defaults),
                                timeout=30, sleep=self.sleep)

    def used_strategies(self):
        return [call['headers']['X-Strategy'] for call in self.session.calls]


class TestClassification(unittest.TestCase):

    def test_header_failures(self):
        for status in (401, 403, 405, 406):
            self.assertTrue(is_header_failure(status))
        self.assertFalse(is_header_failure(404))

    def test_retryable(self):
        for status in (408, 429, 500, 502, 503, 504, 599):
            self.assertTrue(is_retryable(status))
        for status in (400, 403, 404):
            self.assertFalse(is_retryable(status))


class TestSuccess(FetcherTestCase):

    def test_first_attempt_success(self):
        fetcher = self.fetcher([make_response(200, b'#EXTM3U')])
        result = fetcher.fetch(URL, ladder(3))
        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.strategy.name, 's0')
        self.assertEqual(len(result.attempts), 1)
        self.assertEqual(self.sleep.delays, [])

    def test_partial_content_is_success(self):
        fetcher = self.fetcher([206])
        self.assertEqual(fetcher.fetch(URL, ladder(1)).status_code, 206)

    def test_request_options(self):
        fetcher = self.fetcher([200])
        fetcher.fetch(URL, ladder(1), method='HEAD', timeout=10)
        call = self.session.calls[0]
        self.assertEqual(call['method'], 'HEAD')
        self.assertEqual(call['kwargs']['timeout'], 10)
        self.assertTrue(call['kwargs']['stream'])


class TestHeaderFallback(FetcherTestCase):

    def test_403_403_200_succeeds_on_third_strategy_without_delay(self):
        fetcher = self.fetcher([403, 403, 200])
        result = fetcher.fetch(URL, ladder(3))

        self.assertEqual(result.strategy.name, 's2')
        self.assertEqual(len(self.session.calls), 3)
        self.assertEqual(self.used_strategies(), ['0', '1', '2'])
        self.assertEqual(self.sleep.delays, [])

    def test_other_client_error_advances_strategy(self):
        fetcher = self.fetcher([404, 200])
        result = fetcher.fetch(URL, ladder(2))
        self.assertEqual(self.used_strategies(), ['0', '1'])
        self.assertEqual(result.strategy.name, 's1')
        self.assertEqual(self.sleep.delays, [])

    def test_all_strategies_rejected(self):
        fetcher = self.fetcher([403, 401, 406])
        with self.assertRaises(UpstreamUnreachableError) as ctx:
            fetcher.fetch(URL, ladder(3))
        self.assertEqual(ctx.exception.status_code, 406)
        self.assertEqual(ctx.exception.last_status, 406)
        self.assertEqual(len(ctx.exception.attempts), 3)

    def test_empty_ladder_fails_without_requests(self):
        fetcher = self.fetcher([])
        with self.assertRaises(UpstreamUnreachableError):
            fetcher.fetch(URL, [])
        self.assertEqual(self.session.calls, [])


class TestBackoff(FetcherTestCase):

    def test_503_retries_with_exponential_delays_then_fails(self):
        fetcher = self.fetcher([503, 503, 503, 503])
        with self.assertRaises(UpstreamUnreachableError) as ctx:
            fetcher.fetch(URL, ladder(1))

        self.assertEqual(len(self.session.calls), 4)
        self.assertEqual(self.sleep.delays, [1.0, 2.0, 4.0])
        self.assertEqual(ctx.exception.status_code, 503)

    def test_503_exhausted_advances_to_next_strategy(self):
        fetcher = self.fetcher([503, 503, 503, 503, 200])
        result = fetcher.fetch(URL, ladder(2))

        self.assertEqual(self.used_strategies(), ['0', '0', '0', '0', '1'])
        self.assertEqual(self.sleep.delays, [1.0, 2.0, 4.0])
        self.assertEqual(result.strategy.name, 's1')

    def test_retry_count_resets_for_next_strategy(self):
        fetcher = self.fetcher([503, 403, 500, 200])
        fetcher.fetch(URL, ladder(2))
        self.assertEqual(self.used_strategies(), ['0', '0', '1', '1'])
        self.assertEqual(self.sleep.delays, [1.0, 1.0])

    def test_delay_is_capped(self):
        fetcher = self.fetcher([500] * 6 + [200], max_retries=6, max_delay=5.0)
        fetcher.fetch(URL, ladder(1))
        self.assertEqual(self.sleep.delays, [1.0, 2.0, 4.0, 5.0, 5.0, 5.0])

    def test_jitter_adds_bounded_random_delay(self):
        session = FakeSession([503, 200])
        sleep = SleepRecorder()
        fetcher = ResilientFetcher(session=session, sleep=sleep, rng=lambda: 0.5,
                                   policy=RetryPolicy(max_retries=3, base_delay=1.0,
                                                      max_delay=10.0, backoff_factor=2,
                                                      jitter=0.2))
        fetcher.fetch(URL, ladder(1))
        self.assertAlmostEqual(sleep.delays[0], 1.1)

    def test_zero_retries_falls_through_immediately(self):
        fetcher = self.fetcher([503, 200], max_retries=0)
        fetcher.fetch(URL, ladder(2))
        self.assertEqual(self.used_strategies(), ['0', '1'])
        self.assertEqual(self.sleep.delays, [])


class TestNetworkFailures(FetcherTestCase):

    def test_connection_error_retried_on_same_strategy(self):
        fetcher = self.fetcher([requests.exceptions.ConnectionError('reset'), 200])
        result = fetcher.fetch(URL, ladder(2))
        self.assertEqual(self.used_strategies(), ['0', '0'])
        self.assertEqual(self.sleep.delays, [1.0])
        self.assertEqual(result.strategy.name, 's0')

    def test_network_exhaustion_escalates_to_next_strategy(self):
        errors = [requests.exceptions.ConnectionError('refused') for _ in range(4)]
        fetcher = self.fetcher(errors + [200])
        result = fetcher.fetch(URL, ladder(2))
        self.assertEqual(self.used_strategies(), ['0'] * 4 + ['1'])
        self.assertEqual(result.strategy.name, 's1')

    def test_connection_failure_surfaces_as_502(self):
        errors = [requests.exceptions.ConnectionError('dns') for _ in range(2)]
        fetcher = self.fetcher(errors, max_retries=1)
        with self.assertRaises(UpstreamUnreachableError) as ctx:
            fetcher.fetch(URL, ladder(1))
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIsNone(ctx.exception.last_status)

    def test_timeout_surfaces_as_408(self):
        fetcher = self.fetcher([requests.exceptions.ReadTimeout('slow')], max_retries=0)
        with self.assertRaises(UpstreamUnreachableError) as ctx:
            fetcher.fetch(URL, ladder(1))
        self.assertEqual(ctx.exception.status_code, 408)

    def test_last_outcome_wins(self):
        fetcher = self.fetcher([requests.exceptions.ConnectionError('x'), 404], max_retries=0)
        with self.assertRaises(UpstreamUnreachableError) as ctx:
            fetcher.fetch(URL, ladder(2))
        self.assertEqual(ctx.exception.status_code, 404)


class RecordingAdapter(HTTPAdapter):
    """Transport adapter that records the headers requests would put on the wire"""

    def __init__(self, statuses):
        super().__init__()
        self.statuses = list(statuses)
        self.sent = []

    def send(self, request, **kwargs):
        self.sent.append(dict(request.headers))
        response = make_response(self.statuses.pop(0), url=request.url)
        response.request = request
        return response


class TestHeadersOnTheWire(unittest.TestCase):

    def fetch_through_session(self, ladder, statuses):
        session = requests.Session()
        session.trust_env = False
        adapter = RecordingAdapter(statuses)
        session.mount('https://', adapter)
        fetcher = ResilientFetcher(session=session, sleep=SleepRecorder())
        fetcher.fetch(URL, ladder)
        return adapter.sent

    def test_bare_strategy_sends_no_headers(self):
        bare = [s for s in strategies(URL, 'embed.su') if s.name == 'bare']
        self.assertEqual(self.fetch_through_session(bare, [200]), [{}])

    def test_session_defaults_do_not_leak(self):
        minimal = [s for s in strategies(URL, 'vidsrc') if s.name == 'minimal']
        sent = self.fetch_through_session(minimal, [200])[0]
        self.assertEqual(sent, minimal[0].headers)
        self.assertNotIn('python-requests', sent.get('User-Agent', ''))

    def test_every_rung_sends_only_its_own_headers(self):
        ladder = strategies(URL, 'embed.su', range_header='bytes=0-')
        sent = self.fetch_through_session(ladder, [403] * (len(ladder) - 1) + [200])
        self.assertEqual(sent, [s.headers for s in ladder])
        self.assertEqual(sent[-1], {'Range': 'bytes=0-'})


if __name__ == '__main__':
    unittest.main()
