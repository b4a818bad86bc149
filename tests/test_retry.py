import httpx
import pytest

from stravawesome.services.retry import RetryPolicy, parse_retry_after


def _response(status, headers=None):
    return httpx.Response(status, headers=headers or {})


class TestParseRetryAfter:

    def test_seconds(self):
        assert parse_retry_after("15") == 15.0

    def test_missing(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None

    def test_garbage(self):
        assert parse_retry_after("soon") is None

    def test_http_date_in_past_is_zero(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


class TestRetryPolicy:

    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert policy.delay_for(1, _response(429)) == 1.0
        assert policy.delay_for(2, _response(429)) == 2.0
        assert policy.delay_for(3, _response(429)) == 4.0

    def test_retry_after_header_wins(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert policy.delay_for(1, _response(429, {"Retry-After": "7"})) == 7.0

    def test_delays_are_clamped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert policy.delay_for(1, _response(429, {"Retry-After": "900"})) == 30.0
        assert policy.delay_for(10, _response(429)) == 30.0

    @pytest.mark.asyncio
    async def test_retries_429_then_succeeds(self):
        delays = []

        async def fake_sleep(d):
            delays.append(d)

        responses = iter([_response(429), _response(429), _response(200)])

        async def request():
            return next(responses)

        policy = RetryPolicy(max_attempts=3, sleep=fake_sleep)
        response = await policy.send(request)
        assert response.status_code == 200
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_returns_last_429_when_attempts_run_out(self):
        calls = []

        async def request():
            calls.append(1)
            return _response(429)

        async def fake_sleep(_):
            pass

        response = await RetryPolicy(max_attempts=3, sleep=fake_sleep).send(request)
        assert response.status_code == 429
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        calls = []

        async def request():
            calls.append(1)
            return _response(500)

        response = await RetryPolicy(max_attempts=3).send(request)
        assert response.status_code == 500
        assert len(calls) == 1
