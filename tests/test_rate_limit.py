"""Tests for the sliding-window rate limiter."""
from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from app.shop.rate_limit import SlidingWindowRateLimiter, client_identifier


class FakeClock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_window_allows_up_to_limit():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(60, 3, clock=clock)
    assert [limiter.is_allowed("ip") for _ in range(4)] == [True, True, True, False]
    assert limiter.remaining("ip") == 0
    assert limiter.is_allowed("other-ip")


def test_oldest_request_ages_out():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(60, 2, clock=clock)
    limiter.is_allowed("ip")
    clock.now += 30
    limiter.is_allowed("ip")
    assert not limiter.is_allowed("ip")
    assert limiter.reset_time("ip") == 10_060.0

    clock.now += 30.5
    assert limiter.remaining("ip") == 1
    assert limiter.is_allowed("ip")


def test_reset_time_zero_when_idle():
    limiter = SlidingWindowRateLimiter(60, 2, clock=FakeClock())
    assert limiter.reset_time("ip") == 0
    assert limiter.remaining("ip") == 2


def test_client_identifier_prefers_forwarded_header():
    def req(headers):
        return Request(EnvironBuilder(headers=headers, environ_base={"REMOTE_ADDR": "10.0.0.9"}).get_environ())

    assert client_identifier(req({"X-Forwarded-For": "1.2.3.4, 10.0.0.1"})) == "1.2.3.4"
    assert client_identifier(req({"X-Real-IP": "5.6.7.8"})) == "5.6.7.8"
    assert client_identifier(req({"CF-Connecting-IP": "9.9.9.9"})) == "9.9.9.9"
    assert client_identifier(req({})) == "10.0.0.9"


def test_api_requests_get_rate_limit_headers(client):
    r = client.get("/api/categories")
    assert r.headers["X-RateLimit-Limit"] == "1000"
    assert r.headers["X-RateLimit-Remaining"] == "999"
    assert int(r.headers["X-RateLimit-Reset"]) > 0


def test_api_limit_returns_429(app, client):
    app.extensions["rate_limiters"]["api"] = SlidingWindowRateLimiter(60, 2)
    assert client.get("/api/categories").status_code == 200
    assert client.get("/api/categories").status_code == 200

    r = client.get("/api/categories")
    assert r.status_code == 429
    assert r.json["error"] == "Too many requests. Please try again later."
    assert r.json["retryAfter"] >= 1
    assert r.headers["Retry-After"]
    assert r.headers["X-RateLimit-Remaining"] == "0"

    # Health checks sit outside the API limiter.
    assert client.get("/health").status_code == 200


def test_strict_limit_on_login(app, client):
    app.extensions["rate_limiters"]["strict"] = SlidingWindowRateLimiter(60, 1)
    client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret123"})
    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret123"})
    assert r.status_code == 429
