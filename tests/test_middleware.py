from dataclasses import replace

from fastapi.testclient import TestClient

from pubsub_proxy.main import create_app
from pubsub_proxy.middleware import FixedWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_limiter_allows_up_to_max_per_window():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)

    assert limiter.hit("1.2.3.4")[0] is True
    assert limiter.hit("1.2.3.4")[0] is True
    allowed, reset_in = limiter.hit("1.2.3.4")
    assert allowed is False
    assert reset_in == 60

    assert limiter.hit("5.6.7.8")[0] is True


def test_limiter_resets_after_window():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)

    limiter.hit("a")
    assert limiter.hit("a")[0] is False
    clock.now = 60.0
    assert limiter.hit("a")[0] is True


def test_publish_endpoint_is_rate_limited(settings, bus):
    client = TestClient(create_app(replace(settings, rate_limit_max=2)))
    payload = {"topic": "orders", "message": 1}

    assert client.post("/api/publish", json=payload).status_code == 200
    assert client.post("/api/publish", json=payload).status_code == 200
    response = client.post("/api/publish", json=payload)

    assert response.status_code == 429
    assert response.json() == {"error": "Too many requests from this IP, please try again after 15 minutes"}
    assert int(response.headers["Retry-After"]) > 0
    assert len(bus.published) == 2


def test_health_is_not_rate_limited(settings, bus):
    client = TestClient(create_app(replace(settings, rate_limit_max=1)))

    for _ in range(3):
        assert client.get("/health").status_code == 200


def test_oversized_body_is_rejected(settings, bus):
    client = TestClient(create_app(replace(settings, max_body_bytes=64)))

    response = client.post("/api/publish", json={"topic": "orders", "message": "x" * 200})

    assert response.status_code == 413
    assert bus.get_topic_calls == []


def test_security_headers_are_set(client):
    response = client.get("/health")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "SAMEORIGIN"


def test_cors_preflight(client):
    response = client.options(
        "/api/publish",
        headers={"Origin": "https://example.com", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers


def test_limiter_prunes_expired_windows_once_per_window():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(max_requests=5, window_seconds=60, clock=clock)

    for n in range(50):
        limiter.hit(f"10.0.0.{n}")
    assert len(limiter._windows) == 50

    clock.now = 61.0
    limiter.hit("10.0.1.1")
    assert list(limiter._windows) == ["10.0.1.1"]


def _chunks(total: int, size: int = 500):
    sent = 0
    while sent < total:
        yield b"x" * min(size, total - sent)
        sent += size


def test_chunked_body_over_limit_is_rejected(settings, bus):
    client = TestClient(create_app(replace(settings, max_body_bytes=64)))

    response = client.post(
        "/api/publish",
        content=_chunks(5000),
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 413
    assert response.json() == {"error": "Request body too large"}
    assert bus.get_topic_calls == []


def test_chunked_body_under_limit_is_relayed(settings, bus):
    client = TestClient(create_app(settings))
    body = b'{"topic": "orders", "message": {"id": 1}}'

    response = client.post(
        "/api/publish",
        content=iter([body[:10], body[10:]]),
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 200
    assert len(bus.published) == 1
