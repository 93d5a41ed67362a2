from __future__ import annotations

import logging
from typing import List, Tuple

import pytest
from flask.testing import FlaskClient

import warden
from conftest import FakeHttpService, build_settings

SYNC_STAKES = warden.INTERNAL_API_PREFIX + "sync-user-stakes"


def _send(client: FlaskClient, method: str, path: str) -> Tuple[int, str]:
    response = client.open(path, method=method)
    return response.status_code, response.get_data(as_text=True)


@pytest.fixture
def health_client() -> FlaskClient:
    return warden.create_app(build_settings("https://app.example.com")).test_client()


def test_liveness_over_http(health_client: FlaskClient) -> None:
    response = health_client.get("/")
    assert response.status_code == 200
    assert response.get_data(as_text=True) == "ok"
    assert response.mimetype == "text/plain"


@pytest.mark.parametrize(
    "method,path",
    [
        ("POST", "/"),
        ("PUT", "/"),
        ("PATCH", "/"),
        ("DELETE", "/"),
        ("OPTIONS", "/"),
        ("GET", "/healthz"),
        ("GET", "/run?job=syncUserStakes&key=x"),
        ("POST", "/run?job=syncUserStakes&key=x"),
    ],
)
def test_everything_else_is_not_found(health_client: FlaskClient, method: str, path: str) -> None:
    assert _send(health_client, method, path) == (404, "not found")


def test_head_on_root_is_not_found(health_client: FlaskClient) -> None:
    assert health_client.head("/").status_code == 404


def test_handle_request_ignores_query_on_root() -> None:
    settings = build_settings("https://app.example.com")
    assert warden.handle_request("GET", "/?debug=1", settings) == warden.HttpResponse(200, "ok")
    assert warden.handle_request("HEAD", "/", settings).status == 404


class RecordingRunner:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.calls: List[Tuple[warden.Backend, warden.JobKey]] = []

    def __call__(self, backend: warden.Backend, job: warden.JobKey, settings: warden.Settings) -> warden.JobResult:
        self.calls.append((backend, job))
        return warden.JobResult(
            job=job,
            backend=backend,
            success=self.success,
            duration_ms=3,
            url=warden.full_url(settings.base_url(backend) or "", warden.describe_job(job).path),
            base_url=settings.base_url(backend) or "",
            status=200 if self.success else 500,
            error=None if self.success else "HTTP 500",
        )


def test_manual_trigger_rejects_before_invoking() -> None:
    settings = build_settings("https://app.example.com", manual_key="manual-secret")
    runner = RecordingRunner()
    client = warden.create_app(settings, runner=runner).test_client()

    assert _send(client, "POST", "/run?job=mintEverything&key=manual-secret") == (400, "bad job")
    assert _send(client, "POST", "/run?key=manual-secret") == (400, "bad job")
    assert _send(client, "POST", "/run?job=syncUserStakes&key=internal-secret") == (403, "forbidden")
    assert _send(client, "POST", "/run?job=syncUserStakes") == (403, "forbidden")
    assert _send(client, "POST", "/run?job=shieldClean&backend=shield&key=manual-secret")[0] == 400
    assert _send(client, "POST", "/run?job=shieldClean&backend=app&key=manual-secret")[0] == 400
    assert runner.calls == []


def test_manual_trigger_runs_one_job() -> None:
    settings = build_settings("https://app.example.com", manual_key="manual-secret")
    runner = RecordingRunner()
    client = warden.create_app(settings, runner=runner).test_client()

    assert _send(client, "POST", "/run?job=syncUserStakes&key=manual-secret") == (200, "ok")
    assert runner.calls == [(warden.Backend.APP, warden.JobKey.SYNC_USER_STAKES)]


def test_manual_trigger_reports_job_failure() -> None:
    settings = build_settings("https://app.example.com", manual_key="manual-secret")
    client = warden.create_app(settings, runner=RecordingRunner(success=False)).test_client()
    assert _send(client, "POST", "/run?job=provideLiquidity&key=manual-secret") == (502, "job failed: HTTP 500")


def test_manual_trigger_end_to_end(fake_http: FakeHttpService) -> None:
    fake_http.route("POST", SYNC_STAKES, (200, "ok"))
    settings = build_settings(fake_http.base_url, manual_key="manual-secret", enabled=False)
    client = warden.create_app(settings).test_client()

    assert _send(client, "POST", "/run?job=syncUserStakes&key=nope") == (403, "forbidden")
    assert fake_http.requests == []
    assert _send(client, "POST", "/run?job=syncUserStakes&key=manual-secret") == (200, "ok")
    assert _send(client, "GET", "/run?job=syncUserStakes&key=manual-secret") == (404, "not found")

    (call,) = fake_http.calls()
    assert call.path == SYNC_STAKES
    assert call.headers.get("internal-authorization") == "internal-secret"


def test_manual_key_never_reaches_the_logs(caplog: pytest.LogCaptureFixture) -> None:
    settings = build_settings("https://app.example.com", manual_key="manual-secret")
    client = warden.create_app(settings, runner=RecordingRunner()).test_client()

    with caplog.at_level(logging.INFO):
        assert _send(client, "POST", "/run?job=syncUserStakes&key=manual-secret") == (200, "ok")
        assert _send(client, "POST", "/run?job=syncUserStakes&key=manual-secret-typo") == (403, "forbidden")

    messages = [record.getMessage() for record in caplog.records]
    assert "POST /run 200" in messages
    assert "POST /run 403" in messages
    assert all("manual-secret" not in message for message in messages)


def test_access_log_lines_are_redacted() -> None:
    warden.create_app(build_settings("https://app.example.com"))
    access_logger = logging.getLogger("werkzeug")
    filters = [f for f in access_logger.filters if isinstance(f, warden.SecretRedactingFilter)]
    assert len(filters) == 1

    record = logging.LogRecord(
        "werkzeug",
        logging.INFO,
        __file__,
        1,
        '%s - - [%s] "%s" %s %s',
        ("127.0.0.1", "23/Feb/2026 06:00:00", "POST /run?job=syncUserStakes&key=manual-secret HTTP/1.1", "200", "-"),
        None,
    )
    assert filters[0].filter(record) is True
    message = record.getMessage()
    assert "manual-secret" not in message
    assert "/run?job=syncUserStakes&key=[redacted] HTTP/1.1" in message


def test_redact_query_secrets_leaves_other_params() -> None:
    assert warden.redact_query_secrets("/run?key=abc&job=x") == "/run?key=[redacted]&job=x"
    assert warden.redact_query_secrets("/run?job=x&monkey=1") == "/run?job=x&monkey=1"
