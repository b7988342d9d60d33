# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor


from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeClock, workspace_dirs
from coreason_executor.api import DownloadStream, _content_disposition, create_app
from coreason_executor.config import ExecutorConfig
from coreason_executor.coordinator import LifecycleCoordinator
from fastapi.testclient import TestClient


@pytest.fixture
def client(config: ExecutorConfig) -> Iterator[TestClient]:
    with TestClient(create_app(config)) as test_client:
        yield test_client


def test_root(client: TestClient) -> None:
    response = client.get("/")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert "POST /execute" in body["endpoints"]


def test_api_info(client: TestClient) -> None:
    body = client.get("/api").json()
    assert body["name"] == "Python Code Executor API"
    assert body["status"] == "running"
    assert body["uptime"] >= 0
    assert body["timestamp"].endswith("Z")


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["pythonVersion"].startswith("Python 3")
    assert body["activeDownloads"] == 0
    assert "tempDir" in body


def test_health_unhealthy(config: ExecutorConfig, tmp_path: Path) -> None:
    config.python_executable = str(tmp_path / "missing-python")
    with TestClient(create_app(config)) as client:
        response = client.get("/health")
    assert response.status_code == 500
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["error"] == "Python not available"


def test_execute_hello(client: TestClient) -> None:
    response = client.post("/execute", json={"code": "print('hi')"})

    assert response.status_code == 200
    body = response.json()
    assert body["output"] == "hi\n"
    assert body["success"] is True
    assert body["generatedFiles"] == []
    assert "executionTime" in body
    assert response.headers["X-Request-ID"]


def test_execute_and_download_artifact(client: TestClient) -> None:
    body = client.post("/execute", json={"code": "open('out.txt','w').write('x')"}).json()

    (generated,) = body["generatedFiles"]
    assert generated["filename"] == "out.txt"
    assert generated["mimeType"] == "text/plain"
    assert generated["size"] == 1

    for _ in range(2):
        download = client.get(generated["downloadUrl"])
        assert download.status_code == 200
        assert download.content == b"x"
        assert download.headers["content-type"].startswith("text/plain")
        assert download.headers["content-disposition"] == 'attachment; filename="out.txt"'

    assert client.get("/health").json()["activeDownloads"] == 1


def test_download_unknown_token(client: TestClient) -> None:
    response = client.get("/download/not-a-real-token")
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Invalid or expired download token"
    assert body["success"] is False


def test_download_expired_token(config: ExecutorConfig, clock: FakeClock) -> None:
    coordinator = LifecycleCoordinator(config, clock=clock)
    with TestClient(create_app(config, coordinator=coordinator)) as client:
        body = client.post("/execute", json={"code": "open('out.txt','w').write('x')"}).json()
        clock.advance(coordinator.token_ttl + 1)
        response = client.get(body["generatedFiles"][0]["downloadUrl"])

    assert response.status_code == 410
    assert response.json()["error"] == "Download link has expired"


@pytest.mark.parametrize("payload", [{}, {"code": ""}, {"code": 42}, {"code": "print(1)", "timeout": "soon"}])
def test_execute_rejects_invalid_body(client: TestClient, payload: dict[str, object]) -> None:
    response = client.post("/execute", json=payload)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Invalid request"
    assert "timestamp" in body


def test_execute_error_reports_stderr(client: TestClient, config: ExecutorConfig) -> None:
    response = client.post("/execute", json={"code": "1/0"})

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "Error executing Python code"
    assert "ZeroDivisionError" in body["details"]
    assert body["success"] is False
    assert workspace_dirs(config.temp_dir) == []


def test_execute_timeout(client: TestClient) -> None:
    response = client.post("/execute", json={"code": "import time; time.sleep(30)", "timeout": 0.5})

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "Execution timed out"
    assert body["success"] is False


def test_execute_spawn_failure(config: ExecutorConfig, tmp_path: Path) -> None:
    config.python_executable = str(tmp_path / "missing-python")
    with TestClient(create_app(config)) as client:
        response = client.post("/execute", json={"code": "print('hi')"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Failed to start Python process"
    assert body["details"]


def test_spawn_failure_details_hidden_in_production(config: ExecutorConfig, tmp_path: Path) -> None:
    config.python_executable = str(tmp_path / "missing-python")
    config.environment = "production"
    with TestClient(create_app(config)) as client:
        body = client.post("/execute", json={"code": "print('hi')"}).json()

    assert body["error"] == "Failed to start Python process"
    assert "details" not in body


def test_host_and_download(client: TestClient) -> None:
    response = client.post("/host", files={"file": ("hello.txt", b"hello world", "text/plain")})

    assert response.status_code == 200
    body = response.json()
    assert body["filename"] == "hello.txt"
    assert body["size"] == 11
    assert body["expires"].endswith("Z")

    download = client.get(body["downloadUrl"])
    assert download.status_code == 200
    assert download.content == b"hello world"


def test_content_disposition_quoting() -> None:
    assert _content_disposition("out.txt") == 'attachment; filename="out.txt"'
    assert _content_disposition("résumé.txt") == "attachment; filename*=utf-8''r%C3%A9sum%C3%A9.txt"


def test_host_too_large(config: ExecutorConfig) -> None:
    config.max_upload_bytes = 4
    with TestClient(create_app(config)) as client:
        response = client.post("/host", files={"file": ("big.bin", b"0123456789", "application/octet-stream")})

    assert response.status_code == 413
    assert response.json()["error"] == "File too large"
    assert workspace_dirs(config.temp_dir) == []


def test_host_requires_file(client: TestClient) -> None:
    response = client.post("/host", data={"other": "value"})
    assert response.status_code == 400
    assert response.json()["error"] == "No file uploaded"


def test_html_error_page(client: TestClient) -> None:
    response = client.get("/download/nope", headers={"Accept": "text/html,application/xhtml+xml"})

    assert response.status_code == 404
    assert response.headers["content-type"].startswith("text/html")
    assert "Invalid or expired download token" in response.text


def test_unknown_route(client: TestClient) -> None:
    response = client.get("/no/such/route")
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Not found"
    assert body["details"] == "Route GET /no/such/route not found"


def test_requests_rejected_while_draining(client: TestClient) -> None:
    client.app.state.service.draining = True  # type: ignore[attr-defined]
    try:
        response = client.post("/execute", json={"code": "print('hi')"})
    finally:
        client.app.state.service.draining = False  # type: ignore[attr-defined]

    assert response.status_code == 503
    assert response.json()["code"] == "SHUTTING_DOWN"


def test_security_headers(config: ExecutorConfig) -> None:
    config.allowed_hosts = ["https://deepllm.glitch.me"]
    with TestClient(create_app(config)) as client:
        response = client.get("/", headers={"Origin": "https://deepllm.glitch.me"})

    assert "connect-src 'self' https://deepllm.glitch.me" in response.headers["content-security-policy"]
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["access-control-allow-origin"] == "https://deepllm.glitch.me"


@pytest.mark.parametrize("environment, details", [("development", "kaboom"), ("production", "Something went wrong")])
def test_unhandled_error(config: ExecutorConfig, environment: str, details: str) -> None:
    config.environment = environment  # type: ignore[assignment]
    coordinator = LifecycleCoordinator(config)
    app = create_app(config, coordinator=coordinator)

    with patch.object(coordinator, "execute", AsyncMock(side_effect=RuntimeError("kaboom"))):
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.post("/execute", json={"code": "print('hi')"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Internal server error"
    assert body["details"] == details


def test_shutdown_stops_sweeper(config: ExecutorConfig) -> None:
    app = create_app(config)
    service = app.state.service
    with TestClient(app):
        assert service.sweeper.running
    assert not service.sweeper.running
    assert service.draining


def test_execute_rejects_code_with_lone_surrogate(client: TestClient, config: ExecutorConfig) -> None:
    response = client.post(
        "/execute",
        content=b'{"code": "print(\'\\ud800\')"}',
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert workspace_dirs(config.temp_dir) == []


def test_download_stream_released_after_response(client: TestClient) -> None:
    hosted = client.post("/host", files={"file": ("hello.txt", b"hello world", "text/plain")}).json()

    assert client.get(hosted["downloadUrl"]).content == b"hello world"
    assert client.app.state.service.active == 0  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_drain_waits_for_download_stream(config: ExecutorConfig) -> None:
    state = create_app(config).state.service
    handle = AsyncMock()
    handle.read = AsyncMock(side_effect=[b"hello", b""])
    body = DownloadStream(handle, state)

    assert state.active == 1
    assert await state.drain(0.05) is False

    assert [chunk async for chunk in body] == [b"hello"]
    handle.close.assert_awaited_once()
    assert await state.drain(0.05) is True


@pytest.mark.asyncio
async def test_download_stream_closed_without_iteration(config: ExecutorConfig) -> None:
    state = create_app(config).state.service
    handle = AsyncMock()
    body = DownloadStream(handle, state)

    await body.aclose()
    await body.aclose()

    handle.close.assert_awaited_once()
    handle.read.assert_not_awaited()
    assert state.streams == 0
