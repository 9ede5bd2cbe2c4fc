import asyncio
import importlib
import sys
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

MIRROR = "https://master.dl.sourceforge.net"


def _ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        headers={
            "content-type": "application/zip",
            "set-cookie": "session=abc",
            "server": "nginx",
            "cf-cache-status": "HIT",
            "content-length": "7",
        },
        stream=httpx.ByteStream(b"zipdata"),
    )


def _prepare_client(tmp_path, monkeypatch, handler=_ok_handler, *, store="sql", timeout="5", cache_ttl="120"):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    db_path = tmp_path / "stats.db"
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("STATS_STORE", store)
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("ENABLE_SYNC_SCHEDULER", "false")
    monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", timeout)
    monkeypatch.setenv("CACHE_TTL_SECONDS", cache_ttl)
    monkeypatch.setenv("MIRROR_HOST", "master.dl.sourceforge.net")

    # Reload modules so configuration changes take effect cleanly.
    module_order = [
        "sfproxy.config",
        "sfproxy.db",
        "sfproxy.core.metrics",
        "sfproxy.storage",
        "sfproxy.services.stats",
        "sfproxy.services.persistence",
        "sfproxy.scheduler",
        "sfproxy.api.routes",
        "sfproxy.main",
    ]

    for module_name in module_order:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["sfproxy.main"]
    routes = sys.modules["sfproxy.api.routes"]

    seen = []

    async def _recording_handler(request: httpx.Request):
        seen.append(request)
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    upstream = httpx.AsyncClient(transport=httpx.MockTransport(_recording_handler))

    async def _client_override():
        return upstream

    main.app.dependency_overrides[routes.get_http_client] = _client_override

    test_client = TestClient(main.app)
    test_client.upstream_requests = seen  # type: ignore[attr-defined]
    return test_client


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = _prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        yield c


def _stats():
    return sys.modules["sfproxy.core.metrics"].stats


def test_api_info_and_health(client):
    for path in ("/", "/api"):
        response = client.get(path)
        assert response.status_code == 200
        assert response.json()["name"] == "SourceForge Proxy API"
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    health = client.get("/health")
    assert health.status_code == 200
    payload = health.json()
    assert payload["status"] == "healthy"
    assert payload["version"] == "2.0.0"
    assert "timestamp" in payload
    assert payload["uptime"] >= 0


def test_preflight_returns_cors_headers(client):
    response = client.options("/projects/foo/files/bar.zip/download")
    assert response.status_code == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "GET, HEAD, OPTIONS"
    assert response.headers["Access-Control-Allow-Headers"] == "Content-Type, Authorization, X-Requested-With"
    assert response.headers["Access-Control-Max-Age"] == "86400"
    assert client.upstream_requests == []  # type: ignore[attr-defined]


def test_download_is_proxied_with_rewritten_headers(client):
    response = client.get("/projects/foo/files/bar/baz.zip/download", headers={"cookie": "mine=1"})

    assert response.status_code == 200
    assert response.content == b"zipdata"
    assert response.headers["Content-Disposition"] == 'attachment; filename="baz.zip"'
    assert response.headers["Cache-Control"] == "public, max-age=120"
    assert response.headers["X-Proxy-By"] == "SourceForge-Proxy"
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "set-cookie" not in response.headers
    assert "server" not in response.headers
    assert "location" not in response.headers

    (upstream,) = client.upstream_requests  # type: ignore[attr-defined]
    assert str(upstream.url) == f"{MIRROR}/project/foo/bar/baz.zip?viasf=1"
    assert upstream.method == "GET"
    assert upstream.headers["user-agent"].startswith("Mozilla/5.0")
    assert "cookie" not in upstream.headers

    stats = client.get("/stats").json()
    assert stats["total_requests"] == 1
    assert stats["requests_today"] == 1
    assert stats["cache_hit_rate"] == "100.0%"
    assert stats["data_transferred"] == "7.0 B"
    assert stats["top_downloads"] == ["baz.zip (1)"]
    assert stats["errors"] == 0


def test_redirects_are_followed_by_the_proxy(tmp_path, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "master.dl.sourceforge.net" and request.url.path.startswith("/project/"):
            return httpx.Response(302, headers={"location": "/other/path"})
        if request.url.path == "/other/path":
            return httpx.Response(301, headers={"location": "https://mirror.example/files/baz.zip"})
        return httpx.Response(200, stream=httpx.ByteStream(b"payload"))

    with _prepare_client(tmp_path, monkeypatch, handler) as c:
        response = c.get("/projects/foo/files/baz.zip/download")
        assert response.status_code == 200
        assert response.content == b"payload"
        assert "location" not in response.headers

        urls = [str(r.url) for r in c.upstream_requests]  # type: ignore[attr-defined]
        assert urls == [
            f"{MIRROR}/project/foo/baz.zip?viasf=1",
            f"{MIRROR}/other/path",
            "https://mirror.example/files/baz.zip",
        ]


def test_invalid_path_returns_400_and_counts_error(client):
    response = client.get("/unknown/path")
    assert response.status_code == 400
    payload = response.json()
    assert payload["error"] is True
    assert payload["status"] == 400
    assert payload["message"] == "Invalid SourceForge URL"
    assert payload["timestamp"].endswith("Z")
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert client.upstream_requests == []  # type: ignore[attr-defined]

    stats = client.get("/stats").json()
    assert stats["errors"] == 1
    assert stats["total_requests"] == 1
    assert stats["requests_today"] == 1
    assert stats["cache_hit_rate"] == "0.0%"
    assert stats["top_downloads"] == ["No download data yet"]


def test_upstream_timeout_returns_502(tmp_path, monkeypatch):
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(2)
        return httpx.Response(200)

    with _prepare_client(tmp_path, monkeypatch, handler, timeout="0.05") as c:
        response = c.get("/projects/foo/files/slow.iso/download")
        assert response.status_code == 502
        message = response.json()["message"]
        assert "timeout" in message.lower()
        assert message == "Proxy request failed: Request timeout after 50ms"
        assert _stats().errors == 1


def test_too_many_redirects_returns_502(tmp_path, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"location": "/loop"})

    with _prepare_client(tmp_path, monkeypatch, handler) as c:
        response = c.get("/projects/foo/files/loop.zip/download")
        assert response.status_code == 502
        assert response.json()["message"] == "Proxy request failed: Too many redirects (5)"
        # The initial attempt plus five followed redirects
        assert len(c.upstream_requests) == 6  # type: ignore[attr-defined]


def test_upstream_error_status_is_propagated(tmp_path, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, content=b"missing")

    with _prepare_client(tmp_path, monkeypatch, handler) as c:
        response = c.get("/projects/foo/files/gone.zip/download")
        assert response.status_code == 404
        payload = response.json()
        assert payload["message"] == "SourceForge Error: Not Found"
        assert payload["status"] == 404

        stats = c.get("/stats").json()
        assert stats["errors"] == 1
        assert stats["data_transferred"] == "0 B"
        # The download key is recorded once the target resolves
        assert stats["top_downloads"] == ["gone.zip (1)"]


def test_unhandled_error_returns_generic_500(client, monkeypatch):
    routes = sys.modules["sfproxy.api.routes"]

    def _boom(*args, **kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(routes, "process_response", _boom)

    response = client.get("/projects/foo/files/baz.zip/download")
    assert response.status_code == 500
    payload = response.json()
    assert payload["message"] == "Internal Server Error"
    assert "secret" not in response.text
    assert _stats().errors == 1


def test_active_users_come_from_trusted_header(client):
    client.get("/health", headers={"CF-Connecting-IP": "198.51.100.1"})
    client.get("/health", headers={"CF-Connecting-IP": "198.51.100.2"})
    client.get("/health", headers={"CF-Connecting-IP": "198.51.100.1"})
    client.get("/health")

    assert client.get("/stats").json()["active_users"] == 3


def test_response_times_only_sampled_for_proxy_requests(client):
    client.get("/health")
    client.get("/stats")
    assert _stats().response_times == []

    client.get("/projects/foo/files/baz.zip/download")
    client.get("/not/a/download")
    assert len(_stats().response_times) == 2
    assert client.get("/stats").json()["avg_response_time"].endswith("ms")


def test_stats_survive_a_restart(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch) as c:
        assert c.get("/projects/foo/files/baz.zip/download").status_code == 200
        assert c.get("/projects/foo/files/baz.zip/download").status_code == 200

    # Shutdown flushed the records; a fresh process hydrates from them.
    with _prepare_client(tmp_path, monkeypatch) as c:
        stats = c.get("/stats").json()
        assert stats["total_requests"] == 2
        assert stats["requests_today"] == 2
        assert stats["top_downloads"] == ["baz.zip (2)"]
        assert stats["data_transferred"] == "14.0 B"


def test_persistence_can_be_disabled(tmp_path, monkeypatch):
    with _prepare_client(tmp_path, monkeypatch, store="none") as c:
        assert c.get("/projects/foo/files/baz.zip/download").status_code == 200
        assert c.get("/stats").json()["total_requests"] == 1
    assert not (tmp_path / "stats.db").exists()


def test_fixed_endpoints_answer_head_requests(client):
    for path in ("/", "/api", "/health", "/stats"):
        response = client.head(path)
        assert response.status_code == 200
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    assert client.upstream_requests == []  # type: ignore[attr-defined]
    stats = client.get("/stats").json()
    assert stats["total_requests"] == 0
    assert stats["errors"] == 0


def test_encoded_file_names_reach_the_mirror_intact(client):
    response = client.get("/projects/foo/files/release%231.zip/download")
    assert response.status_code == 200

    (upstream,) = client.upstream_requests  # type: ignore[attr-defined]
    assert str(upstream.url) == f"{MIRROR}/project/foo/release%231.zip?viasf=1"
    assert _stats().downloads == {"release%231.zip": 1}
    assert _stats().errors == 0
