import stat

from fastapi.testclient import TestClient

from ojekkampus import app as app_module
from ojekkampus.config import Settings


def test_welcome_reports_service():
    client = TestClient(app_module.app)
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "data": {"service": "ojek-kampus-auth", "version": app_module.__version__},
    }


def test_healthz_memory_store():
    client = TestClient(app_module.app)
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["checks"]["filesystem"] == {"status": "healthy"}
    assert response.headers["Cache-Control"].startswith("no-store")


def test_request_id_echoed_or_generated():
    client = TestClient(app_module.app)
    echoed = client.get("/", headers={"X-Request-ID": "req-123"})
    generated = client.get("/")
    assert echoed.headers["X-Request-ID"] == "req-123"
    assert generated.headers["X-Request-ID"]


def test_security_headers_on_api_routes():
    client = TestClient(app_module.app)
    response = client.get("/api/auth/me")
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "no-store" in response.headers["Cache-Control"]
    assert "Strict-Transport-Security" not in response.headers


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("REDIS_URL", "  ")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://ojek.kampus.ac.id, https://admin.kampus.ac.id,")
    monkeypatch.setenv("IP_RATE_LIMIT_PER_WINDOW", "7")

    settings = Settings.from_env()

    assert settings.redis_url is None
    assert settings.cors_allow_origins == [
        "https://ojek.kampus.ac.id",
        "https://admin.kampus.ac.id",
    ]
    assert settings.ip_rate_limit_per_window == 7
    assert settings.resolved_upload_dir == str(tmp_path / "uploads")


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.delenv("JWT_SECRET", raising=False)

    first = Settings.from_env()
    second = Settings.from_env()

    secret_path = tmp_path / ".jwt_secret"
    assert first.jwt_secret == second.jwt_secret
    assert secret_path.read_text() == first.jwt_secret
    assert stat.S_IMODE(secret_path.stat().st_mode) == 0o600
