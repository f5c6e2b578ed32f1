import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from trustcore import app as app_module
from trustcore.api import schemas


@pytest.fixture
def client():
    return TestClient(app_module.app)


def test_health_reports_checks(client):
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"] == app_module.__version__
    assert body["checks"]["store"]["status"] == "healthy"
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["checks"]["email"] == {"status": "healthy", "circuit": "CLOSED"}
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["API-Version"] == app_module.__version__
    # Plain-HTTP test client never gets HSTS
    assert "Strict-Transport-Security" not in response.headers


def test_allowed_origins_default():
    origins = app_module._allowed_origins()
    assert "http://localhost:3000" in origins
    assert "http://127.0.0.1:3000" in origins


def test_csrf_not_required_without_session(client):
    response = client.post("/v1/auth/forgot-password", json={"email": "someone@example.com"})
    assert response.status_code == 200


class TestEmailValidation:
    def test_normalizes_case_and_whitespace(self):
        request = schemas.LoginRequest(email="  Alice@Example.COM ", password="x")
        assert request.email == "alice@example.com"

    def test_strips_zero_width_characters(self):
        request = schemas.ForgotPasswordRequest(email="bob\u200b@example.com")
        assert request.email == "bob@example.com"

    @pytest.mark.parametrize(
        "email",
        [
            "no-at-sign",
            "@example.com",
            "user@",
            "user@localhost",
            "us er@example.com",
            "user@-bad-.com",
            "a" * 65 + "@example.com",
        ],
    )
    def test_rejects_malformed(self, email):
        with pytest.raises(ValidationError):
            schemas.ForgotPasswordRequest(email=email)


class TestRequestModels:
    def test_register_username_pattern(self):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password="x", username="bad name!")
        ok = schemas.RegisterRequest(email="a@example.com", password="x", username="good_name-1")
        assert ok.username == "good_name-1"

    def test_two_factor_code_length(self):
        with pytest.raises(ValidationError):
            schemas.TwoFactorCodeRequest(code="123")
        assert schemas.TwoFactorCodeRequest(code="123456").code == "123456"

    def test_session_response_defaults(self):
        response = schemas.SessionResponse(
            user_id="u1", email="a@example.com", role="ROLE_USER", is_logged_in=True
        )
        dumped = response.model_dump()
        assert dumped["impersonating"] is False
        assert dumped["capabilities"] == {}
        assert dumped["csrf_token"] is None
