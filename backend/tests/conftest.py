"""Shared fixtures for the MedTriage test-suite."""

import pytest
from fastapi.testclient import TestClient

from medtriage.core.config import Settings
from medtriage.main import create_app
from medtriage.services.container import build_services

from fakes import make_png


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="development",
        classifier_backend="demo",
        gemini_api_key=None,
        jwt_secret_key="test-secret",
        blob_dir=str(tmp_path / "uploads"),
        blob_public_url="http://testserver/uploads",
    )


@pytest.fixture
def services(settings):
    return build_services(settings)


@pytest.fixture
def client(settings, services):
    return TestClient(create_app(settings=settings, services=services))


@pytest.fixture
def auth_headers(services):
    token = services.identity.issue("user-1", email="doctor@example.com")
    return {"Authorization": f"Bearer {token}"}
