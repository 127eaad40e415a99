from __future__ import annotations

import base64
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from checksheet.app import create_app
from checksheet.config import Settings
from checksheet.storage import Storage

PREFIX = "/api/checksheet"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24


def field_config(field_name: str, field_type: str, instance_id: str | None = None, **extra: Any) -> dict[str, Any]:
    return {
        "field_name": field_name,
        "type": field_type,
        "instanceId": instance_id or field_name,
        **extra,
    }


def template_payload(name: str, *fields: dict[str, Any], **extra: Any) -> dict[str, Any]:
    return {
        "name": name,
        "html_content": extra.pop("html_content", "<div>form</div>"),
        "field_configurations": {field["instanceId"]: field for field in fields},
        **extra,
    }


def png_upload(filename: str, **extra: Any) -> dict[str, Any]:
    return {
        "filename": filename,
        "mimeType": "image/png",
        "base64": base64.b64encode(PNG_BYTES).decode("ascii"),
        **extra,
    }


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("AUTH_MODE", "none")
    monkeypatch.delenv("API_PREFIX", raising=False)
    monkeypatch.delenv("REPORT_ARTIFACTS", raising=False)
    return Settings()


@pytest.fixture
def storage(settings: Settings):
    storage = Storage(settings)
    yield storage
    storage.dispose()


@pytest.fixture
def client(settings: Settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client
    app.state.storage.dispose()


@pytest.fixture
def publish(client: TestClient) -> Callable[..., dict[str, Any]]:
    def _publish(name: str, *fields: dict[str, Any], **extra: Any) -> dict[str, Any]:
        response = client.post(f"{PREFIX}/templates", json=template_payload(name, *fields, **extra))
        assert response.status_code == 200, response.text
        return response.json()

    return _publish


@pytest.fixture
def submit(client: TestClient) -> Callable[..., Any]:
    def _submit(template_id: int, data: dict[str, Any], user_id: int = 7):
        return client.post(
            f"{PREFIX}/submissions",
            json={"template_id": template_id, "user_id": user_id, "data": data},
        )

    return _submit
