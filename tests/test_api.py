"""Tests for the ImageID HTTP API."""

from __future__ import annotations

import base64
import io
import os
from http import HTTPStatus
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import numpy as np
import pytest
from fastapi import FastAPI, status
from PIL import Image

from imageid.config import get_settings
from imageid.ml.image_classifier import ClassificationCandidate
from imageid.ml.inference import InferencePool
from imageid.ml.model_manager import LoadedModels, LoadState
from imageid.main import create_app, init_state

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeClassifier:
    def __init__(self, name: str, candidates: list[ClassificationCandidate], error: Exception | None = None) -> None:
        self.model_name = name
        self._candidates = candidates
        self._error = error

    def _run(self, image: np.ndarray) -> list[ClassificationCandidate]:
        if self._error is not None:
            raise self._error
        return list(self._candidates)

    predict = _run
    classify = _run


class _FakeModelManager:
    def __init__(
        self,
        models: LoadedModels | None = None,
        state: LoadState = LoadState.READY,
        loaded: list[str] | None = None,
        error: str | None = None,
    ) -> None:
        self.models = models
        self.state = state
        self.error = error
        self._loaded = loaded if loaded is not None else ["custom", "mobilenet"]

    async def load_models(self) -> LoadedModels:
        raise AssertionError("not used in API tests")

    def get_loaded_models(self) -> list[str]:
        return list(self._loaded)

    def shutdown(self) -> None:
        pass


def _models(primary: list[ClassificationCandidate], primary_error: Exception | None = None) -> LoadedModels:
    return LoadedModels(
        primary=_FakeClassifier("custom", primary, primary_error),
        secondary=_FakeClassifier(
            "mobilenet",
            [
                ClassificationCandidate(label="tabby", probability=0.62),
                ClassificationCandidate(label="tiger cat", probability=0.21),
                ClassificationCandidate(label="Egyptian cat", probability=0.09),
            ],
        ),
    )


_CONFIDENT = [ClassificationCandidate(label="cat", probability=0.96), ClassificationCandidate(label="dog", probability=0.04)]
_UNSURE = [ClassificationCandidate(label="cat", probability=0.3), ClassificationCandidate(label="dog", probability=0.2)]


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (16, 16), (200, 120, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


def _data_url() -> str:
    return "data:image/png;base64," + base64.b64encode(_png_bytes()).decode()


def _init_app_state(app: FastAPI, manager: _FakeModelManager | None = None, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    init_state(app, settings, manager or _FakeModelManager(_models(_CONFIDENT)))


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    await app.state.fetcher.aclose()
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with ready fake models."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


async def _new_session(client: httpx.AsyncClient) -> str:
    response = await client.post("/api/v1/sessions")
    assert response.status_code == status.HTTP_201_CREATED
    session_id: str = response.json()["session_id"]
    return session_id


# ---------------------------------------------------------------------------
# Service status
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_state"] == "ready"
        assert data["models_loaded"] == ["custom", "mobilenet"]
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, IMAGEID_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestModelsEndpoint:
    async def test_ready_models_are_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert [(m["name"], m["role"], m["status"]) for m in models] == [
            ("custom", "primary", "active"),
            ("mobilenet", "secondary", "active"),
        ]

    async def test_secondary_still_loading(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(state=LoadState.LOADING, loaded=["custom"]))
        async for ac in _make_client(app):
            models = (await ac.get("/api/v1/models")).json()["models"]
            assert models[0]["status"] == "active"
            assert models[1] == {
                "name": "secondary",
                "role": "secondary",
                "source": "imageid/imageid-models/mobilenet/mobilenet_v2_1.0_224.onnx",
                "status": "loading",
            }

    async def test_failed_models(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(state=LoadState.FAILED, loaded=[], error="timeout"))
        async for ac in _make_client(app):
            models = (await ac.get("/api/v1/models")).json()["models"]
            assert {m["status"] for m in models} == {"failed"}


# ---------------------------------------------------------------------------
# Stateless classification
# ---------------------------------------------------------------------------


class TestClassifyImageEndpoint:
    async def test_confident_primary_tags(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("cat.png", _png_bytes(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["model"] == "custom"
        assert data["tags"] == [{"label": "cat", "confidence": 0.96}, {"label": "dog", "confidence": 0.04}]

    async def test_fallback_tags(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(_models(_UNSURE)))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("cat.png", _png_bytes(), "image/png")},
            )
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["model"] == "mobilenet"
            assert [t["label"] for t in response.json()["tags"]] == ["tabby", "tiger cat", "Egyptian cat"]

    async def test_non_image_upload_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("notes.txt", io.BytesIO(b"hello"), "text/plain")},
        )
        assert response.status_code == status.HTTP_415_UNSUPPORTED_MEDIA_TYPE

    async def test_undecodable_image_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY

    async def test_oversize_upload_rejected(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEID_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("cat.png", _png_bytes(), "image/png")},
            )
            assert response.status_code == HTTPStatus.REQUEST_ENTITY_TOO_LARGE

    async def test_models_loading_returns_503(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(state=LoadState.LOADING, loaded=[]))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("cat.png", _png_bytes(), "image/png")},
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_models_failed_reports_failed_state(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(state=LoadState.FAILED, loaded=[], error="timeout"))
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("cat.png", _png_bytes(), "image/png")},
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert "failed" in response.json()["detail"]



# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    async def test_new_session_view(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/sessions")
        assert response.status_code == status.HTTP_201_CREATED
        view = response.json()
        assert view["screen"] == "ready"
        assert view["results_panel"] == "empty"
        assert view["image"] is None
        assert view["can_identify"] is False
        assert view["show_history"] is False

    async def test_unknown_session_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/sessions/does-not-exist")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_url_then_identify(self, client: httpx.AsyncClient) -> None:
        sid = await _new_session(client)
        url = _data_url()

        view = (await client.put(f"/api/v1/sessions/{sid}/image-url", json={"url": url})).json()
        assert view["image"] == {"ref": url, "src": url}
        assert view["can_identify"] is True
        assert len(view["history"]) == 1

        response = await client.post(f"/api/v1/sessions/{sid}/identify")
        assert response.status_code == status.HTTP_200_OK
        view = response.json()
        assert view["results_panel"] == "results"
        assert view["results_model"] == "custom"
        assert view["results"] == [
            {"label": "cat", "confidence": 96.0, "best_guess": True},
            {"label": "dog", "confidence": 4.0, "best_guess": False},
        ]

    async def test_new_url_clears_results(self, client: httpx.AsyncClient) -> None:
        sid = await _new_session(client)
        await client.put(f"/api/v1/sessions/{sid}/image-url", json={"url": _data_url()})
        await client.post(f"/api/v1/sessions/{sid}/identify")

        view = (await client.put(f"/api/v1/sessions/{sid}/image-url", json={"url": "https://images.test/b.png"})).json()
        assert view["results"] == []
        assert view["results_panel"] == "empty"
        assert [h["ref"] for h in view["history"]][0] == "https://images.test/b.png"

    async def test_upload_is_served_back(self, client: httpx.AsyncClient) -> None:
        sid = await _new_session(client)
        png = _png_bytes()

        response = await client.post(
            f"/api/v1/sessions/{sid}/image",
            files={"file": ("cat.png", png, "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        image = response.json()["image"]
        assert image["ref"].startswith("upload://")
        assert image["src"].startswith("/api/v1/uploads/")

        served = await client.get(image["src"])
        assert served.status_code == status.HTTP_200_OK
        assert served.content == png
        assert served.headers["content-type"] == "image/png"

    async def test_unknown_upload_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/uploads/unknown")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_clear_selection(self, client: httpx.AsyncClient) -> None:
        sid = await _new_session(client)
        await client.post(f"/api/v1/sessions/{sid}/image", files={"file": ("cat.png", _png_bytes(), "image/png")})

        view = (await client.delete(f"/api/v1/sessions/{sid}/image")).json()
        assert view["image"] is None
        assert view["can_identify"] is False
        assert view["show_history"] is True

    async def test_history_reselect(self, client: httpx.AsyncClient) -> None:
        sid = await _new_session(client)
        await client.put(f"/api/v1/sessions/{sid}/image-url", json={"url": "https://images.test/a.png"})
        await client.put(f"/api/v1/sessions/{sid}/image-url", json={"url": "https://images.test/b.png"})

        view = (await client.post(f"/api/v1/sessions/{sid}/history/1")).json()
        assert view["image"]["ref"] == "https://images.test/a.png"
        assert [h["ref"] for h in view["history"]] == ["https://images.test/b.png", "https://images.test/a.png"]

    async def test_history_unknown_index_404(self, client: httpx.AsyncClient) -> None:
        sid = await _new_session(client)
        response = await client.post(f"/api/v1/sessions/{sid}/history/3")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_identify_invalid_image(self, client: httpx.AsyncClient) -> None:
        sid = await _new_session(client)
        await client.put(f"/api/v1/sessions/{sid}/image-url", json={"url": "ftp://images.test/cat.png"})

        response = await client.post(f"/api/v1/sessions/{sid}/identify")
        assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY

        view = (await client.get(f"/api/v1/sessions/{sid}")).json()
        assert view["results_panel"] == "error"
        assert view["error"]["kind"] == "invalid_image"
        assert view["can_identify"] is True

    async def test_identify_inference_failure(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(_models([], RuntimeError("graph error"))))
        async for ac in _make_client(app):
            sid = await _new_session(ac)
            await ac.put(f"/api/v1/sessions/{sid}/image-url", json={"url": _data_url()})

            response = await ac.post(f"/api/v1/sessions/{sid}/identify")
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR

            view = (await ac.get(f"/api/v1/sessions/{sid}")).json()
            assert view["error"]["kind"] == "inference_failed"
            assert view["results"] == []

    async def test_identify_while_loading(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(state=LoadState.LOADING, loaded=[]))
        async for ac in _make_client(app):
            sid = await _new_session(ac)
            view = (await ac.put(f"/api/v1/sessions/{sid}/image-url", json={"url": _data_url()})).json()
            assert view["screen"] == "loading_models"
            assert view["image"] is None

            response = await ac.post(f"/api/v1/sessions/{sid}/identify")
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_models_failed_view(self) -> None:
        app = create_app()
        _init_app_state(app, _FakeModelManager(state=LoadState.FAILED, loaded=[], error="connect timeout"))
        async for ac in _make_client(app):
            sid = await _new_session(ac)
            view = (await ac.get(f"/api/v1/sessions/{sid}")).json()
            assert view["screen"] == "models_failed"
            assert view["models_error"] == "connect timeout"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEID_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_bearer(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEID_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_passes_with_api_key_header(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEID_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health", headers={"X-API-Key": "test-secret-key"})
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEID_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
