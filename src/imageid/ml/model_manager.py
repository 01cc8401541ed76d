"""Model manager: fetch both classifiers once and build their ONNX sessions.

The primary classifier is fetched from two remote descriptors (the ONNX
graph and its metadata JSON). Only once it is ready is the secondary
classifier downloaded from the Hugging Face Hub into a per-process working
directory that is removed again at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from imageid.errors import ModelLoadError
from imageid.ml.image_classifier import CustomClassifier, MobileNetClassifier, ModelMetadata

if TYPE_CHECKING:
    from imageid.config import Settings
    from imageid.ml.image_classifier import PrimaryClassifier, SecondaryClassifier

logger = logging.getLogger(__name__)


class LoadState(StrEnum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class ModelRole(StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(frozen=True)
class LoadedModels:
    primary: PrimaryClassifier
    secondary: SecondaryClassifier


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    @property
    def state(self) -> LoadState:
        """Process-wide loading state."""
        ...

    @property
    def error(self) -> str | None:
        """Recorded load failure, if any."""
        ...

    @property
    def models(self) -> LoadedModels | None:
        """Both classifiers once ready, otherwise None."""
        ...

    async def load_models(self) -> LoadedModels:
        """Load the primary, then the secondary classifier."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Release sessions and temporary files."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Fetches, loads and holds the two ONNX classifiers for the process."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._work_dir = Path(tempfile.mkdtemp(prefix="imageid-models-"))

        self._state = LoadState.LOADING
        self._error: str | None = None
        self._load_started = False
        self._models: LoadedModels | None = None
        self._loaded: list[str] = []

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def models(self) -> LoadedModels | None:
        return self._models

    async def load_models(self) -> LoadedModels:
        """Load both classifiers, primary first. Runs once per process.

        Raises:
            RuntimeError: If loading was already started.
            ModelLoadError: If either model fails to load. Not retried.
        """
        if self._load_started:
            raise RuntimeError("Models are loaded once per process")
        self._load_started = True
        self._state = LoadState.LOADING

        started = time.monotonic()
        try:
            primary = await self._load_primary()
            secondary = await self._load_secondary()
        except Exception as exc:
            self._state = LoadState.FAILED
            self._error = str(exc) or exc.__class__.__name__
            logger.exception("Error loading models")
            raise ModelLoadError(f"Error loading models: {self._error}") from exc

        self._models = LoadedModels(primary=primary, secondary=secondary)
        self._state = LoadState.READY
        logger.info("Models ready in %.1fs: %s", time.monotonic() - started, ", ".join(self._loaded))
        return self._models

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        return list(self._loaded)

    def shutdown(self) -> None:
        """Drop sessions and remove downloaded files."""
        self._models = None
        self._loaded.clear()
        shutil.rmtree(self._work_dir, ignore_errors=True)
        logger.info("Model sessions cleared")

    # -- Internal -----------------------------------------------------------

    async def _load_primary(self) -> CustomClassifier:
        settings = self._settings
        logger.info("Loading primary model from %s", settings.primary_model_url)
        model_bytes = await self._fetch_bytes(settings.primary_model_url)
        metadata = ModelMetadata.model_validate_json(await self._fetch_bytes(settings.primary_metadata_url))

        session = await asyncio.to_thread(self._create_session, model_bytes)
        name = metadata.name or ModelRole.PRIMARY.value
        self._loaded.append(name)
        logger.info("Loaded primary model %s (%d labels)", name, len(metadata.labels))
        return CustomClassifier(name=name, session=session, metadata=metadata)

    async def _load_secondary(self) -> MobileNetClassifier:
        settings = self._settings
        logger.info("Loading secondary model %s/%s", settings.secondary_model_repo, settings.secondary_model_file)
        model_path = await asyncio.to_thread(self._hub_download, settings.secondary_model_file)
        metadata_path = await asyncio.to_thread(self._hub_download, settings.secondary_metadata_file)
        metadata = ModelMetadata.model_validate_json(metadata_path.read_bytes())

        session = await asyncio.to_thread(self._create_session, str(model_path))
        name = metadata.name or Path(settings.secondary_model_file).stem
        self._loaded.append(name)
        logger.info("Loaded secondary model %s (%d labels)", name, len(metadata.labels))
        return MobileNetClassifier(name=name, session=session, metadata=metadata, top_k=settings.secondary_top_k)

    async def _fetch_bytes(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=self._settings.download_timeout, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    def _hub_download(self, filename: str) -> Path:
        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.secondary_model_repo,
                filename=filename,
                local_dir=str(self._work_dir),
            )
        )
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    def _create_session(self, source: str | bytes) -> InferenceSession:
        return InferenceSession(
            source,
            sess_options=self._session_options,
            providers=self._providers,
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
