"""Shared fixtures: settings with on-disk assets, a fake ONNX session, image factories."""

from __future__ import annotations

import base64
import io
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from PIL import Image

from snapclassify.config import Settings
from snapclassify.ml.model_manager import OnnxModelManager
from snapclassify.ml.tensors import TensorRegistry

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

LABELS = ["Clean", "Dirty", "Invalid"]


# ---------------------------------------------------------------------------
# Fake ONNX Runtime session
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _NodeArg:
    name: str
    shape: list[int | str | None]


class FakeSession:
    """Stands in for onnxruntime.InferenceSession.

    Outputs a softmax over the per-channel means of the input, so an all-zero
    input yields a uniform distribution.
    """

    def __init__(self, path: str, sess_options: object = None, providers: object = None) -> None:
        self.path = path
        self.providers = providers
        self.run_count = 0

    def get_inputs(self) -> list[_NodeArg]:
        return [_NodeArg("input", ["batch", 224, 224, 3])]

    def get_outputs(self) -> list[_NodeArg]:
        return [_NodeArg("probs", ["batch", 3])]

    def run(self, output_names: list[str], feed: dict[str, np.ndarray]) -> list[np.ndarray]:
        self.run_count += 1
        x = feed["input"]
        if x.shape[1:] != (224, 224, 3):
            raise RuntimeError(f"Got invalid dimensions for input: {x.shape}")
        means = x.mean(axis=(1, 2))
        exp = np.exp(means - means.max(axis=1, keepdims=True))
        return [(exp / exp.sum(axis=1, keepdims=True)).astype(np.float32)]


@pytest.fixture()
def fake_session() -> Iterator[MagicMock]:
    """Patch InferenceSession; the mock records constructions and returns FakeSession objects."""
    with patch("snapclassify.ml.model_manager.InferenceSession", side_effect=FakeSession) as mock_cls:
        yield mock_cls


# ---------------------------------------------------------------------------
# Assets and settings
# ---------------------------------------------------------------------------


def write_assets(directory: Path, **descriptor_overrides: object) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    descriptor: dict[str, object] = {
        "name": "surface-classifier",
        "weights": "weights.onnx",
        "input_shape": [1, 224, 224, 3],
        "labels": LABELS,
    }
    descriptor.update(descriptor_overrides)
    (directory / "model.json").write_text(json.dumps(descriptor), encoding="utf-8")
    (directory / str(descriptor["weights"])).write_bytes(b"\x08\x07onnx-weights")
    return directory


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "assets_dir": "/tmp/snapclassify_test_assets",
        "model_repo_id": None,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "max_concurrent": 1,
        "queue_timeout": 5.0,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


@pytest.fixture()
def assets_dir(tmp_path: Path) -> Path:
    return write_assets(tmp_path / "assets")


@pytest.fixture()
def settings(assets_dir: Path) -> Settings:
    return make_settings(assets_dir=str(assets_dir))


@pytest.fixture()
def registry() -> TensorRegistry:
    return TensorRegistry()


@pytest.fixture()
def manager(settings: Settings, registry: TensorRegistry) -> OnnxModelManager:
    return OnnxModelManager(settings, registry)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def encode_image(image: Image.Image, fmt: str = "JPEG") -> str:
    buffer = io.BytesIO()
    options: dict[str, object] = {"quality": 95} if fmt == "JPEG" else {}
    image.save(buffer, format=fmt, **options)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture()
def solid_image_b64() -> Callable[..., str]:
    """Factory: base64 of a solid-color image."""

    def _make(
        width: int = 10,
        height: int = 10,
        color: tuple[int, ...] = (255, 255, 255),
        fmt: str = "JPEG",
    ) -> str:
        mode = "RGBA" if len(color) == 4 else "RGB"
        return encode_image(Image.new(mode, (width, height), color), fmt)

    return _make
