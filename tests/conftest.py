from __future__ import annotations

from pathlib import Path
import sys
from typing import List, Sequence, Union

import cv2
import numpy as np
import pytest

# Ensure repo root is on sys.path so tests can import `faceauth` without installing.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from faceauth.exceptions import CaptureError
from faceauth.services.biometric_service import BiometricService
from faceauth.services.encryption_service import EncryptionService
from faceauth.services.storage import InMemoryKeyValueStore
from faceauth.services.template_store import TemplateStore


def encode_png(img: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def make_noise_image(seed: int, shape=(120, 100)) -> bytes:
    """Textured RGB image (passes the brightness/blur quality gate)."""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, size=(shape[0], shape[1], 3), dtype=np.uint8)
    return encode_png(img)


def make_flat_image(value: int = 100, shape=(80, 80)) -> bytes:
    img = np.full((shape[0], shape[1], 3), value, dtype=np.uint8)
    return encode_png(img)


def random_unit_vectors(n: int, dim: int = 640, seed: int = 0) -> List[np.ndarray]:
    rng = np.random.default_rng(seed)
    out = []
    for _ in range(n):
        v = rng.normal(size=dim)
        out.append(v / np.linalg.norm(v))
    return out


class FakeCamera:
    """Returns queued frames; queued exceptions are raised instead."""

    def __init__(self, frames: Sequence[Union[bytes, Exception]]):
        self.frames = list(frames)
        self.calls = 0

    async def capture(self) -> bytes:
        self.calls += 1
        if not self.frames:
            raise CaptureError("no frame queued")
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame


class FakeDetector:
    """Returns queued detection results; the last one repeats."""

    def __init__(self, results: Sequence[object]):
        self.results = list(results)
        self.calls = 0

    async def detect(self, image_bytes: bytes):
        self.calls += 1
        result = self.results[0] if len(self.results) == 1 else self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture(scope="session")
def encryption() -> EncryptionService:
    return EncryptionService()


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def template_store(kv_store, encryption) -> TemplateStore:
    return TemplateStore(kv_store, encryption)


@pytest.fixture
def biometric(template_store) -> BiometricService:
    return BiometricService(template_store)
