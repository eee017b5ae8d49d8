from __future__ import annotations

import numpy as np
import pytest

from conftest import make_flat_image, make_noise_image
from faceauth.services.embedding_service import (
    EMBEDDING_DIM,
    EmbeddingService,
    l2_normalize,
)
from faceauth.services.preprocessing_service import preprocessing_service


@pytest.fixture
def svc() -> EmbeddingService:
    return EmbeddingService()


def test_embedding_shape_and_unit_norm(svc: EmbeddingService):
    emb = svc.extract_embedding(make_noise_image(11))
    assert emb.shape == (EMBEDDING_DIM,)
    assert abs(float(np.linalg.norm(emb)) - 1.0) < 1e-6


def test_extraction_is_deterministic(svc: EmbeddingService):
    raw = make_noise_image(12)
    a = svc.extract(preprocessing_service.preprocess(raw))
    b = svc.extract(preprocessing_service.preprocess(raw))
    assert np.array_equal(a, b)


def test_lbp_ties_set_the_bit(svc: EmbeddingService):
    flat = np.full((64, 64), 90, dtype=np.uint8)
    lbp = svc.compute_lbp_map(flat)
    assert np.all(lbp[1:-1, 1:-1] == 255)
    # Border pixels have no code
    assert np.all(lbp[0, :] == 0) and np.all(lbp[:, -1] == 0)


def test_lbp_neighbor_order_is_clockwise_from_top_left(svc: EmbeddingService):
    img = np.zeros((3, 3), dtype=np.uint8)
    img[1, 1] = 100
    img[0, 0] = 200  # top-left -> bit 0
    assert svc.compute_lbp_map(img)[1, 1] == 1
    img[0, 0] = 0
    img[1, 0] = 200  # left -> bit 7
    assert svc.compute_lbp_map(img)[1, 1] == 128
    img[1, 0] = 0
    img[1, 2] = 200  # right -> bit 3
    assert svc.compute_lbp_map(img)[1, 1] == 8


def test_lbp_histogram_cells_sum_to_one(svc: EmbeddingService):
    canonical = preprocessing_service.preprocess(make_noise_image(13))
    hist = svc.lbp_histogram(svc.compute_lbp_map(canonical))
    assert hist.shape == (512,)
    sums = hist.reshape(16, 32).sum(axis=1)
    assert np.allclose(sums, 1.0)


def test_lbp_histogram_uses_top_five_bits(svc: EmbeddingService):
    lbp = np.zeros((64, 64), dtype=np.int32)
    lbp[:16, :16] = 255  # first cell entirely in the last bin
    lbp[:16, 16:32] = 8  # second cell entirely in bin 1
    hist = svc.lbp_histogram(lbp).reshape(16, 32)
    assert hist[0, 31] == 1.0
    assert hist[1, 1] == 1.0
    assert hist[2, 0] == 1.0


def test_gradient_of_flat_image_is_zero(svc: EmbeddingService):
    flat = np.full((64, 64), 120, dtype=np.uint8)
    mag = svc.compute_gradient_magnitude(flat)
    assert np.all(mag == 0.0)
    pooled = svc.spatial_pooling(mag)
    assert pooled.shape == (128,)
    assert np.all(pooled == 0.0)


def test_gradient_is_normalized_by_global_max(svc: EmbeddingService):
    img = np.zeros((64, 64), dtype=np.uint8)
    img[:, 32:] = 255
    mag = svc.compute_gradient_magnitude(img)
    assert mag.max() == pytest.approx(1.0)
    assert np.all(mag[:, 0] == 0.0)


def test_spatial_pooling_layout(svc: EmbeddingService):
    mag = np.zeros((64, 64))
    mag[:8, :8] = 0.5
    mag[:8, 8:16] = np.tile([0.0, 1.0], (8, 4))
    pooled = svc.spatial_pooling(mag)
    means, stds = pooled[:64], pooled[64:]
    assert means[0] == pytest.approx(0.5)
    assert stds[0] == pytest.approx(0.0)
    assert means[1] == pytest.approx(0.5)
    assert stds[1] == pytest.approx(0.5)


def test_flat_image_still_yields_unit_embedding(svc: EmbeddingService):
    emb = svc.extract(np.full((64, 64), 77, dtype=np.uint8))
    assert abs(float(np.linalg.norm(emb)) - 1.0) < 1e-6
    # Gradient channel is empty
    assert np.all(emb[512:] == 0.0)


@pytest.mark.parametrize("value", [77, 100, 120, 200])
def test_blank_capture_has_empty_gradient_channel(svc: EmbeddingService, value: int):
    emb = svc.extract_embedding(make_flat_image(value))
    assert np.all(emb[512:] == 0.0)
    assert abs(float(np.linalg.norm(emb)) - 1.0) < 1e-6


def test_l2_normalize_keeps_zero_vector():
    zero = np.zeros(640)
    out = l2_normalize(zero)
    assert np.all(out == 0.0)


def test_different_images_give_different_embeddings(svc: EmbeddingService):
    a = svc.extract_embedding(make_noise_image(21))
    b = svc.extract_embedding(make_noise_image(22))
    assert not np.allclose(a, b)
