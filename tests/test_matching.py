from __future__ import annotations

import math

import numpy as np
import pytest

from conftest import random_unit_vectors
from faceauth.services.matching_service import MatchingService, cosine_similarity


def _unit(*components: float, dim: int = 640) -> np.ndarray:
    v = np.zeros(dim)
    v[: len(components)] = components
    return v


def test_similarity_is_symmetric():
    a, b = random_unit_vectors(2, seed=1)
    assert cosine_similarity(a, b) == cosine_similarity(b, a)


def test_self_similarity_is_one():
    (a,) = random_unit_vectors(1, seed=2)
    assert cosine_similarity(a, a) == pytest.approx(1.0)


def test_similarity_is_clamped():
    a = _unit(1.0 + 1e-9)
    assert cosine_similarity(a, a) == 1.0
    assert cosine_similarity(a, -a) == -1.0


def test_dimension_mismatch_returns_zero():
    assert cosine_similarity(np.ones(640) / math.sqrt(640), np.ones(128) / math.sqrt(128)) == 0.0


def test_gallery_of_one_equals_similarity():
    p, a = random_unit_vectors(2, seed=3)
    m = MatchingService()
    assert m.match_against_gallery(p, [a]) == pytest.approx(cosine_similarity(p, a))


def test_gallery_uses_mean_not_max():
    probe = _unit(1.0)
    close = _unit(0.99, math.sqrt(1 - 0.99 ** 2))
    far = _unit(0.0, 1.0)
    m = MatchingService()
    s_close = cosine_similarity(probe, close)
    s_far = cosine_similarity(probe, far)
    mean = m.match_against_gallery(probe, [close, far])
    assert s_far < mean < s_close
    assert mean == pytest.approx((s_close + s_far) / 2)
    # One lucky template is not enough
    assert not m.accept(probe, [close, far])


def test_empty_gallery_scores_zero():
    assert MatchingService().match_against_gallery(_unit(1.0), []) == 0.0


def test_threshold_boundary_is_inclusive():
    a = _unit(1.0)
    b = _unit(0.78, math.sqrt(1 - 0.78 ** 2))
    m = MatchingService(threshold=0.78)
    score = m.match_against_gallery(a, [b])
    assert score == 0.78
    assert m.is_match(score)
    assert m.accept(a, [b])


def test_threshold_is_tunable():
    a = _unit(1.0)
    b = _unit(0.9, math.sqrt(1 - 0.9 ** 2))
    assert MatchingService(threshold=0.78).accept(a, [b])
    assert not MatchingService(threshold=0.95).accept(a, [b])
    assert MatchingService(threshold=0.95).accept(a, [b], threshold=0.5)


def test_default_threshold():
    assert MatchingService().threshold == 0.78
