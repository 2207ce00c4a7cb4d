import numpy as np
import pytest

from ShapeTracking import (ComposeTransforms, EstimateSimilarityTransform, FindClosestLandmarkIndex,
                           InvalidInputError, LinearPart, RectToImageTransform, ShapeRelativePixelCoordinates,
                           UnitRectangle)


def _params(sim_trans):
    m = sim_trans.params
    return np.sqrt(np.linalg.det(m[:2, :2])), np.arctan2(m[1, 0], m[0, 0]), m[:2, 2]


def test_alignment_with_itself_is_identity():
    shape = np.random.RandomState(0).uniform(-10, 10, (7, 2))
    np.testing.assert_allclose(EstimateSimilarityTransform(shape, shape).params, np.eye(3), atol=1e-9)


def test_alignment_recovers_scale_rotation_translation():
    rng = np.random.RandomState(1)
    src = rng.uniform(-5, 5, (10, 2))
    scale, angle, translation = 1.7, 0.6, np.array([3.0, -2.0])
    rot = np.array([[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]])
    dst = scale * src @ rot.T + translation

    sim_trans = EstimateSimilarityTransform(src, dst)
    s, a, t = _params(sim_trans)
    assert s == pytest.approx(scale)
    assert a == pytest.approx(angle)
    np.testing.assert_allclose(t, translation, atol=1e-9)
    np.testing.assert_allclose(sim_trans(src), dst, atol=1e-9)


def test_alignment_of_mirror_image_is_proper_rotation():
    src = np.random.RandomState(2).uniform(-5, 5, (6, 2))
    dst = src * np.array([-1.0, 1.0])
    assert np.linalg.det(LinearPart(EstimateSimilarityTransform(src, dst))) > 0


def test_alignment_minimizes_squared_distance():
    rng = np.random.RandomState(3)
    src = rng.uniform(-5, 5, (8, 2))
    dst = src * 2 + rng.normal(0, 0.5, (8, 2))
    sim_trans = EstimateSimilarityTransform(src, dst)
    best = np.sum((sim_trans(src) - dst) ** 2)
    for _ in range(20):
        jitter = np.eye(3)
        jitter[:2, :] += rng.normal(0, 0.01, (2, 3))
        jitter[1, 0], jitter[1, 1] = -jitter[0, 1], jitter[0, 0]
        moved = (src @ (jitter @ sim_trans.params)[:2, :2].T) + (jitter @ sim_trans.params)[:2, 2]
        assert np.sum((moved - dst) ** 2) >= best - 1e-9


def test_zero_variance_source_gives_unit_scale_and_no_rotation():
    src = np.tile([[2.0, 3.0]], (4, 1))
    dst = np.random.RandomState(4).uniform(-5, 5, (4, 2))
    m = EstimateSimilarityTransform(src, dst).params
    assert np.all(np.isfinite(m))
    np.testing.assert_allclose(m[:2, :2], np.eye(2))
    np.testing.assert_allclose(m[:2, 2], dst.mean(0) - src.mean(0))


def test_alignment_rejects_mismatched_point_counts():
    with pytest.raises(InvalidInputError):
        EstimateSimilarityTransform(np.zeros((3, 2)), np.zeros((4, 2)))


def test_closest_landmark_matches_brute_force():
    rng = np.random.RandomState(5)
    for _ in range(50):
        shape = rng.uniform(0, 100, (rng.randint(1, 12), 2))
        point = rng.uniform(-10, 110, 2)
        idx = FindClosestLandmarkIndex(shape, point)
        assert 0 <= idx < len(shape)
        d2 = [np.sum((p - point) ** 2) for p in shape]
        assert d2[idx] == min(d2)


def test_closest_landmark_ties_pick_lowest_index():
    shape = np.array([[5.0, 0.0], [-1.0, 0.0], [1.0, 0.0]])
    assert FindClosestLandmarkIndex(shape, [0.0, 0.0]) == 1


def test_closest_landmark_of_empty_shape_fails():
    with pytest.raises(InvalidInputError):
        FindClosestLandmarkIndex(np.zeros((0, 2)), [0.0, 0.0])


def test_shape_relative_coordinates_reconstruct_absolute_ones():
    rng = np.random.RandomState(6)
    shape = rng.uniform(0, 10, (5, 2))
    coords = rng.uniform(0, 10, (30, 2))
    rel, closest = ShapeRelativePixelCoordinates(shape, coords)
    assert closest.shape == (30,)
    np.testing.assert_allclose(rel + shape[closest], coords)
    assert all(closest[i] == FindClosestLandmarkIndex(shape, c) for i, c in enumerate(coords))


def test_rect_transform_maps_unit_rectangle_onto_square_rect():
    sim_trans = RectToImageTransform([10, 20, 50, 60])
    np.testing.assert_allclose(sim_trans(UnitRectangle()), [[10, 20], [50, 20], [50, 60], [10, 60]], atol=1e-9)


def test_compose_applies_first_transform_first():
    first = EstimateSimilarityTransform(UnitRectangle(), UnitRectangle() * 2)
    second = EstimateSimilarityTransform(UnitRectangle(), UnitRectangle() + 5)
    points = np.array([[1.0, 1.0]])
    np.testing.assert_allclose(ComposeTransforms(first, second)(points), second(first(points)))
