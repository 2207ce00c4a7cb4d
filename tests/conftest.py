import cv2
import numpy as np
import pytest

from TrainingData import InputData


def render_square(rng, size=120, side=40.0, max_rotation=0.3, max_shift=8.0, rect_jitter=3.0):
    """Filled square with a bright blob on its first corner, plus a jittered detection box."""
    angle = rng.uniform(-max_rotation, max_rotation)
    half = side * rng.uniform(0.9, 1.1) / 2
    center = size / 2 + rng.uniform(-max_shift, max_shift, 2)
    rot = np.array([[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]])
    corners = np.array([[-half, -half], [half, -half], [half, half], [-half, half]])
    shape = corners @ rot.T + center

    img = np.full((size, size), 20, dtype=np.uint8)
    cv2.fillPoly(img, [np.round(shape).astype(np.int32)], 100)
    cv2.circle(img, tuple(int(v) for v in np.round(shape[0])), 4, 255, -1)

    rect = np.concatenate([shape.min(0), shape.max(0)]) + rng.uniform(-rect_jitter, rect_jitter, 4)
    return img.astype(np.float64), shape, rect


def make_squares(n, seed):
    rng = np.random.RandomState(seed)
    imgs, shapes, rects = zip(*[render_square(rng) for _ in range(n)])
    return InputData(list(imgs), list(shapes), list(rects))


@pytest.fixture
def square_data():
    return make_squares(30, seed=0)


@pytest.fixture
def heldout_square_data():
    return make_squares(10, seed=1)


@pytest.fixture
def square_factory():
    return make_squares
