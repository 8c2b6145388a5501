import numpy as np
import pyceres
import pytest

from bacov.sfm.mapper.bundle_adjustment import BundleAdjusterFactory
from bacov.sfm.scene.synthetic import synthesize_dataset


@pytest.fixture
def assert_cov_close():
    """Entry-wise absolute comparison of two covariance blocks."""

    def check(actual, expected, atol=1e-8):
        assert actual is not None
        assert actual.shape == expected.shape
        np.testing.assert_allclose(actual, expected, rtol=0, atol=atol)

    return check


@pytest.fixture
def ceres_covariance():
    """pyceres covariance of the given blocks, computed from the full problem without damping."""

    def compute(problem, blocks):
        blocks = list(blocks)
        pairs = [(a, b) for i, a in enumerate(blocks) for b in blocks[i:]]
        covariance = pyceres.Covariance(pyceres.CovarianceOptions())
        assert covariance.compute(pairs, problem)
        return covariance

    return compute


@pytest.fixture(scope="module")
def scene_conf():
    # 3 cameras with 3 frames each, 1000 points observed with 0.01 px noise
    return {
        "num_cameras": 3,
        "num_frames_per_camera": 3,
        "num_points3D": 1000,
        "point2D_stddev": 0.01,
        "seed": 42,
    }


@pytest.fixture
def reconstruction(scene_conf):
    return synthesize_dataset(scene_conf)


@pytest.fixture
def small_reconstruction():
    return synthesize_dataset({"num_cameras": 2, "num_frames_per_camera": 3, "num_points3D": 50, "seed": 1})


@pytest.fixture
def make_bundle_adjuster():
    """Bundle adjuster over all images, with three constant points to fix the gauge unless told otherwise."""

    def make(rec, num_constant_points=3, **conf):
        return BundleAdjusterFactory({"num_constant_points": num_constant_points, **conf})(rec)

    return make
