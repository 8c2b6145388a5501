from types import SimpleNamespace

import numpy as np
import pycolmap
import pytest

from bacov.sfm.estimators.covariance import BACovariance, is_estimated
from bacov.sfm.mapper.bundle_adjustment import BundleAdjusterFactory, create_bundle_adjuster
from bacov.sfm.scene.pointcov import PointCovs
from bacov.sfm.scene.synthetic import SyntheticDataset, synthesize_dataset


class TestSyntheticDataset:
    def test_sizes(self, scene_conf, reconstruction):
        assert reconstruction.num_cameras() == 3
        assert reconstruction.num_images() == 9
        assert reconstruction.num_points3D() == scene_conf["num_points3D"]
        assert all(p.track.length() >= 2 for p in reconstruction.points3D.values())
        assert all(image.is_ref_in_frame() for image in reconstruction.images.values())

    def test_noise_free_observations(self, small_reconstruction):
        rec = small_reconstruction
        for point3D_id in sorted(rec.point3D_ids())[:10]:
            point3D = rec.points3D[point3D_id]
            for el in point3D.track.elements:
                image = rec.images[el.image_id]
                np.testing.assert_allclose(image.project_point(point3D.xyz), image.point2D(el.point2D_idx).xy)

    def test_seed(self):
        rec1 = synthesize_dataset({"num_points3D": 5, "seed": 3})
        rec2 = synthesize_dataset({"num_points3D": 5, "seed": 3})
        ids = sorted(rec1.point3D_ids())
        assert ids == sorted(rec2.point3D_ids())
        np.testing.assert_array_equal(
            np.array([rec1.points3D[i].xyz for i in ids]), np.array([rec2.points3D[i].xyz for i in ids])
        )

    def test_invalid_conf(self):
        with pytest.raises(AssertionError):
            SyntheticDataset({"num_cameras": 0})


class TestBundleAdjusterFactory:
    def test_default_problem(self, small_reconstruction):
        rec = small_reconstruction
        bundle_adjuster = BundleAdjusterFactory()(rec)
        problem = bundle_adjuster.problem
        for image in rec.images.values():
            assert is_estimated(problem, rec.frames[image.frame_id].rig_from_world.params)
        for camera in rec.cameras.values():
            # principal point held constant
            assert problem.parameter_block_tangent_size(camera.params) == camera.params.size - 2
        assert all(is_estimated(problem, point3D.xyz) for point3D in rec.points3D.values())

    def test_constant_blocks(self, small_reconstruction):
        rec = small_reconstruction
        conf = {"num_constant_points": 3, "fixed_cam_poses": True, "fixed_cam_intrinsics": True}
        bundle_adjuster = create_bundle_adjuster(rec, conf)
        problem = bundle_adjuster.problem
        for image in rec.images.values():
            assert not is_estimated(problem, rec.frames[image.frame_id].rig_from_world.params)
        for camera in rec.cameras.values():
            assert not is_estimated(problem, camera.params)
        point3D_ids = sorted(rec.point3D_ids())
        assert not any(is_estimated(problem, rec.points3D[i].xyz) for i in point3D_ids[:3])
        assert all(is_estimated(problem, rec.points3D[i].xyz) for i in point3D_ids[3:])

    def test_image_subset(self, small_reconstruction):
        rec = small_reconstruction
        image_ids = sorted(rec.reg_image_ids())[:2]
        factory = BundleAdjusterFactory()
        assert factory.ba_config(rec, image_ids).images == set(image_ids)
        problem = factory(rec, image_ids).problem
        for image_id, image in rec.images.items():
            estimated = is_estimated(problem, rec.frames[image.frame_id].rig_from_world.params)
            assert estimated == (image_id in image_ids)

    def test_unknown_gauge(self):
        with pytest.raises((KeyError, ValueError, TypeError)):
            BundleAdjusterFactory({"gauge": "four_points"})


class TestPointCovs:
    def test_update(self):
        ba_cov = BACovariance(point_covs={1: np.diag([1.0, 2.0, 3.0])})
        point_covs = PointCovs()
        point_covs.data[2] = np.eye(3)
        assert point_covs.update(ba_cov, [1, 2]) == 1
        assert 2 not in point_covs.data
        np.testing.assert_array_equal(point_covs.data[1], np.diag([1.0, 2.0, 3.0]))

    def test_zvars_of_image_points(self, small_reconstruction):
        rec = small_reconstruction
        image = rec.images[sorted(rec.reg_image_ids())[0]]
        p3d_ids = sorted({p.point3D_id for p in image.points2D if p.has_point3D()})[:5]
        point_covs = PointCovs()
        rng = np.random.default_rng(0)
        for p3d_id in p3d_ids:
            A = rng.normal(size=(3, 3))
            point_covs.data[p3d_id] = A @ A.T
        ids, zvars = point_covs.points_zvars(image)
        assert sorted(ids) == p3d_ids
        R = image.cam_from_world().rotation.matrix()
        expected = [(R @ point_covs.data[i] @ R.T)[2, 2] for i in ids]
        np.testing.assert_allclose(zvars, expected)

    def test_zvars_in_rotated_frame(self):
        # Camera looking along world x: its z axis is world x.
        R = np.array([[0.0, 1.0, 0.0], [0.0, 0.0, 1.0], [1.0, 0.0, 0.0]])
        pose = pycolmap.Rigid3d(pycolmap.Rotation3d(R), np.zeros(3))
        image = SimpleNamespace(cam_from_world=lambda: pose, points2D=[])
        point_covs = PointCovs()
        point_covs.data[7] = np.diag([4.0, 2.0, 1.0])
        _, zvars = point_covs.points_zvars(image, [7])
        np.testing.assert_allclose(zvars, [4.0])

    def test_empty(self):
        image = SimpleNamespace(cam_from_world=pycolmap.Rigid3d, points2D=[])
        ids, zvars = PointCovs().points_zvars(image)
        assert ids == []
        assert zvars.shape == (0,)
