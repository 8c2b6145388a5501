"""Synthetic scenes with known geometry for testing and demonstrating covariance estimation."""

import pycolmap

from bacov.baseclass import BaseClass


class SyntheticDataset(BaseClass):
    """pycolmap synthetic scene: one single-camera rig per camera, noise added to the 2D observations."""

    default_conf = {
        "num_cameras": 2,
        "num_frames_per_camera": 5,
        "num_points3D": 100,
        "num_points2D_without_point3D": 10,
        "point2D_stddev": 0.0,
        "seed": 0,
        "verbose": 0,
    }

    def _assert_configs(self):
        assert self.conf.num_cameras > 0, "num_cameras must be positive"
        assert self.conf.num_frames_per_camera > 0, "num_frames_per_camera must be positive"
        assert self.conf.num_points3D >= 0, "num_points3D must be non-negative"
        assert self.conf.point2D_stddev >= 0, "point2D_stddev must be non-negative"

    def dataset_options(self) -> pycolmap.SyntheticDatasetOptions:
        conf = self.conf
        return pycolmap.SyntheticDatasetOptions(
            num_rigs=conf.num_cameras,
            num_cameras_per_rig=1,
            num_frames_per_rig=conf.num_frames_per_camera,
            num_points3D=conf.num_points3D,
            num_points2D_without_point3D=conf.num_points2D_without_point3D,
        )

    def __call__(self) -> pycolmap.Reconstruction:
        pycolmap.set_random_seed(self.conf.seed)
        rec = pycolmap.synthesize_dataset(self.dataset_options())
        if self.conf.point2D_stddev > 0:
            noise_options = pycolmap.SyntheticNoiseOptions(point2D_stddev=self.conf.point2D_stddev)
            pycolmap.synthesize_noise(noise_options, rec)
        self.log(rec.summary(), level=1)
        return rec


def synthesize_dataset(conf=None) -> pycolmap.Reconstruction:
    return SyntheticDataset(conf)()
