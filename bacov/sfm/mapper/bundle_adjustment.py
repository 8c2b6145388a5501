import pycolmap

from bacov.baseclass import BaseClass


class BundleAdjusterFactory(BaseClass):
    """Builds the ceres bundle adjustment problem of a reconstruction, with the blocks the conf holds constant.

    The problem lives in the returned adjuster and points into the reconstruction, so both must outlive
    any use of `bundle_adjuster.problem`.
    """

    default_conf = {
        # points held constant, in order of their ids, e.g. 3 to fix the gauge
        "num_constant_points": 0,
        "fixed_cam_poses": False,
        "fixed_cam_intrinsics": False,
        "fixed_points": False,
        "gauge": "unspecified",  # [unspecified, two_cams_from_world, three_points]
        "refine_focal_length": True,
        "refine_principal_point": False,
        "refine_extra_params": True,
        "verbose": 0,
    }

    def _assert_configs(self):
        assert self.conf.num_constant_points >= 0, "num_constant_points must be non-negative"
        self.gauge = pycolmap.BundleAdjustmentGauge(str(self.conf.gauge).upper())

    def ba_options(self) -> pycolmap.BundleAdjustmentOptions:
        return pycolmap.BundleAdjustmentOptions(
            refine_focal_length=self.conf.refine_focal_length,
            refine_principal_point=self.conf.refine_principal_point,
            refine_extra_params=self.conf.refine_extra_params,
            print_summary=False,
        )

    def ba_config(self, reconstruction, image_ids=None) -> pycolmap.BundleAdjustmentConfig:
        conf = self.conf
        if image_ids is None:
            image_ids = sorted(reconstruction.reg_image_ids())
        ba_config = pycolmap.BundleAdjustmentConfig()
        for imid in image_ids:
            image = reconstruction.images[imid]
            ba_config.add_image(imid)
            if conf.fixed_cam_poses:
                ba_config.set_constant_rig_from_world_pose(image.frame_id)
            if conf.fixed_cam_intrinsics:
                ba_config.set_constant_cam_intrinsics(image.camera_id)
        for i, p3Did in enumerate(sorted(reconstruction.point3D_ids())):
            if conf.fixed_points or i < conf.num_constant_points:
                ba_config.add_constant_point(p3Did)
        if self.gauge != pycolmap.BundleAdjustmentGauge.UNSPECIFIED:
            ba_config.fix_gauge(self.gauge)
        return ba_config

    def __call__(self, reconstruction, image_ids=None, ba_config=None) -> pycolmap.CeresBundleAdjuster:
        if ba_config is None:
            ba_config = self.ba_config(reconstruction, image_ids)
        bundler = pycolmap.create_default_ceres_bundle_adjuster(self.ba_options(), ba_config, reconstruction)
        self.log(
            f"Bundle adjustment problem over {len(ba_config.images)} images with "
            f"{bundler.problem.num_residual_blocks()} residual blocks",
            level=1,
        )
        return bundler


def create_bundle_adjuster(reconstruction, conf=None, ba_config=None) -> pycolmap.CeresBundleAdjuster:
    return BundleAdjusterFactory(conf)(reconstruction, ba_config=ba_config)
