import argparse

import numpy as np

from bacov.sfm.estimators import BACovarianceEstimator
from bacov.sfm.mapper.bundle_adjustment import BundleAdjusterFactory
from bacov.sfm.scene.pointcov import PointCovs
from bacov.sfm.scene.synthetic import synthesize_dataset
from bacov.utils.tools import load_preset, summarize_cfg

parser = argparse.ArgumentParser(description="Estimate bundle adjustment covariances of a synthetic scene")
parser.add_argument("-c", "--conf", type=str, default="default", help="Name of the covariance preset")
parser.add_argument("--damping", type=float, default=None, help="Override the preset's damping")
parser.add_argument("--num_cameras", type=int, default=3)
parser.add_argument("--num_frames_per_camera", type=int, default=3)
parser.add_argument("--num_points3D", type=int, default=1000)
parser.add_argument("--point2D_stddev", type=float, default=0.01)
parser.add_argument("--num_constant_points", type=int, default=3, help="Points held constant to fix the gauge")
parser.add_argument("--seed", type=int, default=0)
parser.add_argument("-v", "--verbose", type=int, default=0)

args, _ = parser.parse_known_args()
conf = load_preset("covariance", args.conf)
if args.damping is not None:
    conf.damping = args.damping
conf.verbose = args.verbose
if args.verbose > 0:
    print(summarize_cfg(conf))

rec = synthesize_dataset(
    {
        "num_cameras": args.num_cameras,
        "num_frames_per_camera": args.num_frames_per_camera,
        "num_points3D": args.num_points3D,
        "point2D_stddev": args.point2D_stddev,
        "seed": args.seed,
        "verbose": args.verbose,
    }
)
ba_factory = BundleAdjusterFactory({"num_constant_points": args.num_constant_points, "verbose": args.verbose})
bundle_adjuster = ba_factory(rec)

ba_cov = BACovarianceEstimator(conf)(rec, bundle_adjuster)
if ba_cov is None:
    raise SystemExit("Covariance estimation failed, try a larger --damping or more --num_constant_points")
point_covs = PointCovs()
point_covs.update(ba_cov, sorted(rec.point3D_ids()))

print(rec.summary())
print(ba_cov)
for image_id in ba_cov.image_ids:
    cov = ba_cov.get_cam_from_world_cov(image_id)
    print(f"image {image_id}: pose std {np.sqrt(np.diag(cov)).round(6)}")
if point_covs.data:
    stds = np.sqrt([np.trace(cov) for cov in point_covs.data.values()])
    print(f"{len(stds)} point covariances, median position std {np.median(stds):.6f}")
