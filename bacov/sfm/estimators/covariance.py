"""Covariance of bundle adjustment parameters.

The Gauss-Newton matrix H = JᵀJ of a bundle adjustment problem is split into a small block over the
camera-side parameters (poses and other parameters such as intrinsics) and a large block-diagonal
block over the 3D points. The points are eliminated with the Schur complement

    S = H_cc - H_cp H_pp⁻¹ H_pc,

whose inverse is the covariance of the camera-side parameters. Point covariances are recovered per
point by back-substitution, so the joint inverse of H is never formed.

Parameter blocks are the numpy views pycolmap hands out of its reconstruction (frame poses, camera
params, point positions). pyceres identifies a block by the address of its data, so two views of the
same memory name the same block.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import Optional

import numpy as np
import pyceres
from scipy import sparse

from bacov.baseclass import BaseClass
from bacov.utils.linalg import batched_spd_inverse, spd_inverse

logger = logging.getLogger(__name__)

DEFAULT_DAMPING = 1e-8
DEFAULT_RCOND = 0.0


class BACovarianceParams(Enum):
    """Which categories of covariances are computed."""

    POINTS = "points"
    POSES = "poses"
    POSES_AND_POINTS = "poses_and_points"
    ALL = "all"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        for member in cls:
            if key in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown covariance params '{value}', expected one of {[m.value for m in cls]}")

    def categories(self) -> tuple[bool, bool, bool]:
        """(poses, points, others) estimated for this subset."""
        if self is BACovarianceParams.POINTS:
            return False, True, False
        if self is BACovarianceParams.POSES:
            return True, False, False
        if self is BACovarianceParams.POSES_AND_POINTS:
            return True, True, False
        if self is BACovarianceParams.ALL:
            return True, True, True
        raise ValueError(f"Unhandled covariance params {self}")


@dataclass(frozen=True)
class BACovarianceOptions:
    params: BACovarianceParams = BACovarianceParams.ALL
    # Added to the diagonal of H. Zero only works if the gauge is fixed by constant blocks.
    damping: float = DEFAULT_DAMPING
    # Zero means a block is singular only when its Cholesky factorization fails.
    rcond: float = DEFAULT_RCOND

    def __post_init__(self):
        object.__setattr__(self, "params", BACovarianceParams.parse(self.params))
        if self.damping < 0:
            raise ValueError(f"Damping must be non-negative, got {self.damping}")
        if not 0 <= self.rcond < 1:
            raise ValueError(f"rcond must be in [0, 1), got {self.rcond}")

    @classmethod
    def from_conf(cls, conf=None):
        """Options from a dict or DictConfig with the keys params, damping and rcond."""
        conf = {} if conf is None else conf
        rcond = conf.get("rcond", DEFAULT_RCOND)
        return cls(
            params=conf.get("params", BACovarianceParams.ALL),
            damping=float(conf.get("damping", DEFAULT_DAMPING)),
            rcond=DEFAULT_RCOND if rcond is None else float(rcond),
        )


def block_address(values) -> int:
    """Identity of a parameter block: the address of its first value."""
    return np.asarray(values).ctypes.data


def is_estimated(problem, values) -> bool:
    """Whether values is a variable block of problem with a non-empty tangent space."""
    return (
        problem.has_parameter_block(values)
        and not problem.is_parameter_block_constant(values)
        and problem.parameter_block_tangent_size(values) > 0
    )


@dataclass(frozen=True)
class PoseParam:
    """rig_from_world block of the frame an image is the reference sensor of. None if not estimated."""

    image_id: int
    values: Optional[np.ndarray] = field(default=None, compare=False)


@dataclass(frozen=True)
class PointParam:
    point3D_id: int
    xyz: Optional[np.ndarray] = field(default=None, compare=False)


@dataclass(frozen=True)
class OtherParam:
    """Any other estimated block, e.g. camera intrinsics. handle is its index in the list it was collected into."""

    handle: int
    tangent_size: int
    values: Optional[np.ndarray] = field(default=None, compare=False)


def get_pose_params(reconstruction, problem) -> list[PoseParam]:
    params = []
    for image_id in sorted(reconstruction.images.keys()):
        image = reconstruction.images[image_id]
        if not image.has_pose or not image.is_ref_in_frame():
            continue
        values = reconstruction.frames[image.frame_id].rig_from_world.params
        if is_estimated(problem, values):
            params.append(PoseParam(image_id, values))
    return params


def get_point_params(reconstruction, problem) -> list[PointParam]:
    params = []
    for point3D_id in sorted(reconstruction.point3D_ids()):
        xyz = reconstruction.points3D[point3D_id].xyz
        if is_estimated(problem, xyz):
            params.append(PointParam(point3D_id, xyz))
    return params


def get_other_params(reconstruction, problem, pose_params, point_params, extra_blocks=()) -> list[OtherParam]:
    """Estimated camera parameter blocks and extra_blocks that are neither pose nor point blocks.

    Problem offers no listing of its blocks, so custom blocks added next to the reconstruction's
    must be passed as extra_blocks.
    """
    known = {block_address(pose.values) for pose in pose_params if pose.values is not None}
    known.update(block_address(point.xyz) for point in point_params if point.xyz is not None)
    candidates = [reconstruction.cameras[camera_id].params for camera_id in sorted(reconstruction.cameras.keys())]
    candidates += list(extra_blocks)
    params = []
    for values in candidates:
        address = block_address(values)
        if address in known or not is_estimated(problem, values):
            continue
        known.add(address)
        params.append(OtherParam(len(params), problem.parameter_block_tangent_size(values), values))
    return params


def evaluate_jacobian(problem, parameter_blocks) -> sparse.csc_matrix:
    """Jacobian of all residuals of problem w.r.t. the tangent spaces of parameter_blocks, in order."""
    options = pyceres.EvaluateOptions()
    options.set_parameter_blocks(list(parameter_blocks))
    jacobian = problem.evaluate_jacobian(options)
    return sparse.csr_matrix(
        (np.asarray(jacobian.values), np.asarray(jacobian.cols), np.asarray(jacobian.rows)),
        shape=(jacobian.num_rows, jacobian.num_cols),
    ).tocsc()


def _frozen(matrix):
    matrix = np.array(matrix, dtype=float)
    matrix.setflags(write=False)
    return matrix


def _lookup(table, key):
    try:
        return table.get(key)
    except TypeError:  # unhashable key
        return None


class BACovariance:
    """Covariances estimated for one problem. Lookups are O(1) and return read-only arrays or None.

    Pose covariances are in the 6-dim tangent space [rotation, translation] of rig_from_world of the
    image's frame, minus the coordinates a subset manifold holds constant.
    """

    def __init__(
        self, pose_covs=None, point_covs=None, other_covs=None, cam_cov=None, pose_idxs=None, other_addresses=None
    ):
        self._pose_covs = {k: _frozen(v) for k, v in (pose_covs or {}).items()}
        self._point_covs = {k: _frozen(v) for k, v in (point_covs or {}).items()}
        self._other_covs = {k: _frozen(v) for k, v in (other_covs or {}).items()}
        self._cam_cov = None if cam_cov is None else _frozen(cam_cov)
        self._pose_idxs = {k: np.asarray(v) for k, v in (pose_idxs or {}).items()}
        # block address -> handle
        self._other_addresses = dict(other_addresses or {})

    @property
    def image_ids(self) -> list[int]:
        return list(self._pose_covs)

    @property
    def point3D_ids(self) -> list[int]:
        return list(self._point_covs)

    @property
    def other_handles(self) -> list[int]:
        return list(self._other_covs)

    def get_cam_from_world_cov(self, image_id) -> Optional[np.ndarray]:
        return _lookup(self._pose_covs, image_id)

    def get_cam_cross_cov_from_world(self, image_id1, image_id2) -> Optional[np.ndarray]:
        """Cross-covariance between the pose tangent coordinates of two images."""
        if self._cam_cov is None:
            return None
        idxs1 = _lookup(self._pose_idxs, image_id1)
        idxs2 = _lookup(self._pose_idxs, image_id2)
        if idxs1 is None or idxs2 is None:
            return None
        return self._cam_cov[np.ix_(idxs1, idxs2)]

    def get_point_cov(self, point3D_id) -> Optional[np.ndarray]:
        return _lookup(self._point_covs, point3D_id)

    def get_other_params_cov(self, param) -> Optional[np.ndarray]:
        """Covariance of another block, given as its OtherParam, its handle or its values array."""
        if isinstance(param, OtherParam):
            param = param.handle
        elif isinstance(param, np.ndarray):
            param = self._other_addresses.get(block_address(param))
        if not isinstance(param, (int, np.integer)) or isinstance(param, bool):
            return None
        return self._other_covs.get(int(param))

    def __repr__(self):
        return (
            f"BACovariance(poses={len(self._pose_covs)}, points={len(self._point_covs)}, "
            f"others={len(self._other_covs)})"
        )


def _tangent_offsets(sizes):
    """Column span of every block when the blocks are laid out consecutively."""
    offsets = np.cumsum(sizes) - sizes
    return [np.arange(o, o + s) for o, s in zip(offsets, sizes)], int(np.sum(sizes))


def _point_blocks(hessian_pp, point_offsets, point_sizes):
    """Split the block-diagonal point Hessian into dense blocks, stacked per block size.

    Returns {size: (point indices, (N, size, size) blocks)}.
    """
    num_point_params = int(point_sizes.sum())
    point_of_col = np.repeat(np.arange(len(point_sizes)), point_sizes)
    local_of_col = np.arange(num_point_params) - np.repeat(point_offsets, point_sizes)
    hessian_pp = hessian_pp.tocoo()
    rows, cols, data = hessian_pp.row, hessian_pp.col, hessian_pp.data
    if np.any(point_of_col[rows] != point_of_col[cols]):
        raise ValueError("Two points appear in the same residual, the point Hessian is not block-diagonal")
    entry_point = point_of_col[rows]
    stacks = {}
    for size in np.unique(point_sizes):
        idxs = np.flatnonzero(point_sizes == size)
        slot = np.full(len(point_sizes), -1)
        slot[idxs] = np.arange(len(idxs))
        mask = point_sizes[entry_point] == size
        stacked = np.zeros((len(idxs), size, size))
        np.add.at(stacked, (slot[entry_point[mask]], local_of_col[rows[mask]], local_of_col[cols[mask]]), data[mask])
        stacks[int(size)] = (idxs, stacked)
    return stacks


def _invert_point_blocks(stacks, num_points, damping, rcond):
    """Damped inverse of every point block; None entries for singular blocks."""
    inverses = [None] * num_points
    for size, (idxs, stacked) in stacks.items():
        stacked_inv, valid = batched_spd_inverse(stacked + damping * np.eye(size), rcond)
        for i, inv, ok in zip(idxs, stacked_inv, valid):
            if ok:
                inverses[i] = inv
    return inverses


def estimate_ba_covariance_from_problem(
    options: BACovarianceOptions, problem, pose_params, point_params, other_params
) -> Optional[BACovariance]:
    """Estimates the covariances of the given blocks, None if the reduced system is singular.

    Blocks that are missing, constant or have an empty tangent space are left out.
    """
    estimate_poses, estimate_points, estimate_others = options.params.categories()
    damping = options.damping
    tstart = time()

    pose_params = [p for p in pose_params if p.values is not None and is_estimated(problem, p.values)]
    other_params = [p for p in other_params if p.values is not None and is_estimated(problem, p.values)]
    point_params = [p for p in point_params if p.xyz is not None and is_estimated(problem, p.xyz)]
    cam_blocks = [p.values for p in pose_params] + [p.values for p in other_params]
    point_blocks = [p.xyz for p in point_params]
    addresses = [block_address(b) for b in cam_blocks + point_blocks]
    if len(set(addresses)) != len(addresses):
        raise ValueError("A parameter block is listed more than once")

    cam_sizes = np.array([problem.parameter_block_tangent_size(b) for b in cam_blocks], dtype=int)
    cam_spans, num_cam_params = _tangent_offsets(cam_sizes)
    point_sizes = np.array([problem.parameter_block_tangent_size(b) for b in point_blocks], dtype=int)
    point_offsets = np.cumsum(point_sizes) - point_sizes
    num_point_params = int(point_sizes.sum())

    jacobian = evaluate_jacobian(problem, cam_blocks + point_blocks)
    jacobian.eliminate_zeros()
    jacobian_c = jacobian[:, :num_cam_params]
    jacobian_p = jacobian[:, num_cam_params:]

    hessian_cc = (jacobian_c.T @ jacobian_c).toarray()
    hessian_cc[np.diag_indices_from(hessian_cc)] += damping
    hessian_cp = (jacobian_c.T @ jacobian_p).tocsc()
    hessian_cp.eliminate_zeros()
    stacks = _point_blocks(jacobian_p.T @ jacobian_p, point_offsets, point_sizes)

    col_nnz = np.diff(jacobian_p.indptr)
    coupling_nnz = np.diff(hessian_cp.indptr)
    observed = np.array([col_nnz[o : o + s].any() for o, s in zip(point_offsets, point_sizes)], dtype=bool)
    inverses = _invert_point_blocks(stacks, len(point_params), damping, options.rcond)

    active = []
    for i, point in enumerate(point_params):
        if not observed[i]:
            logger.debug("Point %d has no residuals, its covariance is unavailable", point.point3D_id)
            continue
        if inverses[i] is None:
            o, s = point_offsets[i], point_sizes[i]
            if coupling_nnz[o : o + s].any():
                logger.warning(
                    "Covariance estimation failed: block of point %d is singular (damping=%g)",
                    point.point3D_id,
                    damping,
                )
                return None
            logger.debug("Point %d is singular and decoupled, its covariance is unavailable", point.point3D_id)
            continue
        active.append(i)

    hessian_pp_inv = sparse.csc_matrix((num_point_params, num_point_params))
    if active:
        rows, cols, vals = [], [], []
        for i in active:
            o, s = point_offsets[i], point_sizes[i]
            r, c = np.indices((s, s))
            rows.append(r.ravel() + o)
            cols.append(c.ravel() + o)
            vals.append(inverses[i].ravel())
        hessian_pp_inv = sparse.csc_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(num_point_params, num_point_params),
        )

    # W = H_cp H_pp⁻¹, so that S = H_cc - W H_pc and the point correction uses W's columns.
    weights = (hessian_cp @ hessian_pp_inv).tocsc()
    schur = hessian_cc - (weights @ hessian_cp.T).toarray()
    cam_cov = spd_inverse(schur, options.rcond)
    if cam_cov is None:
        logger.warning(
            "Covariance estimation failed: reduced camera system of size %d is not positive definite (damping=%g)",
            num_cam_params,
            damping,
        )
        return None

    pose_covs, pose_idxs = {}, {}
    if estimate_poses:
        for pose, idxs in zip(pose_params, cam_spans):
            pose_covs[pose.image_id] = cam_cov[np.ix_(idxs, idxs)]
            pose_idxs[pose.image_id] = idxs

    other_covs, other_addresses = {}, {}
    if estimate_others:
        for other, idxs in zip(other_params, cam_spans[len(pose_params) :]):
            other_covs[other.handle] = cam_cov[np.ix_(idxs, idxs)]
            other_addresses[block_address(other.values)] = other.handle

    point_covs = {}
    if estimate_points:
        indptr, indices, data = weights.indptr, weights.indices, weights.data
        for i in active:
            o, s = point_offsets[i], point_sizes[i]
            start, end = indptr[o], indptr[o + s]
            cov = inverses[i]
            if end > start:
                local_cols = np.repeat(np.arange(s), np.diff(indptr[o : o + s + 1]))
                cam_rows, local_rows = np.unique(indices[start:end], return_inverse=True)
                w = np.zeros((cam_rows.size, s))
                np.add.at(w, (local_rows, local_cols), data[start:end])
                cov = cov + w.T @ cam_cov[np.ix_(cam_rows, cam_rows)] @ w
            point_covs[point_params[i].point3D_id] = 0.5 * (cov + cov.T)

    logger.debug(
        "Estimated covariances of %d poses, %d points and %d other blocks in %.3f s",
        len(pose_covs),
        len(point_covs),
        len(other_covs),
        time() - tstart,
    )
    return BACovariance(
        pose_covs,
        point_covs,
        other_covs,
        cam_cov=cam_cov if estimate_poses else None,
        pose_idxs=pose_idxs,
        other_addresses=other_addresses,
    )


def estimate_ba_covariance(options: BACovarianceOptions, reconstruction, bundle_adjuster) -> Optional[BACovariance]:
    """Covariances of the problem built by bundle_adjuster, keyed by the reconstruction's ids."""
    problem = bundle_adjuster.problem
    pose_params = get_pose_params(reconstruction, problem)
    point_params = get_point_params(reconstruction, problem)
    other_params = get_other_params(reconstruction, problem, pose_params, point_params)
    return estimate_ba_covariance_from_problem(options, problem, pose_params, point_params, other_params)


class BACovarianceEstimator(BaseClass):
    """Configurable front-end of estimate_ba_covariance."""

    default_conf = {
        "params": "all",
        "damping": DEFAULT_DAMPING,
        "rcond": DEFAULT_RCOND,
        "verbose": 0,
    }

    def _assert_configs(self):
        self.options = BACovarianceOptions.from_conf(self.conf)

    def __call__(self, reconstruction, bundle_adjuster) -> Optional[BACovariance]:
        self.log(f"Estimating {self.options.params.value} covariances", level=1, tstart=True)
        ba_cov = estimate_ba_covariance(self.options, reconstruction, bundle_adjuster)
        self.log(tend=True, level=1)
        if ba_cov is not None:
            self.log(repr(ba_cov), level=2)
        return ba_cov

    def calculate_point_covs(self, reconstruction, bundle_adjuster, point_covs, point3D_ids=None) -> bool:
        """Estimates covariances and stores the point covariances in point_covs."""
        ba_cov = self(reconstruction, bundle_adjuster)
        if ba_cov is None:
            return False
        if point3D_ids is None:
            point3D_ids = sorted(reconstruction.point3D_ids())
        num_stored = point_covs.update(ba_cov, point3D_ids)
        self.log(f"Stored {num_stored}/{len(point3D_ids)} point covariances", level=1)
        return True
