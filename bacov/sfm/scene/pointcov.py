import numpy as np


class PointCovs:
    """Class for 3D point covariances, filled from an estimated BACovariance."""

    def __init__(self):
        self.data = {}

    def update(self, ba_cov, point3D_ids):
        """Store the covariances of the given points that were estimated. Returns how many were stored."""
        num_stored = 0
        for pt3D_id in point3D_ids:
            cov = ba_cov.get_point_cov(pt3D_id)
            if cov is None:
                self.data.pop(pt3D_id, None)
                continue
            self.data[pt3D_id] = cov
            num_stored += 1
        return num_stored

    def points_zvars(self, image, p3d_ids=None):
        """Get the variance along the viewing direction (camera z) of 3D points in the pycolmap image."""
        if p3d_ids is None:
            p3d_ids = [p.point3D_id for p in image.points2D if p.has_point3D() and p.point3D_id in self.data]
        if len(p3d_ids) == 0:
            return p3d_ids, np.zeros(0)
        R = image.cam_from_world().rotation.matrix()
        data = np.array([self.data[pt3D_id] for pt3D_id in p3d_ids])  # (N, 3, 3)
        intermediate = np.einsum("ij,njk->nik", R, data)  # (N, 3, 3)
        result = np.einsum("nij,kj->nik", intermediate, R)  # (N, 3, 3)
        zvars = result[:, 2, 2]
        return p3d_ids, zvars
