"""Inversion of symmetric positive definite matrices.

A matrix is rejected when its Cholesky factorization fails. An optional rcond additionally rejects
matrices whose smallest eigenvalue is at most rcond times the largest.
"""

import numpy as np
from scipy import linalg


def _below_rcond(eigvals, rcond):
    return ~((eigvals[..., -1] > 0) & (eigvals[..., 0] > rcond * eigvals[..., -1]))


def is_positive_definite(matrix, rcond=0.0):
    size = matrix.shape[-1]
    if size == 0:
        return True
    if not np.all(np.isfinite(matrix)):
        return False
    if rcond > 0 and _below_rcond(np.linalg.eigvalsh(matrix), rcond):
        return False
    try:
        np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError:
        return False
    return True


def spd_inverse(matrix, rcond=0.0):
    """Inverse through a Cholesky factorization, None if the matrix is not numerically SPD."""
    size = matrix.shape[0]
    if size == 0:
        return np.zeros((0, 0))
    if not np.all(np.isfinite(matrix)):
        return None
    if rcond > 0 and _below_rcond(np.linalg.eigvalsh(matrix), rcond):
        return None
    try:
        factor = linalg.cho_factor(matrix, lower=True)
    except linalg.LinAlgError:
        return None
    inverse = linalg.cho_solve(factor, np.eye(size))
    if not np.all(np.isfinite(inverse)):
        return None
    return 0.5 * (inverse + inverse.T)


def batched_spd_inverse(blocks, rcond=0.0):
    """Invert a stack of small (N, k, k) SPD blocks.

    Returns the inverses and a boolean mask of the blocks that were invertible; rows of the
    singular blocks are filled with NaN.
    """
    num_blocks, size = blocks.shape[0], blocks.shape[-1]
    inverses = np.full_like(blocks, np.nan, dtype=float)
    if num_blocks == 0 or size == 0:
        return inverses, np.ones(num_blocks, dtype=bool)
    valid = np.all(np.isfinite(blocks), axis=(1, 2))
    if rcond > 0 and np.any(valid):
        valid[valid] = ~_below_rcond(np.linalg.eigvalsh(blocks[valid]), rcond)
    factors = np.zeros_like(blocks, dtype=float)
    try:
        factors[valid] = np.linalg.cholesky(blocks[valid])
    except np.linalg.LinAlgError:
        # np.linalg.cholesky fails the whole stack, fall back to one block at a time
        for i in np.flatnonzero(valid):
            try:
                factors[i] = np.linalg.cholesky(blocks[i])
            except np.linalg.LinAlgError:
                valid[i] = False
    if np.any(valid):
        eye = np.broadcast_to(np.eye(size), factors[valid].shape)
        inv_factors = np.linalg.solve(factors[valid], eye)
        inv = np.swapaxes(inv_factors, 1, 2) @ inv_factors
        inverses[valid] = 0.5 * (inv + np.swapaxes(inv, 1, 2))
    return inverses, valid
