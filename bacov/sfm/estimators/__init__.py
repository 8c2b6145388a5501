"""Modules for estimating the uncertainty of bundle adjustment parameters."""

from .covariance import (
    BACovariance,
    BACovarianceEstimator,
    BACovarianceOptions,
    BACovarianceParams,
    estimate_ba_covariance,
    estimate_ba_covariance_from_problem,
)

__all__ = [
    "BACovariance",
    "BACovarianceEstimator",
    "BACovarianceOptions",
    "BACovarianceParams",
    "estimate_ba_covariance",
    "estimate_ba_covariance_from_problem",
]
