"""
flowlens: CMB lensing reconstruction with flow-based lensing operators.

The main public entry points are:
  - `LenseFlow` (lensing operator, its adjoint and Jacobians)
  - `lnP`, `grad_lnP` (joint posterior in unlensed / lensed / mixed parametrization)
  - `lensing_wiener_filter` (field given potential)
  - `joint_map` (joint field + potential optimizer)
"""

from .dataset import DataSet, build_dataset, mix_operator, simulate_dataset
from .errors import (
    FlowLensError,
    InvalidParametrization,
    NonConvergence,
    ShapeMismatch,
    SingularOperator,
    SolverIncomplete,
)
from .flow import LenseFlow
from .grid import FlatGrid
from .io import load_trace, save_trace
from .ode import AdaptiveStep, FixedStep, Trajectory, odesolve, odesolve_trajectory
from .operators import ComposedOperator, DiagonalOperator, IdentityOperator, LinearOperator, compose
from .optimize import JointConfig, JointResult, TraceRecord, approx_inverse_hessian, cubic_schedule, joint_map
from .posterior import Parametrization, grad_lnP, lnP, parse_parametrization, target_lnP
from .qe import quadratic_estimator_noise, quadratic_estimator_noise_from
from .wiener import (
    CGInfo,
    WFMode,
    diagonal_wiener_filter,
    lensing_wiener_filter,
    pcg,
    wiener_filter_operator,
)

__all__ = [
    "FlatGrid",
    "LinearOperator",
    "IdentityOperator",
    "DiagonalOperator",
    "ComposedOperator",
    "compose",
    "FixedStep",
    "AdaptiveStep",
    "Trajectory",
    "odesolve",
    "odesolve_trajectory",
    "LenseFlow",
    "DataSet",
    "build_dataset",
    "mix_operator",
    "simulate_dataset",
    "Parametrization",
    "parse_parametrization",
    "lnP",
    "grad_lnP",
    "target_lnP",
    "CGInfo",
    "WFMode",
    "pcg",
    "lensing_wiener_filter",
    "wiener_filter_operator",
    "diagonal_wiener_filter",
    "quadratic_estimator_noise",
    "quadratic_estimator_noise_from",
    "JointConfig",
    "JointResult",
    "TraceRecord",
    "approx_inverse_hessian",
    "cubic_schedule",
    "joint_map",
    "save_trace",
    "load_trace",
    "FlowLensError",
    "SingularOperator",
    "NonConvergence",
    "SolverIncomplete",
    "InvalidParametrization",
    "ShapeMismatch",
]
