"""
Joint log posterior of (f, phi) given data, and its gradient.

  -2 ln P(f, phi | d) = (d - M B f~)^T Cn^{-1} (d - M B f~) + f^T Cf^{-1} f + phi^T Cphi^{-1} phi

with f~ the field at t=1 (lensed) and f the field at t=0 (unlensed). The field
argument can be given in one of three parametrizations:

  - unlensed (t=0): f_t is the unlensed field
  - lensed   (t=1): f_t is the lensed field
  - mixed:          f_t = L D f, with D the mixing operator of the DataSet

Gradients combine the three closed-form partials (data term w.r.t. f~, field
prior w.r.t. f, potential prior w.r.t. phi) through the transpose Jacobian of
the flow.
"""

from __future__ import annotations

from enum import Enum

import numpy as np

from .dataset import DataSet
from .errors import InvalidParametrization
from .flow import LenseFlow
from .ode import Integrator


class Parametrization(str, Enum):
    UNLENSED = "unlensed"
    LENSED = "lensed"
    MIXED = "mixed"

    @property
    def time(self) -> float:
        if self is Parametrization.MIXED:
            raise InvalidParametrization(self.value)
        return 0.0 if self is Parametrization.UNLENSED else 1.0


_ALIASES = {
    0: Parametrization.UNLENSED,
    1: Parametrization.LENSED,
    "mix": Parametrization.MIXED,
}


def parse_parametrization(tag) -> Parametrization:
    """Accept a Parametrization, its value, 0 / 1, or 'mix'."""
    if isinstance(tag, Parametrization):
        return tag
    if isinstance(tag, (bool, np.bool_)):
        raise InvalidParametrization(tag)
    if isinstance(tag, (int, float, np.integer, np.floating)) and float(tag) in (0.0, 1.0):
        return _ALIASES[int(tag)]
    if isinstance(tag, str):
        key = tag.strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return Parametrization(key)
        except ValueError:
            pass
    raise InvalidParametrization(tag)


def _flow_at(phi: np.ndarray, ds: DataSet, L: LenseFlow | None, integrator: Integrator | None) -> LenseFlow:
    if L is not None:
        return L
    if integrator is None:
        return LenseFlow(grid=ds.grid, phi=phi)
    return LenseFlow(grid=ds.grid, phi=phi, integrator=integrator)


# ---- closed-form partials

def data_gradient(f_lensed: np.ndarray, ds: DataSet) -> np.ndarray:
    """d lnL / d f~ = B^T M^T Cn^{-1} (d - M B f~)."""
    return ds.forward_adjoint(ds.Cn.apply_inverse(ds.d - ds.forward(f_lensed)))


def field_prior_gradient(f: np.ndarray, ds: DataSet) -> np.ndarray:
    """d ln Pi_f / d f = -Cf^{-1} f."""
    return -ds.Cf.apply_inverse(f)


def phi_prior_gradient(phi: np.ndarray, ds: DataSet) -> np.ndarray:
    """d ln Pi_phi / d phi = -Cphi^{-1} phi."""
    return -ds.Cphi.apply_inverse(phi)


# ---- log posterior

def _lnP_time(t: float, f_t: np.ndarray, phi: np.ndarray, ds: DataSet, L: LenseFlow) -> float:
    f_lensed = L.between(t, 1.0).apply(f_t)
    f = L.between(t, 0.0).apply(f_t)
    resid = ds.d - ds.forward(f_lensed)
    chi2 = (
        ds.grid.dot(resid, ds.Cn.apply_inverse(resid))
        + ds.grid.dot(f, ds.Cf.apply_inverse(f))
        + ds.grid.dot(phi, ds.Cphi.apply_inverse(phi))
    )
    return -0.5 * float(chi2)


def lnP(
    tag,
    f_t: np.ndarray,
    phi: np.ndarray,
    ds: DataSet,
    L: LenseFlow | None = None,
    integrator: Integrator | None = None,
) -> float:
    """
    Log posterior ln P(f, phi | d) up to a constant.

    Args:
      tag: parametrization of f_t ('unlensed'/0, 'lensed'/1, 'mixed').
      f_t: (ny, nx) field in that parametrization.
      phi: (ny, nx) lensing potential.
      ds: DataSet.
      L: a LenseFlow already built at phi (any time endpoints); built if omitted.
      integrator: used only when L is built here.
    """
    param = parse_parametrization(tag)
    f_t = ds.check_field(f_t, "f_t")
    phi = ds.check_field(phi, "phi")
    L = _flow_at(phi, ds, L, integrator)
    if param is Parametrization.MIXED:
        f = ds.D.apply_inverse(L.between(0.0, 1.0).apply_inverse(f_t))
        return _lnP_time(0.0, f, phi, ds, L)
    return _lnP_time(param.time, f_t, phi, ds, L)


# ---- gradient

def _grad_time(t: float, f_t: np.ndarray, phi: np.ndarray, ds: DataSet, L: LenseFlow) -> tuple[np.ndarray, np.ndarray]:
    f_lensed = L.between(t, 1.0).apply(f_t)
    f = L.between(t, 0.0).apply(f_t)
    zero = np.zeros_like(phi)

    gL_f, gL_phi = L.jacobian_adjoint(f_lensed, data_gradient(f_lensed, ds), zero, 1.0, t)
    gP_f, gP_phi = L.jacobian_adjoint(f, field_prior_gradient(f, ds), zero, 0.0, t)
    return gL_f + gP_f, gL_phi + gP_phi + phi_prior_gradient(phi, ds)


def grad_lnP(
    tag,
    f_t: np.ndarray,
    phi: np.ndarray,
    ds: DataSet,
    L: LenseFlow | None = None,
    integrator: Integrator | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Gradient of `lnP` with respect to (f_t, phi) in the given parametrization.

    Returns:
      (d lnP / d f_t, d lnP / d phi), both (ny, nx) map-basis arrays.
    """
    param = parse_parametrization(tag)
    f_t = ds.check_field(f_t, "f_t")
    phi = ds.check_field(phi, "phi")
    L = _flow_at(phi, ds, L, integrator)
    if param is not Parametrization.MIXED:
        return _grad_time(param.time, f_t, phi, ds, L)

    # f_mix = L D f: unlens, unmix, then chain rule back through D^-1 and L^-1.
    f_unlensed_mix = L.between(0.0, 1.0).apply_inverse(f_t)
    f = ds.D.apply_inverse(f_unlensed_mix)
    g_f, g_phi = _grad_time(0.0, f, phi, ds, L)
    return L.jacobian_adjoint(f_unlensed_mix, ds.D.apply_inverse_adjoint(g_f), g_phi, 0.0, 1.0)


def target_lnP(ds: DataSet) -> tuple[float, float]:
    """
    Expected data term of ln P at the true (f, phi), with its scatter.

    There the residual d - M B f~ is the noise itself, so -2 x (data term) is
    chi-squared with one degree of freedom per pixel.

    Returns:
      (mean, std) = (-N/2, sqrt(N/2)) for N pixels.
    """
    n = float(ds.grid.shape[0] * ds.grid.shape[1])
    return -0.5 * n, float(np.sqrt(0.5 * n))
