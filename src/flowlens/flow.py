"""
LenseFlow: lensing as continuous transport under the deflection of a potential.

A field f is lensed by integrating

  df/dt = v(f, t) = (grad phi)^T M(t)^{-1} grad f,      M(t) = I + t H_phi

from t=0 (unlensed) to t=1 (lensed). The operator at time endpoints (t1, t2)
integrates from t1 to t2; its inverse integrates back from t2 to t1, so
L[t1->t2]^{-1} == L[t2->t1] up to integrator accuracy.

Transposes run the negative-transpose velocity

  -v^T(g, t) = div(g M(t)^{-1} grad phi)

over the reversed interval. The Jacobian of the flow map (f_t, phi) -> (f_s, phi)
and its transpose are obtained from augmented ODEs that carry the base field
alongside the perturbations. All channels of an augmented state are held in
the map basis.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

import numpy as np

from .grid import FlatGrid
from .ode import FixedStep, Integrator, Trajectory, odesolve, odesolve_trajectory
from .operators import LinearOperator


def _matvec(m: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Pixelwise (2,2,ny,nx) @ (2,ny,nx) -> (2,ny,nx)."""
    return np.einsum("ij...,j...->i...", m, v)


def _vdot(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pixelwise a . b for (2,ny,nx) vectors -> (ny,nx)."""
    return np.sum(a * b, axis=0)


@dataclass(frozen=True)
class LenseFlow(LinearOperator):
    """
    Flow lensing operator at potential `phi` between times t1 and t2.

    Args:
      grid: field grid.
      phi: (ny, nx) lensing potential in the map basis.
      t1, t2: source and target times (0 = unlensed, 1 = lensed).
      integrator: FixedStep or AdaptiveStep.

    grad_phi (2,ny,nx) and hess_phi (2,2,ny,nx) are computed once here and
    shared by every re-sliced copy from `between`.
    """

    grid: FlatGrid
    phi: np.ndarray
    t1: float = 0.0
    t2: float = 1.0
    integrator: Integrator = FixedStep()
    grad_phi: np.ndarray | None = field(default=None, repr=False)
    hess_phi: np.ndarray | None = field(default=None, repr=False)
    name: str = "lenseflow"

    def __post_init__(self) -> None:
        phi = self.grid.check_map(self.phi, "phi")
        object.__setattr__(self, "phi", phi)
        object.__setattr__(self, "t1", float(self.t1))
        object.__setattr__(self, "t2", float(self.t2))
        if self.grad_phi is None or self.hess_phi is None:
            grad, hess = self.grid.gradhess(phi)
            object.__setattr__(self, "grad_phi", grad)
            object.__setattr__(self, "hess_phi", hess)
        object.__setattr__(self, "_trivial", not bool(np.any(phi)))

    def between(self, t1: float, t2: float) -> "LenseFlow":
        """Same potential and derivatives, new time endpoints."""
        return replace(self, t1=float(t1), t2=float(t2))

    # ---- velocities

    def inv_metric(self, t: float) -> np.ndarray:
        """(2,2,ny,nx) pixelwise inverse of M(t) = I + t H_phi."""
        h = self.hess_phi
        a = 1.0 + t * h[0, 0]
        b = t * h[0, 1]
        c = 1.0 + t * h[1, 1]
        det = a * c - b * b
        return np.array([[c, -b], [-b, a]]) / det

    def velocity(self, f: np.ndarray, t: float) -> np.ndarray:
        p = _matvec(self.inv_metric(t), self.grad_phi)
        return _vdot(p, self.grid.gradient(f))

    def velocity_transpose(self, g: np.ndarray, t: float) -> np.ndarray:
        """Negative transpose of `velocity` as a linear map of the field."""
        p = _matvec(self.inv_metric(t), self.grad_phi)
        return self.grid.divergence(g * p)

    # ---- LinearOperator

    def _flow(self, f: np.ndarray, t_from: float, t_to: float, velocity, label: str) -> np.ndarray:
        f = self.grid.check_map(f, "field")
        if self._trivial or t_from == t_to:
            return f.copy()
        return odesolve(velocity, f, t_from, t_to, self.integrator, label=label)

    def apply(self, f: np.ndarray) -> np.ndarray:
        return self._flow(f, self.t1, self.t2, self.velocity, "lenseflow")

    def apply_inverse(self, f: np.ndarray) -> np.ndarray:
        return self._flow(f, self.t2, self.t1, self.velocity, "lenseflow")

    def apply_adjoint(self, f: np.ndarray) -> np.ndarray:
        return self._flow(f, self.t2, self.t1, self.velocity_transpose, "lenseflow-adjoint")

    def apply_inverse_adjoint(self, f: np.ndarray) -> np.ndarray:
        return self._flow(f, self.t1, self.t2, self.velocity_transpose, "lenseflow-adjoint")

    def trajectory(self, f: np.ndarray, *, inverse: bool = False) -> Trajectory:
        """Every integrator step of the forward (or inverse) flow of f."""
        f = self.grid.check_map(f, "field")
        t_from, t_to = (self.t2, self.t1) if inverse else (self.t1, self.t2)
        if self._trivial:
            t_to = t_from
        return odesolve_trajectory(self.velocity, f, t_from, t_to, self.integrator, label="lenseflow")

    # ---- Jacobian of (f_t, phi) -> (f_s, phi)

    def jacobian(
        self,
        f_t: np.ndarray,
        df: np.ndarray,
        dphi: np.ndarray,
        s: float,
        t: float,
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Tangent-linear flow: directional derivative of (f_s, phi) at (f_t, phi)
        along (df, dphi).

        The state (f, df) is integrated from t to s with
          f'  = grad(phi)^T M^-1 grad f
          df' = grad(phi)^T M^-1 grad df + grad(dphi)^T M^-1 grad f
                - tau grad(phi)^T M^-1 H_dphi M^-1 grad f

        Returns:
          (df_s, dphi)
        """
        grid = self.grid
        f_t = grid.check_map(f_t, "f_t")
        df = grid.check_map(df, "df")
        dphi = grid.check_map(dphi, "dphi")
        if float(s) == float(t):
            return df.copy(), dphi.copy()
        grad_dphi, hess_dphi = grid.gradhess(dphi)

        def dvelocity(y: np.ndarray, tau: float) -> np.ndarray:
            f, dfl = y[0], y[1]
            minv = self.inv_metric(tau)
            p = _matvec(minv, self.grad_phi)
            grad_f = grid.gradient(f)
            minv_grad_f = _matvec(minv, grad_f)
            f_dot = _vdot(p, grad_f)
            df_dot = (
                _vdot(p, grid.gradient(dfl))
                + _vdot(grad_dphi, minv_grad_f)
                - tau * _vdot(p, _matvec(hess_dphi, minv_grad_f))
            )
            return np.stack([f_dot, df_dot], axis=0)

        y = odesolve(dvelocity, np.stack([f_t, df], axis=0), t, s, self.integrator, label="lenseflow-jacobian")
        return y[1], dphi.copy()

    def jacobian_adjoint(
        self,
        f_s: np.ndarray,
        df: np.ndarray,
        dphi: np.ndarray,
        s: float,
        t: float,
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Transpose of `jacobian(., ., ., s, t)` applied to (df, dphi), given the
        base field f_s at time s.

        The state (f, lam, mu) starts at (f_s, df, dphi) and is integrated from
        s to t with p = M^-1 grad(phi), q = M^-1 (lam grad f):
          f'   = p . grad f
          lam' = div(lam p)
          mu'  = div(q) + tau sum_ij d_i d_j (p_i q_j)

        Returns:
          (lam_t, mu_t), the pull-back of (df, dphi) onto (f_t, phi).
        """
        grid = self.grid
        f_s = grid.check_map(f_s, "f_s")
        df = grid.check_map(df, "df")
        dphi = grid.check_map(dphi, "dphi")
        if float(s) == float(t):
            return df.copy(), dphi.copy()

        def neg_dvelocity_t(y: np.ndarray, tau: float) -> np.ndarray:
            f, lam = y[0], y[1]
            minv = self.inv_metric(tau)
            p = _matvec(minv, self.grad_phi)
            grad_f = grid.gradient(f)
            q = _matvec(minv, lam[None] * grad_f)
            f_dot = _vdot(p, grad_f)
            lam_dot = grid.divergence(lam[None] * p)
            mu_dot = grid.divergence(q) + tau * grid.hessian_transpose(p[:, None] * q[None, :])
            return np.stack([f_dot, lam_dot, mu_dot], axis=0)

        y = odesolve(
            neg_dvelocity_t,
            np.stack([f_s, df, dphi], axis=0),
            s,
            t,
            self.integrator,
            label="lenseflow-jacobian-adjoint",
        )
        return y[1], y[2]
