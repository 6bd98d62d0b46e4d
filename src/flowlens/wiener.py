"""
Wiener filter of the data at fixed lensing potential.

At fixed phi the posterior of the unlensed field is Gaussian. Its maximum
solves the normal equations

  (Cf^{-1} + L^T B^T M^T Cn^{-1} M B L) f = b,    b = L^T B^T M^T Cn^{-1} d

and adding the random term  Cf^{-1/2} w1 + L^T B^T M^T Cn^{-1/2} w2  (w1, w2 unit
white noise) to b turns the solution into a draw from that posterior. The
random term alone gives the fluctuation (sample minus mean).

The system is solved matrix-free by preconditioned conjugate gradient, with
the fourier-diagonal  Cf^{-1} + B_hat^T Cn_hat^{-1} B_hat  as preconditioner.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np
import scipy.sparse.linalg as spla

from .dataset import DataSet
from .errors import SolverIncomplete
from .flow import LenseFlow
from .operators import DiagonalOperator, IdentityOperator, LinearOperator


@dataclass(frozen=True)
class CGInfo:
    """
    Diagnostics of one conjugate-gradient solve.

    Fields:
      residuals: (n_iter+1,) relative residual norms |b - A x_k| / |b|, k = 0..n_iter.
      n_iter: iterations performed.
      converged: whether the tolerance was reached.
      tol, maxiter: the requested controls.
    """

    residuals: np.ndarray
    n_iter: int
    converged: bool
    tol: float
    maxiter: int

    @property
    def incomplete(self) -> bool:
        return not self.converged

    @property
    def final_residual(self) -> float:
        return float(self.residuals[-1])

    def raise_if_incomplete(self) -> None:
        if self.incomplete:
            raise SolverIncomplete(self.n_iter, float(np.min(self.residuals)), self.tol)


def pcg(
    apply_A: Callable[[np.ndarray], np.ndarray],
    b: np.ndarray,
    apply_Minv: Callable[[np.ndarray], np.ndarray],
    *,
    x0: np.ndarray | None = None,
    tol: float = 1e-6,
    maxiter: int = 100,
    callback: Callable[[np.ndarray, float], None] | None = None,
) -> tuple[np.ndarray, CGInfo]:
    """
    Preconditioned conjugate gradient for a symmetric positive-definite A.

    Thin wrapper of `scipy.sparse.linalg.cg` over the flattened field that also
    keeps the residual history and the best iterate.

    Args:
      apply_A: x -> A x, on arrays of b's shape.
      b: right-hand side.
      apply_Minv: r -> M^{-1} r, the preconditioner inverse.
      x0: warm start (zeros if None).
      tol: stop when |r| / |b| <= tol.
      maxiter: iteration cap.
      callback: called as callback(x_k, relative_residual_k) after each iteration.

    Returns:
      x: the iterate with the lowest residual seen.
      info: CGInfo. Reaching maxiter above tolerance is reported, not raised.
    """
    tol = float(tol)
    maxiter = int(maxiter)
    if maxiter < 0:
        raise ValueError("maxiter must be >= 0.")

    b = np.asarray(b, dtype=np.float64)
    shape = b.shape
    n = int(b.size)
    if x0 is None:
        x = np.zeros_like(b)
        r = b.copy()
    else:
        x = np.array(x0, dtype=np.float64, copy=True)
        if x.shape != shape:
            raise ValueError(f"x0 has shape {x.shape}, expected {shape}.")
        r = b - apply_A(x)

    b_norm = float(np.linalg.norm(b))
    if b_norm == 0.0:
        return np.zeros_like(b), CGInfo(residuals=np.zeros(1), n_iter=0, converged=True, tol=tol, maxiter=maxiter)

    res = float(np.linalg.norm(r)) / b_norm
    if res <= tol or maxiter == 0:
        info = CGInfo(residuals=np.array([res]), n_iter=0, converged=res <= tol, tol=tol, maxiter=maxiter)
        if not info.converged:
            print(f"[pcg] not converged after 0 iterations: relative residual {res:.3e} > tol {tol:.3e}", flush=True)
        return x, info

    # cg applies A once per iteration, to the search direction p_k, and then
    # steps x by alpha_k p_k; the residual is updated from that same product.
    last = {"p": None, "Ap": None}

    def A_matvec(v: np.ndarray) -> np.ndarray:
        v = np.asarray(v, dtype=np.float64).reshape(-1)
        Av = np.asarray(apply_A(v.reshape(shape)), dtype=np.float64).reshape(-1)
        last["p"], last["Ap"] = v.copy(), Av.copy()
        return Av

    A_op = spla.LinearOperator((n, n), matvec=A_matvec, dtype=np.float64)
    P_pre = spla.LinearOperator(
        (n, n),
        matvec=lambda v: np.asarray(apply_Minv(np.asarray(v, dtype=np.float64).reshape(shape)), dtype=np.float64).reshape(-1),
        dtype=np.float64,
    )

    state = {"x": x.reshape(-1).copy(), "r": r.reshape(-1).copy()}
    residuals = [res]
    best = {"x": x.copy(), "res": res}

    def on_iter(xk: np.ndarray) -> None:
        p, Ap = last["p"], last["Ap"]
        step = xk - state["x"]
        alpha = float(np.dot(step, p) / np.dot(p, p))
        state["x"] = xk.copy()
        state["r"] = state["r"] - alpha * Ap
        res_k = float(np.linalg.norm(state["r"])) / b_norm
        residuals.append(res_k)
        x_k = xk.reshape(shape)
        if res_k < best["res"]:
            best["x"], best["res"] = x_k.copy(), res_k
        if callback is not None:
            callback(x_k, res_k)

    _, status = spla.cg(
        A_op,
        b.reshape(-1),
        x0=x.reshape(-1),
        M=P_pre,
        rtol=tol,
        atol=0.0,
        maxiter=maxiter,
        callback=on_iter,
    )
    if status < 0:
        raise RuntimeError(f"CG breakdown (info={status}).")

    n_iter = len(residuals) - 1
    converged = status == 0
    if not converged:
        print(
            f"[pcg] not converged after {n_iter} iterations: relative residual {residuals[-1]:.3e} "
            f"(best {best['res']:.3e}) > tol {tol:.3e}",
            flush=True,
        )
    info = CGInfo(
        residuals=np.asarray(residuals, dtype=np.float64),
        n_iter=int(n_iter),
        converged=bool(converged),
        tol=tol,
        maxiter=maxiter,
    )
    return best["x"], info


class WFMode(str, Enum):
    MEAN = "mean"
    SAMPLE = "sample"
    FLUCTUATION = "fluctuation"


def wiener_filter_operator(ds: DataSet) -> DiagonalOperator:
    """Fourier-diagonal surrogate of the system: Cf^{-1} + B_hat^T Cn_hat^{-1} B_hat."""
    diag = ds.Cf.inv().diag + ds.B_hat.diag ** 2 * ds.Cn_hat.inv().diag
    return DiagonalOperator(grid=ds.grid, diag=diag, basis="fourier", name="Cf^-1 + B'Cn^-1B")


def diagonal_wiener_filter(ds: DataSet, C: DiagonalOperator | None = None) -> np.ndarray:
    """
    Fourier-diagonal Wiener filter of the data, C B_hat / (B_hat^2 C + Cn_hat) d.

    Ignores the mask and the lensing. C defaults to Cf_lensed when the data set
    has one, else Cf; modes where the filter is undefined are zeroed.
    """
    if C is None:
        C = ds.Cf if ds.Cf_lensed is None else ds.Cf_lensed
    if C.basis != "fourier":
        raise ValueError("diagonal_wiener_filter needs a fourier-diagonal covariance.")
    with np.errstate(divide="ignore", invalid="ignore"):
        diag = C.diag * ds.B_hat.diag / (ds.B_hat.diag ** 2 * C.diag + ds.Cn_hat.diag)
    W = DiagonalOperator(grid=ds.grid, diag=diag, basis="fourier", name="W").nan_to_zero()
    return W.apply(ds.d)


def _apply_sqrt_inverse(op: LinearOperator, f: np.ndarray) -> np.ndarray:
    if isinstance(op, IdentityOperator):
        return np.asarray(f, dtype=np.float64)
    if isinstance(op, DiagonalOperator):
        return op.power(-0.5).apply(f)
    raise ValueError(f"Drawing samples needs a diagonal {op.name}; got {type(op).__name__}.")


def lensing_wiener_filter(
    ds: DataSet,
    L: LenseFlow,
    mode: WFMode | str = WFMode.MEAN,
    *,
    rng: np.random.Generator | None = None,
    x0: np.ndarray | None = None,
    tol: float = 1e-6,
    maxiter: int = 100,
    callback: Callable[[np.ndarray, float], None] | None = None,
) -> tuple[np.ndarray, CGInfo]:
    """
    Conditional maximum (mode='mean'), draw ('sample') or fluctuation of the
    unlensed field given the potential of `L`.

    Args:
      ds: DataSet.
      L: LenseFlow at the fixed potential (its time endpoints are ignored; 0 -> 1 is used).
      mode: 'mean', 'sample' or 'fluctuation'.
      rng: random state, required for 'sample' and 'fluctuation'.
      x0: warm start for the solve.
      tol, maxiter: CG controls.
      callback: forwarded to `pcg`.

    Returns:
      f: (ny, nx) unlensed field.
      info: CGInfo.
    """
    mode = WFMode(mode)
    L = L.between(0.0, 1.0)
    Cn, Cf = ds.Cn, ds.Cf

    def lensed_data_term(r: np.ndarray) -> np.ndarray:
        return L.apply_adjoint(ds.forward_adjoint(r))

    def apply_A(f: np.ndarray) -> np.ndarray:
        return Cf.apply_inverse(f) + lensed_data_term(Cn.apply_inverse(ds.forward(L.apply(f))))

    b = ds.grid.zeros()
    if mode in (WFMode.MEAN, WFMode.SAMPLE):
        b = b + lensed_data_term(Cn.apply_inverse(ds.d))
    if mode in (WFMode.SAMPLE, WFMode.FLUCTUATION):
        if rng is None:
            raise ValueError(f"mode={mode.value!r} needs an explicit rng (np.random.Generator).")
        w_f = ds.grid.white_noise(rng)
        w_n = ds.grid.white_noise(rng)
        b = b + _apply_sqrt_inverse(Cf, w_f) + lensed_data_term(_apply_sqrt_inverse(Cn, w_n))

    precond = wiener_filter_operator(ds)
    if x0 is not None:
        x0 = ds.check_field(x0, "x0")
    return pcg(apply_A, b, precond.apply_inverse, x0=x0, tol=tol, maxiter=maxiter, callback=callback)
