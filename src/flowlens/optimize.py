"""
Joint maximization of ln P(f, phi | d) by alternating conditional steps.

Each outer iteration:
  1) field step: Wiener filter the data at the current phi (a conditional
     sample instead of the mean when a seed or rng is given), warm started from
     the previous field; the field is then carried in the mixed
     parametrization f_mix = L D f.
  2) potential step (skipped on the last iteration): gradient of ln P w.r.t.
     phi at fixed f_mix, preconditioned by an approximate inverse Hessian, then
     a bounded line search over the step size alpha in [0, alpha_max].

With a prior-weight schedule the field prior of iteration i is
(1 - w_i) Cf_lensed + w_i Cf, so the run starts from the lensed-field
covariance and anneals to the unlensed one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
from scipy.optimize import minimize_scalar
from tqdm import tqdm

from .dataset import DataSet
from .flow import LenseFlow
from .ode import FixedStep, Integrator
from .operators import DiagonalOperator
from .posterior import Parametrization, grad_lnP, lnP, target_lnP
from .wiener import CGInfo, WFMode, diagonal_wiener_filter, lensing_wiener_filter


def cubic_schedule(n: int) -> tuple[float, ...]:
    """Prior weights w_i = (i / (n-1))^3, i = 0..n-1."""
    n = int(n)
    if n < 1:
        raise ValueError("n must be >= 1.")
    if n == 1:
        return (1.0,)
    return tuple(float(w) for w in np.linspace(0.0, 1.0, n) ** 3)


@dataclass(frozen=True)
class JointConfig:
    """
    Joint optimizer settings.

    Args:
      nsteps: number of outer iterations (ignored when prior_weights is set).
      cg_maxiter, cg_tol: Wiener-filter solver controls.
      alpha_max: upper bound of the line search.
      linesearch_tol: absolute tolerance on alpha.
      Nphi: optional reconstruction-noise covariance of phi (fourier diagonal);
            the potential step is then preconditioned by (Cphi^-1 + Nphi^-1)^-1.
      seed: if set, field steps draw conditional samples from default_rng(seed).
      prior_weights: optional schedule w_1..w_n in [0, 1]; iteration i uses the
            field prior (1 - w_i) Cf_lensed + w_i Cf. Needs Cf_lensed.
      integrator: ODE integrator of every flow.
      progress: show a tqdm bar over outer iterations.
    """

    nsteps: int = 10
    cg_maxiter: int = 100
    cg_tol: float = 1e-6
    alpha_max: float = 1.0
    linesearch_tol: float = 1e-3
    Nphi: DiagonalOperator | None = None
    seed: int | None = None
    prior_weights: Sequence[float] | None = None
    integrator: Integrator = FixedStep()
    progress: bool = False

    def __post_init__(self) -> None:
        if int(self.nsteps) < 1:
            raise ValueError("nsteps must be >= 1.")
        if int(self.cg_maxiter) < 0:
            raise ValueError("cg_maxiter must be >= 0.")
        if not float(self.alpha_max) > 0:
            raise ValueError("alpha_max must be > 0.")
        if not float(self.linesearch_tol) > 0:
            raise ValueError("linesearch_tol must be > 0.")
        if self.Nphi is not None and not (isinstance(self.Nphi, DiagonalOperator) and self.Nphi.basis == "fourier"):
            raise ValueError("Nphi must be a fourier-basis DiagonalOperator.")
        if self.prior_weights is not None:
            weights = tuple(float(w) for w in self.prior_weights)
            if not weights:
                raise ValueError("prior_weights must not be empty.")
            if any(not 0.0 <= w <= 1.0 for w in weights):
                raise ValueError("prior_weights must lie in [0, 1].")
            object.__setattr__(self, "prior_weights", weights)

    @property
    def n_iterations(self) -> int:
        return int(self.nsteps) if self.prior_weights is None else len(self.prior_weights)


@dataclass(frozen=True)
class TraceRecord:
    """
    One outer iteration.

    lnP_before is the posterior after the field step; lnP is the accepted value
    after the potential step (equal to lnP_before on the last iteration or
    when no step improved it). phi_direction is None when no potential step ran.
    With a prior-weight schedule both use the annealed prior of that
    iteration, and lnP_full is the posterior under the unlensed prior Cf at the
    lensed field L f and the accepted phi; otherwise lnP_full equals lnP.
    """

    i: int
    lnP: float
    lnP_before: float
    cg_info: CGInfo
    alpha: float
    phi_direction: np.ndarray | None = field(repr=False)
    phi: np.ndarray = field(repr=False)
    f: np.ndarray = field(repr=False)
    f_mix: np.ndarray = field(repr=False)
    prior_weight: float = 1.0
    lnP_full: float | None = None


@dataclass(frozen=True)
class JointResult:
    f_mix: np.ndarray
    f: np.ndarray
    phi: np.ndarray
    trace: list[TraceRecord]
    target_lnP: float | None = None


def approx_inverse_hessian(ds: DataSet, Nphi: DiagonalOperator | None = None) -> DiagonalOperator:
    """
    Approximate inverse Hessian of -ln P w.r.t. phi.

    Cphi alone, or (Cphi^-1 + Nphi^-1)^-1 when a reconstruction-noise estimate
    is given. Modes with zero prior variance or zero noise get zero step.
    """
    if Nphi is None:
        return ds.Cphi
    if Nphi.grid.shape != ds.grid.shape:
        raise ValueError("Nphi is defined on a different grid than the data set.")
    with np.errstate(divide="ignore", invalid="ignore"):
        precision = 1.0 / ds.Cphi.diag + 1.0 / Nphi.diag
        diag = 1.0 / precision
    diag = np.where(np.isfinite(diag), diag, 0.0)
    return DiagonalOperator(grid=ds.grid, diag=diag, basis="fourier", name="(Cphi^-1 + Nphi^-1)^-1")


def _line_search(
    ds: DataSet,
    f_mix: np.ndarray,
    phi: np.ndarray,
    direction: np.ndarray,
    lnP_before: float,
    config: JointConfig,
) -> tuple[float, float]:
    """Bounded maximization of ln P along phi + alpha * direction; returns (alpha, lnP)."""

    def neg_lnP(alpha: float) -> float:
        return -lnP(Parametrization.MIXED, f_mix, phi + alpha * direction, ds, integrator=config.integrator)

    res = minimize_scalar(
        neg_lnP,
        bounds=(0.0, float(config.alpha_max)),
        method="bounded",
        options=dict(xatol=float(config.linesearch_tol)),
    )
    best = -float(res.fun)
    if not (np.isfinite(best) and best > lnP_before):
        return 0.0, lnP_before
    return float(res.x), best


def joint_map(
    ds: DataSet,
    *,
    phi0: np.ndarray | None = None,
    f0: np.ndarray | None = None,
    config: JointConfig = JointConfig(),
    rng: np.random.Generator | None = None,
    callback: Callable[[TraceRecord], None] | None = None,
) -> JointResult:
    """
    Alternate Wiener-filter field steps and line-searched potential steps.

    Args:
      ds: DataSet.
      phi0: starting potential (zeros if None).
      f0: warm start for the first Wiener filter. If None and the data set
          has Cf_lensed, the diagonal Wiener filter of d with Cf_lensed is used.
      config: JointConfig.
      rng: random state for conditional samples; overrides config.seed.
      callback: called with each TraceRecord as it is appended.

    Returns:
      JointResult with the final mixed field, unlensed field, potential, trace
      and the expected ln P data term at the truth.
    """
    grid = ds.grid
    phi = grid.zeros() if phi0 is None else ds.check_field(phi0, "phi0").copy()
    if f0 is not None:
        f = ds.check_field(f0, "f0")
    elif ds.Cf_lensed is not None:
        f = diagonal_wiener_filter(ds, ds.Cf_lensed)
    else:
        f = None
    if config.prior_weights is not None and ds.Cf_lensed is None:
        raise ValueError("prior_weights needs a data set with Cf_lensed.")
    if rng is None and config.seed is not None:
        rng = np.random.default_rng(config.seed)
    mode = WFMode.MEAN if rng is None else WFMode.SAMPLE
    hess_inv = approx_inverse_hessian(ds, config.Nphi)
    nsteps = config.n_iterations
    weights = (1.0,) * nsteps if config.prior_weights is None else config.prior_weights

    target, target_std = target_lnP(ds)
    print(f"[joint] target lnP = {target:.1f} +/- {target_std:.1f}", flush=True)

    trace: list[TraceRecord] = []
    f_mix = grid.zeros()
    steps = range(1, nsteps + 1)
    if config.progress:
        steps = tqdm(steps, desc="joint", leave=True)

    for i in steps:
        w = float(weights[i - 1])
        ds_i = ds if config.prior_weights is None else ds.annealed(w)
        L = LenseFlow(grid=grid, phi=phi, integrator=config.integrator)
        f, cg_info = lensing_wiener_filter(
            ds_i, L, mode, rng=rng, x0=f, tol=config.cg_tol, maxiter=config.cg_maxiter
        )
        f_mix = L.apply(ds_i.D.apply(f))
        lnP_before = lnP(Parametrization.MIXED, f_mix, phi, ds_i, L)

        alpha, lnP_after, direction = 0.0, lnP_before, None
        if i < nsteps:
            _, g_phi = grad_lnP(Parametrization.MIXED, f_mix, phi, ds_i, L)
            direction = hess_inv.apply(g_phi)
            alpha, lnP_after = _line_search(ds_i, f_mix, phi, direction, lnP_before, config)
            if alpha > 0.0:
                phi = phi + alpha * direction

        lnP_full = lnP_after
        if config.prior_weights is not None:
            lnP_full = lnP(Parametrization.LENSED, L.apply(f), phi, ds, integrator=config.integrator)

        record = TraceRecord(
            i=i,
            lnP=float(lnP_after),
            lnP_before=float(lnP_before),
            cg_info=cg_info,
            alpha=float(alpha),
            phi_direction=direction,
            phi=phi.copy(),
            f=f.copy(),
            f_mix=f_mix.copy(),
            prior_weight=w,
            lnP_full=float(lnP_full),
        )
        trace.append(record)
        print(
            f"[joint] i={i}/{nsteps} w={w:.3g} lnP={lnP_after:.2f} (field step {lnP_before:.2f}) "
            f"alpha={alpha:.3g} cg_iter={cg_info.n_iter} cg_res={cg_info.final_residual:.2e}",
            flush=True,
        )
        if callback is not None:
            callback(record)

    return JointResult(f_mix=f_mix, f=f, phi=phi, trace=trace, target_lnP=target)
