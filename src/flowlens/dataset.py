"""
DataSet: everything the posterior needs, bundled once per analysis run.

Data model:

  d = M B L f + n,    n ~ N(0, Cn),  f ~ N(0, Cf),  phi ~ N(0, Cphi)

with M the mask, B the beam/transfer function and L the flow lensing operator
at phi. The noise is neither beamed nor masked.

Use `build_dataset` to construct one: it validates every operator against the
grid and derives the mixing operator D and the diagonal preconditioner
surrogates (Cn_hat, B_hat) when they are not supplied.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np

from .flow import LenseFlow
from .grid import FlatGrid
from .ode import FixedStep, Integrator
from .operators import DiagonalOperator, IdentityOperator, LinearOperator, fourier_diagonal
from .errors import ShapeMismatch

MIX_SIGMA2_DEFAULT = float(np.deg2rad(5.0 / 60.0) ** 2)


def mix_operator(Cf: DiagonalOperator, sigma2: float = MIX_SIGMA2_DEFAULT) -> DiagonalOperator:
    """
    Mixing operator D = sqrt((Cf + sigma2) / Cf) for the mixed parametrization.

    sigma2 is a white-noise level in C_ell units (the default is 5 uK-arcmin
    squared); it enters the fourier eigenvalues as sigma2 / (dx*dy), like any
    spectrum passed to `DiagonalOperator.from_cl`.

    Entries that come out non-finite (e.g. where Cf == 0) are set to zero.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        diag = np.sqrt((Cf.diag + float(sigma2) / Cf.grid.dxdy) / Cf.diag)
    return DiagonalOperator(grid=Cf.grid, diag=diag, basis=Cf.basis, name="D").nan_to_zero()


@dataclass(frozen=True)
class DataSet:
    """
    Immutable bundle of data and operators.

    Fields:
      grid: field grid; every other member is valid only for it.
      d: (ny, nx) observed map.
      Cn: noise covariance.
      Cf: unlensed field covariance (fourier diagonal).
      Cphi: potential covariance (fourier diagonal).
      Cf_lensed: lensed field covariance, optional.
      Cn_hat, B_hat: fourier-diagonal surrogates of Cn and B for preconditioning.
      M: mask. B: beam. D: mixing operator.
      mix_sigma2: white level D was derived with; reused when Cf is replaced.
    """

    grid: FlatGrid
    d: np.ndarray
    Cn: LinearOperator
    Cf: DiagonalOperator
    Cphi: DiagonalOperator
    Cf_lensed: DiagonalOperator | None
    Cn_hat: DiagonalOperator
    B_hat: DiagonalOperator
    M: LinearOperator
    B: LinearOperator
    D: DiagonalOperator
    mix_sigma2: float = MIX_SIGMA2_DEFAULT

    def check_field(self, f: np.ndarray, name: str = "field") -> np.ndarray:
        return self.grid.check_map(f, name)

    def forward(self, f_lensed: np.ndarray) -> np.ndarray:
        """M B f_lensed."""
        return self.M.apply(self.B.apply(f_lensed))

    def forward_adjoint(self, r: np.ndarray) -> np.ndarray:
        """B^T M^T r."""
        return self.B.apply_adjoint(self.M.apply_adjoint(r))

    def with_field_prior(self, Cf: DiagonalOperator) -> DataSet:
        """Same data with the field covariance replaced; D is re-derived from it."""
        if not (isinstance(Cf, DiagonalOperator) and Cf.basis == "fourier"):
            raise ValueError("Cf must be a fourier-basis DiagonalOperator.")
        _check_operator(self.grid, Cf, "Cf")
        return replace(self, Cf=Cf, D=mix_operator(Cf, self.mix_sigma2))

    def annealed(self, w: float) -> DataSet:
        """
        Data set whose field prior interpolates from lensed to unlensed:
        Cf_w = (1 - w) Cf_lensed + w Cf, for w in [0, 1].
        """
        w = float(w)
        if not 0.0 <= w <= 1.0:
            raise ValueError(f"Prior weight must be in [0, 1]; got {w}.")
        if self.Cf_lensed is None:
            raise ValueError("Annealing the field prior needs Cf_lensed.")
        diag = (1.0 - w) * self.Cf_lensed.diag + w * self.Cf.diag
        return self.with_field_prior(DiagonalOperator(grid=self.grid, diag=diag, basis="fourier", name=f"Cf(w={w:.3g})"))


def _check_operator(grid: FlatGrid, op, name: str) -> None:
    if isinstance(op, DiagonalOperator) and op.grid.shape != grid.shape:
        raise ShapeMismatch(f"{name} is defined on a {op.grid.shape} grid; data grid is {grid.shape}.")
    if isinstance(op, LenseFlow):
        raise ValueError(f"{name} must not be a lensing operator.")


def _fourier_surrogate(grid: FlatGrid, op: LinearOperator, name: str) -> DiagonalOperator:
    diag = fourier_diagonal(op)
    if diag is not None:
        return DiagonalOperator(grid=grid, diag=diag, basis="fourier", name=name)
    if isinstance(op, DiagonalOperator):
        # map-diagonal: use its mean level as a white fourier surrogate
        return DiagonalOperator(grid=grid, diag=float(np.mean(op.diag)), basis="fourier", name=name)
    return DiagonalOperator(grid=grid, diag=1.0, basis="fourier", name=name)


def build_dataset(
    grid: FlatGrid,
    d: np.ndarray,
    Cn: LinearOperator,
    Cf: DiagonalOperator,
    Cphi: DiagonalOperator,
    *,
    Cf_lensed: DiagonalOperator | None = None,
    Cn_hat: DiagonalOperator | None = None,
    B_hat: DiagonalOperator | None = None,
    M: LinearOperator | None = None,
    B: LinearOperator | None = None,
    D: DiagonalOperator | None = None,
    mix_sigma2: float = MIX_SIGMA2_DEFAULT,
) -> DataSet:
    """
    Validate inputs and derive the defaulted members of a DataSet.

    Derived members:
      - M, B: identity when omitted.
      - D: `mix_operator(Cf, mix_sigma2)` when omitted.
      - Cn_hat: Cn if it is fourier diagonal, the mean of a map-diagonal Cn
        otherwise (white level), or ones for any other operator.
      - B_hat: B if it is fourier diagonal, else ones.
    """
    d = grid.check_map(d, "d")
    M = IdentityOperator() if M is None else M
    B = IdentityOperator() if B is None else B

    covariances = [("Cf", Cf), ("Cphi", Cphi)]
    if Cf_lensed is not None:
        covariances.append(("Cf_lensed", Cf_lensed))
    for name, op in covariances:
        if not (isinstance(op, DiagonalOperator) and op.basis == "fourier"):
            raise ValueError(f"{name} must be a fourier-basis DiagonalOperator.")
    for name, op in (("Cn", Cn), ("Cf", Cf), ("Cphi", Cphi), ("Cf_lensed", Cf_lensed),
                     ("Cn_hat", Cn_hat), ("B_hat", B_hat), ("M", M), ("B", B), ("D", D)):
        if op is not None:
            _check_operator(grid, op, name)
    if Cn_hat is not None and Cn_hat.basis != "fourier":
        raise ValueError("Cn_hat must be fourier diagonal.")
    if B_hat is not None and B_hat.basis != "fourier":
        raise ValueError("B_hat must be fourier diagonal.")

    if D is None:
        D = mix_operator(Cf, mix_sigma2)
    if Cn_hat is None:
        Cn_hat = _fourier_surrogate(grid, Cn, "Cn_hat")
    if B_hat is None:
        diag = fourier_diagonal(B)
        B_hat = DiagonalOperator(grid=grid, diag=1.0 if diag is None else diag, basis="fourier", name="B_hat")

    return DataSet(
        grid=grid,
        d=d,
        Cn=Cn,
        Cf=Cf,
        Cphi=Cphi,
        Cf_lensed=Cf_lensed,
        Cn_hat=Cn_hat,
        B_hat=B_hat,
        M=M,
        B=B,
        D=D,
        mix_sigma2=float(mix_sigma2),
    )


def simulate_dataset(
    grid: FlatGrid,
    Cf: DiagonalOperator,
    Cphi: DiagonalOperator,
    Cn: DiagonalOperator,
    rng: np.random.Generator,
    *,
    M: LinearOperator | None = None,
    B: LinearOperator | None = None,
    Cf_lensed: DiagonalOperator | None = None,
    integrator: Integrator = FixedStep(),
) -> tuple[DataSet, dict]:
    """
    Draw f, phi and n, lens f with the flow and form d = M B L f + n.

    Returns:
      ds: the DataSet.
      truth: dict with f (unlensed), f_lensed, phi, n.
    """
    f = Cf.simulate(rng)
    phi = Cphi.simulate(rng)
    n = Cn.simulate(rng)
    M = IdentityOperator() if M is None else M
    B = IdentityOperator() if B is None else B
    f_lensed = LenseFlow(grid=grid, phi=phi, integrator=integrator).apply(f)
    d = M.apply(B.apply(f_lensed)) + n
    ds = build_dataset(grid, d, Cn, Cf, Cphi, Cf_lensed=Cf_lensed, M=M, B=B)
    return ds, dict(f=f, f_lensed=f_lensed, phi=phi, n=n)
