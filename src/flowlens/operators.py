"""
Linear operators on grid fields.

Every operator exposes the same four actions:

  apply(f)                 A f
  apply_adjoint(f)         A^T f
  apply_inverse(f)         A^{-1} f
  apply_inverse_adjoint(f) A^{-T} f

Covariances, masks and beams are `DiagonalOperator`s, diagonal either in the
map basis (pixel weights) or in the fourier basis (rfft2 modes). Composition is
explicit through `compose`; no operator arithmetic is overloaded.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal

import numpy as np

from .errors import ShapeMismatch, SingularOperator
from .grid import FlatGrid

Basis = Literal["map", "fourier"]


class LinearOperator(ABC):
    """Interface shared by all operators acting on map-basis fields."""

    name: str = "operator"

    @abstractmethod
    def apply(self, f: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def apply_adjoint(self, f: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def apply_inverse(self, f: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def apply_inverse_adjoint(self, f: np.ndarray) -> np.ndarray:
        ...


@dataclass(frozen=True)
class IdentityOperator(LinearOperator):
    name: str = "identity"

    def apply(self, f: np.ndarray) -> np.ndarray:
        return np.asarray(f, dtype=np.float64)

    apply_adjoint = apply
    apply_inverse = apply
    apply_inverse_adjoint = apply


@dataclass(frozen=True)
class DiagonalOperator(LinearOperator):
    """
    Real diagonal operator in the map or fourier basis.

    Args:
      grid: the grid the operator acts on.
      diag: (ny, nx) for basis='map', (ny, nx//2+1) for basis='fourier'.
      basis: 'map' or 'fourier'.
      name: label used in error messages.

    A real diagonal is self-adjoint under the pixel inner product; in the
    fourier basis this also requires diag(k) == diag(-k), which holds for any
    isotropic spectrum.
    """

    grid: FlatGrid
    diag: np.ndarray
    basis: Basis = "fourier"
    name: str = "operator"

    def __post_init__(self) -> None:
        if self.basis not in ("map", "fourier"):
            raise ValueError(f"basis must be 'map' or 'fourier', got {self.basis!r}.")
        diag = np.asarray(self.diag, dtype=np.float64)
        expected = self.grid.shape if self.basis == "map" else self.grid.fourier_shape
        if diag.ndim == 0:
            diag = np.full(expected, float(diag), dtype=np.float64)
        if diag.shape != expected:
            raise ShapeMismatch(f"{self.name}: {self.basis}-basis diagonal has shape {diag.shape}, expected {expected}.")
        object.__setattr__(self, "diag", diag)

    @classmethod
    def from_cl(
        cls,
        grid: FlatGrid,
        ell: np.ndarray,
        cl: np.ndarray,
        *,
        cl_floor: float = 0.0,
        name: str = "covariance",
    ) -> "DiagonalOperator":
        """
        Isotropic covariance from a 1-D power spectrum.

        With numpy FFT conventions the pixel-space covariance has fourier
        eigenvalues
          lambda(k) = C_ell(|k|) / (dx*dy).
        C_ell is linearly interpolated (zero beyond the tabulated range), non-finite
        values are zeroed and the result is floored at `cl_floor`.
        """
        ell = np.asarray(ell, dtype=np.float64).reshape(-1)
        cl = np.asarray(cl, dtype=np.float64).reshape(-1)
        if ell.shape != cl.shape:
            raise ValueError("ell and cl must have the same shape.")
        cl = np.where(np.isfinite(cl), cl, 0.0)
        cl_mode = np.interp(grid.ell, ell, cl, left=cl[0], right=0.0)
        cl_mode = np.maximum(cl_mode, float(cl_floor))
        return cls(grid=grid, diag=cl_mode / grid.dxdy, basis="fourier", name=name)

    # ---- elementwise functions

    def _with(self, diag: np.ndarray, name: str | None = None) -> "DiagonalOperator":
        return DiagonalOperator(grid=self.grid, diag=diag, basis=self.basis, name=name or self.name)

    def inv(self) -> "DiagonalOperator":
        self._check_invertible()
        return self._with(1.0 / self.diag, name=f"{self.name}^-1")

    def sqrt(self) -> "DiagonalOperator":
        return self._with(np.sqrt(self.diag), name=f"sqrt({self.name})")

    def power(self, p: float) -> "DiagonalOperator":
        if float(p) < 0:
            self._check_invertible()
        return self._with(np.power(self.diag, float(p)), name=f"{self.name}^{p:g}")

    def nan_to_zero(self) -> "DiagonalOperator":
        return self._with(np.where(np.isfinite(self.diag), self.diag, 0.0))

    def _check_invertible(self) -> None:
        bad = ~np.isfinite(self.diag) | (self.diag == 0.0)
        if bool(np.any(bad)):
            raise SingularOperator(self.name, int(np.sum(bad)), int(bad.size))

    # ---- actions

    def _scale(self, f: np.ndarray, diag: np.ndarray) -> np.ndarray:
        f = self.grid.check_map(f, self.name + " input")
        if self.basis == "map":
            return diag * f
        return self.grid.to_map(diag * self.grid.to_fourier(f))

    def apply(self, f: np.ndarray) -> np.ndarray:
        return self._scale(f, self.diag)

    def apply_adjoint(self, f: np.ndarray) -> np.ndarray:
        return self._scale(f, self.diag)

    def apply_inverse(self, f: np.ndarray) -> np.ndarray:
        self._check_invertible()
        return self._scale(f, 1.0 / self.diag)

    def apply_inverse_adjoint(self, f: np.ndarray) -> np.ndarray:
        return self.apply_inverse(f)

    def simulate(self, rng: np.random.Generator) -> np.ndarray:
        """Gaussian draw with this covariance: C^{1/2} applied to unit white noise."""
        return self.sqrt().apply(self.grid.white_noise(rng))


@dataclass(frozen=True)
class ComposedOperator(LinearOperator):
    """ops[0] . ops[1] . ... . ops[-1]; the last operator acts first."""

    ops: tuple[LinearOperator, ...]
    name: str = "composed"

    def apply(self, f: np.ndarray) -> np.ndarray:
        for op in reversed(self.ops):
            f = op.apply(f)
        return f

    def apply_adjoint(self, f: np.ndarray) -> np.ndarray:
        for op in self.ops:
            f = op.apply_adjoint(f)
        return f

    def apply_inverse(self, f: np.ndarray) -> np.ndarray:
        for op in self.ops:
            f = op.apply_inverse(f)
        return f

    def apply_inverse_adjoint(self, f: np.ndarray) -> np.ndarray:
        for op in reversed(self.ops):
            f = op.apply_inverse_adjoint(f)
        return f


def compose(*ops: LinearOperator) -> LinearOperator:
    """Chain operators, dropping identities; `compose(A, B).apply(f) == A.apply(B.apply(f))`."""
    kept = tuple(op for op in ops if not isinstance(op, IdentityOperator))
    if not kept:
        return IdentityOperator()
    if len(kept) == 1:
        return kept[0]
    return ComposedOperator(ops=kept)


def fourier_diagonal(op: LinearOperator) -> np.ndarray | None:
    """Fourier-basis diagonal of `op` if it is a fourier DiagonalOperator, else None."""
    if isinstance(op, DiagonalOperator) and op.basis == "fourier":
        return op.diag
    return None
