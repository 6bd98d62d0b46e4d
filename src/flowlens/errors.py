"""
Error taxonomy for flowlens.

Integration and inversion failures propagate to the caller unmodified; an
incomplete conjugate-gradient solve is reported through `CGInfo` instead and
only becomes a `SolverIncomplete` exception if the caller asks for it.
"""

from __future__ import annotations

__all__ = [
    "FlowLensError",
    "SingularOperator",
    "NonConvergence",
    "SolverIncomplete",
    "InvalidParametrization",
    "ShapeMismatch",
]


class FlowLensError(Exception):
    """Base error for the flowlens package."""


class SingularOperator(FlowLensError, ValueError):
    """Inverse of a diagonal operator with a zero or non-finite entry."""

    def __init__(self, name: str, n_bad: int, n_total: int):
        self.name = name
        self.n_bad = int(n_bad)
        self.n_total = int(n_total)
        super().__init__(
            f"{name} is not invertible: {self.n_bad}/{self.n_total} diagonal entries are zero or non-finite."
        )


class NonConvergence(FlowLensError, RuntimeError):
    """ODE integration failed to reach its end time within budget."""

    def __init__(self, message: str, *, t_reached: float | None = None, n_steps: int | None = None):
        self.t_reached = t_reached
        self.n_steps = n_steps
        super().__init__(message)


class SolverIncomplete(FlowLensError, RuntimeError):
    """Conjugate gradient stopped at its iteration cap above tolerance."""

    def __init__(self, n_iter: int, residual: float, tol: float):
        self.n_iter = int(n_iter)
        self.residual = float(residual)
        self.tol = float(tol)
        super().__init__(
            f"CG did not converge in {self.n_iter} iterations "
            f"(relative residual {self.residual:.3e} > tol {self.tol:.3e})."
        )


class InvalidParametrization(FlowLensError, ValueError):
    """Unknown field parametrization tag."""

    def __init__(self, tag):
        self.tag = tag
        super().__init__(f"Unknown parametrization {tag!r}; expected 'unlensed' (0), 'lensed' (1) or 'mixed'.")


class ShapeMismatch(FlowLensError, ValueError):
    """Field or operator does not match the grid it is used with."""
