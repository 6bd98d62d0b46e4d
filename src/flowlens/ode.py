"""
ODE integrators for the lensing flow.

Two interchangeable step strategies:
  - FixedStep:    classical RK4 with a fixed number of equal steps
  - AdaptiveStep: Dormand-Prince RK45 (scipy.integrate.RK45) with rtol/atol,
                  a minimum step and a step budget

The state y may be any float array; `velocity(y, t)` must return an array of
the same shape. Integration may run backwards in time (t1 < t0).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Iterator, Union

import numpy as np
from scipy.integrate import RK45

from .errors import NonConvergence

Velocity = Callable[[np.ndarray, float], np.ndarray]


@dataclass(frozen=True)
class FixedStep:
    """RK4 with `nsteps` equal steps between the two endpoints."""

    nsteps: int = 10

    def __post_init__(self) -> None:
        if int(self.nsteps) < 1:
            raise ValueError("FixedStep.nsteps must be >= 1.")


@dataclass(frozen=True)
class AdaptiveStep:
    """
    Adaptive RK45.

    Args:
      rtol, atol: local error tolerances passed to scipy's RK45.
      min_step: smallest step allowed before the end time is reached.
      max_steps: step budget; defaults to ceil(|t1 - t0| / min_step).
      verbose: print the number of steps taken.
    """

    rtol: float = 1e-5
    atol: float = 1e-8
    min_step: float = 1e-3
    max_steps: int | None = None
    verbose: bool = False

    def __post_init__(self) -> None:
        if not float(self.min_step) > 0:
            raise ValueError("AdaptiveStep.min_step must be > 0.")
        if self.max_steps is not None and int(self.max_steps) < 1:
            raise ValueError("AdaptiveStep.max_steps must be >= 1.")

    def step_budget(self, span: float) -> int:
        if self.max_steps is not None:
            return int(self.max_steps)
        return max(1, int(math.ceil(abs(float(span)) / float(self.min_step))))


Integrator = Union[FixedStep, AdaptiveStep]


@dataclass(frozen=True)
class Trajectory:
    """Every accepted step of an integration: times (n,), states (n, *state_shape)."""

    times: np.ndarray
    states: np.ndarray

    @property
    def final(self) -> np.ndarray:
        return self.states[-1]

    @property
    def n_steps(self) -> int:
        return int(self.times.size) - 1


def _check_finite(y: np.ndarray, t: float, n: int, label: str) -> None:
    if not bool(np.all(np.isfinite(y))):
        raise NonConvergence(f"[{label}] non-finite state at t={t:.6g} after {n} steps.", t_reached=t, n_steps=n)


def _rk4_steps(velocity: Velocity, y0: np.ndarray, t0: float, t1: float, nsteps: int, label: str) -> Iterator[tuple[float, np.ndarray]]:
    h = (t1 - t0) / nsteps
    y = y0
    t = t0
    for i in range(nsteps):
        k1 = velocity(y, t)
        k2 = velocity(y + (0.5 * h) * k1, t + 0.5 * h)
        k3 = velocity(y + (0.5 * h) * k2, t + 0.5 * h)
        k4 = velocity(y + h * k3, t + h)
        y = y + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
        t = t0 + (i + 1) * h
        _check_finite(y, t, i + 1, label)
        yield t, y


def _rk45_steps(velocity: Velocity, y0: np.ndarray, t0: float, t1: float, cfg: AdaptiveStep, label: str) -> Iterator[tuple[float, np.ndarray]]:
    shape = y0.shape

    def fun(t: float, y: np.ndarray) -> np.ndarray:
        return np.asarray(velocity(y.reshape(shape), t), dtype=np.float64).reshape(-1)

    solver = RK45(fun, t0, y0.reshape(-1), t1, rtol=float(cfg.rtol), atol=float(cfg.atol))
    budget = cfg.step_budget(t1 - t0)
    n = 0
    while solver.status == "running":
        message = solver.step()
        n += 1
        if solver.status == "failed":
            raise NonConvergence(f"[{label}] RK45 failed at t={solver.t:.6g}: {message}", t_reached=solver.t, n_steps=n)
        y = solver.y.reshape(shape).copy()
        _check_finite(y, solver.t, n, label)
        yield solver.t, y
        if solver.status != "running":
            break
        if n >= budget:
            raise NonConvergence(
                f"[{label}] RK45 exceeded its budget of {budget} steps at t={solver.t:.6g} (target {t1:.6g}).",
                t_reached=solver.t,
                n_steps=n,
            )
        if solver.step_size < float(cfg.min_step):
            raise NonConvergence(
                f"[{label}] RK45 step {solver.step_size:.3e} fell below min_step={cfg.min_step:.3e} at t={solver.t:.6g}.",
                t_reached=solver.t,
                n_steps=n,
            )
    if cfg.verbose:
        print(f"[{label}] ode45 took {n} steps", flush=True)


def _steps(velocity: Velocity, y0: np.ndarray, t0: float, t1: float, integrator: Integrator, label: str) -> Iterator[tuple[float, np.ndarray]]:
    if isinstance(integrator, FixedStep):
        return _rk4_steps(velocity, y0, t0, t1, int(integrator.nsteps), label)
    if isinstance(integrator, AdaptiveStep):
        return _rk45_steps(velocity, y0, t0, t1, integrator, label)
    raise ValueError(f"Unknown integrator {integrator!r}; expected FixedStep or AdaptiveStep.")


def odesolve(
    velocity: Velocity,
    y0: np.ndarray,
    t0: float,
    t1: float,
    integrator: Integrator,
    *,
    label: str = "odesolve",
) -> np.ndarray:
    """Integrate dy/dt = velocity(y, t) from t0 to t1 and return y(t1)."""
    y = np.asarray(y0, dtype=np.float64)
    t0 = float(t0)
    t1 = float(t1)
    if t0 == t1:
        return y.copy()
    for _, y in _steps(velocity, y, t0, t1, integrator, label):
        pass
    return y


def odesolve_trajectory(
    velocity: Velocity,
    y0: np.ndarray,
    t0: float,
    t1: float,
    integrator: Integrator,
    *,
    label: str = "odesolve",
) -> Trajectory:
    """Same integration as `odesolve`, keeping every accepted step (including t0)."""
    y = np.asarray(y0, dtype=np.float64)
    t0 = float(t0)
    t1 = float(t1)
    times = [t0]
    states = [y.copy()]
    if t0 != t1:
        for t, y in _steps(velocity, y, t0, t1, integrator, label):
            times.append(float(t))
            states.append(y)
    return Trajectory(times=np.asarray(times, dtype=np.float64), states=np.stack(states, axis=0))
