"""
Persistence of joint-optimizer runs.

One compressed npz per run: per-iteration scalars and fields stacked along a
leading iteration axis, the final fields, and free-form scalar metadata
(stored with a `meta_` prefix).
"""

from __future__ import annotations

from pathlib import Path

import numpy as np

from .optimize import JointResult


def save_trace(path: Path | str, result: JointResult, **metadata) -> Path:
    """
    Write a JointResult to `path` (.npz).

    Args:
      path: output file; parent directories are created.
      result: JointResult from `joint_map`.
      **metadata: scalars or arrays saved alongside (e.g. seed, nsteps).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    trace = result.trace
    if not trace:
        raise ValueError("result has an empty trace.")

    ny, nx = result.phi.shape
    directions = np.stack(
        [np.full((ny, nx), np.nan) if r.phi_direction is None else r.phi_direction for r in trace], axis=0
    )
    payload = dict(
        i=np.asarray([r.i for r in trace], dtype=np.int64),
        lnP=np.asarray([r.lnP for r in trace], dtype=np.float64),
        lnP_before=np.asarray([r.lnP_before for r in trace], dtype=np.float64),
        alpha=np.asarray([r.alpha for r in trace], dtype=np.float64),
        prior_weight=np.asarray([r.prior_weight for r in trace], dtype=np.float64),
        lnP_full=np.asarray([np.nan if r.lnP_full is None else r.lnP_full for r in trace], dtype=np.float64),
        cg_n_iter=np.asarray([r.cg_info.n_iter for r in trace], dtype=np.int64),
        cg_converged=np.asarray([r.cg_info.converged for r in trace], dtype=bool),
        cg_final_residual=np.asarray([r.cg_info.final_residual for r in trace], dtype=np.float64),
        phi_trace=np.stack([r.phi for r in trace], axis=0),
        f_trace=np.stack([r.f for r in trace], axis=0),
        phi_direction_trace=directions,
        f_mix=np.asarray(result.f_mix, dtype=np.float64),
        f=np.asarray(result.f, dtype=np.float64),
        phi=np.asarray(result.phi, dtype=np.float64),
        target_lnP=np.float64(np.nan if result.target_lnP is None else result.target_lnP),
    )
    for key, value in metadata.items():
        payload[f"meta_{key}"] = np.asarray(value)

    np.savez_compressed(path, **payload)
    print(f"[write] {path} n_iter={len(trace)}", flush=True)
    return path


def load_trace(path: Path | str) -> dict:
    """Load a trace written by `save_trace`; metadata comes back under 'meta' with 0-d arrays unwrapped."""
    path = Path(path)
    with np.load(path, allow_pickle=False) as z:
        out = {k: np.asarray(z[k]).copy() for k in z.files if not k.startswith("meta_")}
        meta = {}
        for k in z.files:
            if k.startswith("meta_"):
                v = np.asarray(z[k])
                meta[k[len("meta_"):]] = v.item() if v.ndim == 0 else v.copy()
    out["meta"] = meta
    return out
