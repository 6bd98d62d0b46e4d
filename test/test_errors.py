"""
Tests for the error taxonomy: every error is a FlowLensError and also the builtin
callers would catch for it.
"""
from __future__ import annotations

import pytest

from flowlens.errors import (
    FlowLensError,
    InvalidParametrization,
    NonConvergence,
    ShapeMismatch,
    SingularOperator,
    SolverIncomplete,
)


@pytest.mark.parametrize(
    "err,builtin",
    [
        (SingularOperator("Cf", 1, 16), ValueError),
        (NonConvergence("stalled", t_reached=0.4, n_steps=12), RuntimeError),
        (SolverIncomplete(100, 1e-3, 1e-6), RuntimeError),
        (InvalidParametrization("t=0.5"), ValueError),
        (ShapeMismatch("bad shape"), ValueError),
    ],
)
def test_error_bases(err, builtin):
    assert isinstance(err, FlowLensError)
    assert isinstance(err, builtin)


def test_error_messages_carry_context():
    assert "1/16" in str(SingularOperator("Cf", 1, 16))
    e = SolverIncomplete(100, 1e-3, 1e-6)
    assert e.n_iter == 100 and "100 iterations" in str(e)
    assert NonConvergence("stalled", t_reached=0.4, n_steps=12).t_reached == 0.4
    assert "'t=0.5'" in str(InvalidParametrization("t=0.5"))
