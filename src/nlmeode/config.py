from dataclasses import dataclass
from typing import Literal, Union

import numpy as np


ODE_METHODS = ("RK45", "RK23", "DOP853", "Radau", "BDF", "LSODA")


@dataclass(frozen=True)
class SolverConfig:
    """Configuration for segment integration and steady-state resolution.

    `method`, `rtol`, `atol` and `max_step` are handed straight to
    `scipy.integrate.solve_ivp`. `ss_max_iters` and `ss_tol` bound the
    periodic fixed-point iteration used for steady-state doses on
    numerical systems. With `ss_fallback` a non-converged iteration warns
    and keeps the last iterate instead of raising.
    """

    method: str = "LSODA"
    rtol: float = 1e-8
    atol: float = 1e-10
    max_step: float = np.inf
    ss_max_iters: int = 1000
    ss_tol: float = 1e-10
    ss_fallback: bool = False

    def __post_init__(self):
        if self.method not in ODE_METHODS:
            raise ValueError(
                f"ODE method {self.method!r} is not supported, choose one of {ODE_METHODS}"
            )
        if self.rtol <= 0 or self.atol <= 0:
            raise ValueError("rtol and atol must be positive")
        if self.ss_max_iters < 1:
            raise ValueError("ss_max_iters must be at least 1")

    @classmethod
    def from_significant_digits(cls, significant_digits: int = 3, **kwargs):
        # same tolerance ladder the optimizer uses, two digits tighter for the ODE
        rtol = 0.5 * (10 ** (-significant_digits - 2))
        return cls(rtol=rtol, atol=rtol * 1e-2, **kwargs)

    def ivp_kwargs(self):
        return {
            "method": self.method,
            "rtol": self.rtol,
            "atol": self.atol,
            "max_step": self.max_step,
        }


@dataclass(frozen=True)
class EstimationConfig:
    """Configuration for the marginal likelihood engine and the fit driver.

    `checkidentification` inspects the gradient at the optimum: True raises
    `IdentificationError` for coordinates whose gradient is exactly zero,
    ``"warn"`` only warns and False skips the check.

    Population gradients hold each η̂ fixed across the finite-difference
    perturbations and add the implicit-function term for how η̂ moves with
    the parameters. `gradient_reoptimize_eta` re-solves η̂ at every
    perturbation instead.
    """

    inner_maxiter: int = 200
    inner_gtol: float = 1e-6
    outer_maxiter: int = 500
    outer_gtol: float = 1e-3
    optimizer_method: str = "BFGS"
    fd_rel_step: float = np.finfo(np.float64).eps ** (1 / 3)
    gradient_reoptimize_eta: bool = False
    n_jobs: int = 1
    backend: Literal["loky", "threading", "multiprocessing"] = "loky"
    verbose: bool = False
    checkidentification: Union[bool, Literal["warn"]] = True
    n_checkpoint: int = 0
    # finite stand-in for a -inf subject contribution so the optimizer can step away
    failure_penalty: float = 1e10

    def __post_init__(self):
        if self.inner_maxiter < 1 or self.outer_maxiter < 1:
            raise ValueError("iteration limits must be at least 1")
        if self.inner_gtol <= 0:
            raise ValueError("inner_gtol must be positive")

    @classmethod
    def from_significant_digits(cls, significant_digits: int = 3, **kwargs):
        return cls(outer_gtol=10 ** (-significant_digits - 1), **kwargs)
