"""Dynamical systems: closed-form linear compartment models and general ODE systems.

A model picks one of two kinds of dynamics once, at construction:

* `AnalyticalSolution` subclasses describe linear compartment models
  ``du/dt = A(pre) u + r`` whose segment solution is known in closed form
  (a matrix exponential, or an explicit exponential for one compartment).
* `NumericalSystem` wraps an arbitrary right-hand side ``rhs(u, pre, t)``
  that is integrated with `scipy.integrate.solve_ivp`.
"""
import abc
from typing import Callable, Mapping, Sequence, Tuple

import numpy as np
from numba import njit
from scipy.linalg import expm

from .errors import CompartmentLookupError, DataError


@njit(cache=True)
def one_compartment_propagate(x0, rate, k, h):
    """Amount after `h` time units of first-order elimination `k` with zero-order input `rate`."""
    if k == 0.0:
        return x0 + rate * h
    decay = np.exp(-k * h)
    return x0 * decay + rate / k * (1.0 - decay)


class Dynamics(abc.ABC):
    states: Tuple[str, ...] = ()
    is_analytical = False

    @property
    def n_states(self):
        return len(self.states)

    def state_index(self, name):
        try:
            return self.states.index(name)
        except ValueError:
            raise CompartmentLookupError(name, self.states) from None


class AnalyticalSolution(Dynamics):
    """Linear compartment model with a closed-form segment solution.

    Subclasses declare `states`, the `required_pre` names they read from the
    pre stage, and build the rate matrix `A` in `rate_matrix`.
    """

    is_analytical = True
    required_pre: Tuple[str, ...] = ()

    def check_pre(self, pre: Mapping[str, object]):
        missing = [name for name in self.required_pre if name not in pre]
        if missing:
            raise CompartmentLookupError(missing[0], list(pre))

    @abc.abstractmethod
    def _matrix(self, pre) -> np.ndarray:
        pass

    def rate_matrix(self, pre) -> np.ndarray:
        self.check_pre(pre)
        A = np.asarray(self._matrix(pre), dtype=np.float64)
        if not np.all(np.isfinite(A)):
            raise DataError(f"non-finite rate constants from {dict((k, pre[k]) for k in self.required_pre)}",
                            field=",".join(self.required_pre))
        return A

    def operator(self, A, rates, h):
        """(Phi, c) such that the state after `h` with constant input `rates` is ``Phi @ x0 + c``."""
        n = A.shape[0]
        M = np.zeros((n + 1, n + 1), dtype=np.float64)
        M[:n, :n] = A * h
        M[:n, n] = rates * h
        E = expm(M)
        return E[:n, :n], E[:n, n]

    def propagate(self, A, x0, rates, h):
        phi, c = self.operator(A, rates, h)
        return phi @ x0 + c

    def transition(self, A, h):
        return expm(A * h)

    def steady_state_infusion(self, A, rates):
        # A x + r = 0
        return np.linalg.solve(A, -rates)

    def __repr__(self):
        return f"{type(self).__name__}()"


class Central1(AnalyticalSolution):
    """One compartment, first-order elimination.

    Central' = -(CL/Vc) * Central
    """

    states = ("Central",)
    required_pre = ("CL", "Vc")

    def _matrix(self, pre):
        return np.array([[-pre["CL"] / pre["Vc"]]])

    def operator(self, A, rates, h):
        k = float(-A[0, 0])
        phi = one_compartment_propagate(1.0, 0.0, k, float(h))
        c = one_compartment_propagate(0.0, float(rates[0]), k, float(h))
        return np.array([[phi]]), np.array([c])

    def propagate(self, A, x0, rates, h):
        k = float(-A[0, 0])
        return np.array([one_compartment_propagate(float(x0[0]), float(rates[0]), k, float(h))])

    def transition(self, A, h):
        return np.array([[np.exp(A[0, 0] * h)]])


class Depots1Central1(AnalyticalSolution):
    """First-order absorption from a depot into one compartment.

    Depot'   = -Ka * Depot
    Central' =  Ka * Depot - (CL/Vc) * Central
    """

    states = ("Depot", "Central")
    required_pre = ("Ka", "CL", "Vc")

    def _matrix(self, pre):
        ka, k = pre["Ka"], pre["CL"] / pre["Vc"]
        return np.array([[-ka, 0.0],
                         [ka, -k]])


class Central1Periph1(AnalyticalSolution):
    """Two compartments, elimination from the central one.

    Central'    = -(CL+Q)/Vc * Central + Q/Vp * Peripheral
    Peripheral' =  Q/Vc * Central - Q/Vp * Peripheral
    """

    states = ("Central", "Peripheral")
    required_pre = ("CL", "Vc", "Q", "Vp")

    def _matrix(self, pre):
        k10 = pre["CL"] / pre["Vc"]
        k12 = pre["Q"] / pre["Vc"]
        k21 = pre["Q"] / pre["Vp"]
        return np.array([[-(k10 + k12), k21],
                         [k12, -k21]])


class Depots1Central1Periph1(AnalyticalSolution):
    """Two compartments with first-order absorption from a depot."""

    states = ("Depot", "Central", "Peripheral")
    required_pre = ("Ka", "CL", "Vc", "Q", "Vp")

    def _matrix(self, pre):
        ka = pre["Ka"]
        k10 = pre["CL"] / pre["Vc"]
        k12 = pre["Q"] / pre["Vc"]
        k21 = pre["Q"] / pre["Vp"]
        return np.array([[-ka, 0.0, 0.0],
                         [ka, -(k10 + k12), k21],
                         [0.0, k12, -k21]])


ANALYTICAL_KINDS = {
    cls.__name__: cls
    for cls in (Central1, Depots1Central1, Central1Periph1, Depots1Central1Periph1)
}


class NumericalSystem(Dynamics):
    """General system ``du/dt = rhs(u, pre, t)`` integrated numerically.

    Args:
        rhs: callable returning the derivative as an array-like with one entry
            per state, in the order of `states`.
        states: names of the dynamical variables.
    """

    def __init__(self, rhs: Callable, states: Sequence[str]):
        if not callable(rhs):
            raise DataError("rhs must be callable", field="dynamics")
        states = tuple(states)
        if not states or len(set(states)) != len(states):
            raise DataError(f"states must be non-empty and unique, got {states}", field="states")
        self.rhs = rhs
        self.states = states

    def derivative(self, u, pre, t, rates):
        du = np.asarray(self.rhs(u, pre, t), dtype=np.float64)
        if du.shape != (self.n_states,):
            raise DataError(
                f"rhs returned shape {du.shape}, expected ({self.n_states},)", field="dynamics"
            )
        return du + rates

    def __repr__(self):
        return f"NumericalSystem(states={self.states})"


def analytical(kind: str) -> AnalyticalSolution:
    """Look up a closed-form model by name, e.g. ``analytical("Central1Periph1")``."""
    try:
        return ANALYTICAL_KINDS[kind]()
    except KeyError:
        raise CompartmentLookupError(kind, list(ANALYTICAL_KINDS)) from None
