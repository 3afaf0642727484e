"""Per-subject evaluation: pre -> init -> dynamics -> derived.

`SubjectPipeline` is a small state machine over one subject. It evaluates
the individual parameters, builds the event timeline, integrates the
dynamical system across it and finally evaluates the derived variables at
the observation times.
"""
import logging
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np
from scipy.integrate import solve_ivp
from scipy.optimize import root

from .config import SolverConfig
from .dosing import SteadyStateKind
from .errors import CompartmentLookupError, DataError, NLMEError, SolverFailure, SteadyStateWarning
from .timeline import ActionKind, build_timeline, group_by_time

logger = logging.getLogger(__name__)


class Stage(Enum):
    Init = "Init"
    PreEvaluated = "PreEvaluated"
    Integrated = "Integrated"
    Derived = "Derived"
    Done = "Done"
    Errored = "Errored"


@dataclass(frozen=True)
class Trajectory:
    """State values at the saved times, one row per time."""

    times: np.ndarray
    states: Tuple[str, ...]
    values: np.ndarray

    def __getitem__(self, name):
        try:
            return self.values[:, self.states.index(name)]
        except ValueError:
            raise CompartmentLookupError(name, self.states) from None

    def as_dict(self) -> Dict[str, np.ndarray]:
        return {name: self.values[:, i] for i, name in enumerate(self.states)}


@dataclass
class SubjectSolution:
    subject_id: object
    times: np.ndarray
    trajectory: Trajectory
    derived: Dict[str, object] = field(default_factory=dict)
    pre: Dict[str, object] = field(default_factory=dict)


def is_distribution(value):
    return hasattr(value, "logpdf") and hasattr(value, "rvs")


def evaluate_pre(model, params, randeffs, subject, t) -> Dict[str, object]:
    out = model.pre(params, randeffs, subject.covariates_at(t), t)
    if not isinstance(out, Mapping):
        raise DataError(f"pre must return a mapping, got {type(out).__name__}", field="pre",
                        subject_id=subject.id, time=t)
    return dict(out)


def initial_state(model, pre_values, t0, subject_id=None) -> np.ndarray:
    states = model.states
    u0 = np.zeros(len(states), dtype=np.float64)
    if model.init is None:
        return u0
    init = model.init(pre_values, t0)
    if init is None:
        return u0
    if isinstance(init, Mapping):
        for name, value in init.items():
            if name not in states:
                raise CompartmentLookupError(name, states, subject_id=subject_id)
            u0[states.index(name)] = float(value)
        return u0
    init = np.asarray(init, dtype=np.float64).ravel()
    if init.shape != u0.shape:
        raise DataError(f"init returned {init.size} values for {len(states)} states",
                        field="init", subject_id=subject_id)
    return init.copy()


class SubjectPipeline:
    """Evaluate one subject under fixed `params` and `randeffs`.

    The current state is exposed on `stage`; once `Errored` the pipeline
    refuses further work.
    """

    def __init__(self, model, subject, params, randeffs=None, config: SolverConfig = None,
                 obstimes=None):
        self.model = model
        self.subject = subject
        self.params = params
        self.randeffs = {} if randeffs is None else randeffs
        self.config = SolverConfig() if config is None else config
        obstimes = subject.time if obstimes is None else obstimes
        obstimes = np.asarray(obstimes, dtype=np.float64).ravel()
        if np.any(np.diff(obstimes) < 0):
            raise DataError("observation times must be non-decreasing", field="obstimes",
                            subject_id=subject.id)
        self.obstimes = obstimes
        self.stage = Stage.Init
        self._static = not model.time_dependent_pre and not subject.has_time_varying_covariates
        self._pre0 = None
        self._rate_matrix = None
        self._operators = {}
        self._solution = None
        self._pre_obs = None

    def _check_not_errored(self):
        if self.stage is Stage.Errored:
            raise NLMEError(f"pipeline for subject {self.subject.id!r} is in the Errored state")

    def evaluate_pre(self, t) -> Dict[str, object]:
        if self._static and self._pre0 is not None:
            return self._pre0
        pre = evaluate_pre(self.model, self.params, self.randeffs, self.subject, t)
        if self._static:
            self._pre0 = pre
        return pre

    def _dosecontrol_at(self, t):
        if self.model.dosecontrol is None:
            return None
        return self.model.dosecontrol(self.evaluate_pre(t))

    def timeline(self):
        return build_timeline(
            self.subject.dose_events,
            self.model.states,
            dcp_at=self._dosecontrol_at,
            breakpoints=self.subject.covariate_change_times(),
            subject_id=self.subject.id,
        )

    def _matrix(self, pre):
        if self._static and self._rate_matrix is not None:
            return self._rate_matrix
        A = self.model.dynamics.rate_matrix(pre)
        if self._static:
            self._rate_matrix = A
        return A

    def _operator(self, A, rates, h):
        if not self._static:
            return self.model.dynamics.operator(A, rates, h)
        # A is fixed for the subject, so the operator only depends on (h, rates)
        key = (h, rates.tobytes())
        op = self._operators.get(key)
        if op is None:
            op = self.model.dynamics.operator(A, rates, h)
            self._operators[key] = op
        return op

    def _segment_pre(self, t_from, t_to):
        # covariates are constant on the open segment between breakpoints
        return self.evaluate_pre(0.5 * (t_from + t_to))

    def _advance(self, x, rates, t_from, t_to, save_times, pre=None):
        """Propagate `x` from `t_from` to `t_to`; return the end state and the states at `save_times`."""
        dyn = self.model.dynamics
        points = np.append(save_times, t_to)
        if dyn.is_analytical:
            A = self._matrix(self._segment_pre(t_from, t_to) if pre is None else pre)
            out = np.empty((len(points), len(x)))
            t = t_from
            for i, tp in enumerate(points):
                if tp > t:
                    phi, c = self._operator(A, rates, tp - t)
                    x = phi @ x + c
                    t = tp
                out[i] = x
        else:
            if pre is not None:
                pre_at = lambda t: pre
            elif self._static:
                pre0 = self.evaluate_pre(t_from)
                pre_at = lambda t: pre0
            else:
                pre_at = self.evaluate_pre
            # solve_ivp needs strictly increasing t_eval; repeated sample times share a state
            unique_points, inverse = np.unique(points, return_inverse=True)
            sol = solve_ivp(
                lambda t, u: dyn.derivative(u, pre_at(t), t, rates),
                (t_from, t_to),
                x,
                t_eval=unique_points,
                **self.config.ivp_kwargs(),
            )
            if sol.status < 0 or sol.y.shape[1] != len(unique_points):
                t_fail = float(sol.t[-1]) if len(sol.t) else t_from
                raise SolverFailure(f"integration failed: {sol.message}", subject_id=self.subject.id,
                                    time=t_fail, recoverable=True)
            out = sol.y.T[inverse]
        if not np.all(np.isfinite(out)):
            raise SolverFailure("state became non-finite", subject_id=self.subject.id,
                                time=t_to, recoverable=True)
        return out[-1].copy(), out[:-1]

    def _one_period(self, y, action, pre):
        n = len(y)
        x = y.copy()
        zero = np.zeros(n)
        if action.duration > 0:
            r = np.zeros(n)
            r[action.cmt] = action.rate
            x, _ = self._advance(x, r, 0.0, action.duration, np.zeros(0), pre)
            if action.ii > action.duration:
                x, _ = self._advance(x, zero, action.duration, action.ii, np.zeros(0), pre)
        else:
            x[action.cmt] += action.amount
            x, _ = self._advance(x, zero, 0.0, action.ii, np.zeros(0), pre)
        return x

    def steady_state(self, action, n_states) -> np.ndarray:
        """State just before a dose once the regimen has reached steady state."""
        pre = self.evaluate_pre(action.time)
        dyn = self.model.dynamics
        if dyn.is_analytical:
            A = self._matrix(pre)
            phi = dyn.transition(A, action.ii)
            c = self._one_period(np.zeros(n_states), action, pre)
            try:
                return np.linalg.solve(np.eye(n_states) - phi, c)
            except np.linalg.LinAlgError as e:
                raise SolverFailure("steady state does not exist for this system",
                                    subject_id=self.subject.id, time=action.time) from e

        cfg = self.config
        y = np.zeros(n_states)
        for it in range(cfg.ss_max_iters):
            y_next = self._one_period(y, action, pre)
            if np.linalg.norm(y_next - y) <= cfg.ss_tol * (1.0 + np.linalg.norm(y_next)):
                logger.debug("subject %s: steady state after %d periods", self.subject.id, it + 1)
                return y_next
            y = y_next
        msg = f"steady state did not converge within {cfg.ss_max_iters} dosing intervals"
        if cfg.ss_fallback:
            warnings.warn(f"{msg} for subject {self.subject.id!r}; using the last iterate",
                          SteadyStateWarning)
            return y
        raise SolverFailure(msg, subject_id=self.subject.id, time=action.time, recoverable=True)

    def steady_state_infusion(self, action, x) -> np.ndarray:
        pre = self.evaluate_pre(action.time)
        dyn = self.model.dynamics
        r = np.zeros(len(x))
        r[action.cmt] = action.rate
        if dyn.is_analytical:
            try:
                return dyn.steady_state_infusion(self._matrix(pre), r)
            except np.linalg.LinAlgError as e:
                raise SolverFailure("no equilibrium for a constant infusion",
                                    subject_id=self.subject.id, time=action.time) from e
        sol = root(lambda u: dyn.derivative(u, pre, action.time, r), x)
        if not sol.success:
            raise SolverFailure(f"infusion equilibrium not found: {sol.message}",
                                subject_id=self.subject.id, time=action.time, recoverable=True)
        return sol.x

    def _apply(self, actions, x, active):
        for a in actions:
            if a.kind == ActionKind.Reset:
                x[:] = 0.0
                active.clear()
            elif a.kind == ActionKind.SteadyState:
                y = self.steady_state(a, len(x))
                if a.ss == SteadyStateKind.SteadyState:
                    x[:] = y
                    active.clear()
                else:
                    x += y
            elif a.kind == ActionKind.Bolus:
                x[a.cmt] += a.amount
            elif a.kind == ActionKind.InfusionStart:
                active[a.infusion_id] = (a.cmt, a.rate)
            elif a.kind == ActionKind.InfusionStop:
                active.pop(a.infusion_id, None)
            elif a.kind == ActionKind.SteadyStateInfusion:
                y = self.steady_state_infusion(a, x.copy())
                if a.ss == SteadyStateKind.SteadyState:
                    x[:] = y
                    active.clear()
                else:
                    x += y
                active[a.infusion_id] = (a.cmt, a.rate)
        rates = np.zeros(len(x))
        for cmt, rate in active.values():
            rates[cmt] += rate
        return x, rates

    def integrate(self) -> Trajectory:
        self._check_not_errored()
        try:
            actions = self.timeline()
            obstimes = self.obstimes
            bounds = [a.time for a in actions]
            if len(obstimes):
                bounds.extend([obstimes[0], obstimes[-1]])
            t0 = min(bounds) if bounds else 0.0
            pre0 = self.evaluate_pre(t0)
            if self.stage is Stage.Init:
                self.stage = Stage.PreEvaluated
            x = initial_state(self.model, pre0, t0, self.subject.id)

            saved = np.full((len(obstimes), len(x)), np.nan)
            active = {}
            rates = np.zeros(len(x))
            grouped = list(group_by_time(actions))
            stops = [t for t, _ in grouped]
            if len(obstimes) and (not stops or obstimes[-1] > stops[-1]):
                grouped.append((float(obstimes[-1]), ()))
            if not grouped or grouped[0][0] > t0:
                grouped.insert(0, (t0, ()))

            t = t0
            for tau, acts in grouped:
                if tau > t:
                    inside = (obstimes > t) & (obstimes < tau)
                    x, at_obs = self._advance(x, rates, t, tau, obstimes[inside])
                    saved[inside] = at_obs
                    t = tau
                x, rates = self._apply(acts, x, active)
                saved[obstimes == tau] = x
        except Exception:
            self.stage = Stage.Errored
            raise
        self.stage = Stage.Integrated
        return Trajectory(times=obstimes, states=self.model.states, values=saved)

    def pre_at_obstimes(self) -> Dict[str, object]:
        """Pre values at the observation times; scalars when pre is constant over time."""
        if self._static or len(self.obstimes) == 0:
            return self.evaluate_pre(self.obstimes[0] if len(self.obstimes) else 0.0)
        rows = [self.evaluate_pre(t) for t in self.obstimes]
        return {k: np.array([r[k] for r in rows]) for k in rows[0]}

    def derive(self, trajectory: Trajectory) -> Dict[str, object]:
        self._check_not_errored()
        try:
            pre = self.pre_at_obstimes()
            out = self.model.derived(self.params, self.randeffs, pre, trajectory.as_dict(),
                                     trajectory.times)
            if not isinstance(out, Mapping):
                raise DataError(f"derived must return a mapping, got {type(out).__name__}",
                                field="derived", subject_id=self.subject.id)
            derived = {}
            for name, value in out.items():
                if is_distribution(value):
                    derived[name] = value
                else:
                    derived[name] = np.broadcast_to(np.asarray(value, dtype=np.float64),
                                                    trajectory.times.shape).copy()
        except Exception:
            self.stage = Stage.Errored
            raise
        self.stage = Stage.Derived
        self._pre_obs = pre
        return derived

    def run(self) -> SubjectSolution:
        if self.stage is Stage.Done:
            return self._solution
        trajectory = self.integrate()
        derived = self.derive(trajectory)
        self._solution = SubjectSolution(
            subject_id=self.subject.id,
            times=trajectory.times,
            trajectory=trajectory,
            derived=derived,
            pre=self._pre_obs,
        )
        self.stage = Stage.Done
        return self._solution


def solve(model, subject, params, randeffs=None, config: Optional[SolverConfig] = None,
          obstimes=None) -> SubjectSolution:
    return SubjectPipeline(model, subject, params, randeffs, config, obstimes).run()
