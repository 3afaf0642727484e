"""Post-fit diagnostics: standard errors, residuals, empirical Bayes estimates and profile CIs."""
import logging
import warnings
from dataclasses import dataclass

import numdifftools as nd
import numpy as np
import pandas as pd
from scipy.linalg import solve_triangular
from scipy.optimize import brentq, minimize
from scipy.stats import chi2
from scipy.stats import norm as scipy_norm

from .errors import DataError, SolverFailure
from .likelihood import FOCEI, LikelihoodEngine, SubjectObjective

logger = logging.getLogger(__name__)


def _engine_from_fit(fit_result) -> LikelihoodEngine:
    engine = LikelihoodEngine(fit_result.model, fit_result.population, fit_result.approx,
                              fit_result.config, fit_result.estimation,
                              free_names=fit_result.free_names, fixed=fit_result.fixed)
    layout = fit_result.model.randeff_layout(fit_result.param)
    engine.eta_hat = [layout.to_vector(fit_result.eta_hat[s.id]) for s in engine.population]
    return engine


def _free_values(engine, x):
    """Constrained free parameters at `x`, flattened in label order."""
    params = engine.params_from_x(x)
    return np.concatenate([_natural(params[name]) for name in engine.free_names])


def _natural(value):
    value = np.asarray(value, dtype=np.float64)
    if value.ndim == 2:
        return value[np.tril_indices(value.shape[0])]
    return np.ravel(value)


@dataclass
class InferenceResult:
    labels: list
    estimate: np.ndarray
    se: np.ndarray
    cov: np.ndarray
    ci_level: float
    lower: np.ndarray
    upper: np.ndarray
    robust: bool = False

    def to_pandas(self) -> pd.DataFrame:
        ci_label = int(round(self.ci_level * 100))
        return pd.DataFrame({
            "parameter": self.labels,
            "estimate": self.estimate,
            "se": self.se,
            f"ci{ci_label}_lower": self.lower,
            f"ci{ci_label}_upper": self.upper,
        })


def infer(fit_result, ci_level=0.95, robust=False) -> InferenceResult:
    """Asymptotic standard errors of the free parameters.

    The observed information is the Hessian of the negative log-likelihood
    in unconstrained space, with each η̂ held at its fitted value. With
    `robust` the sandwich ``H⁻¹ G H⁻¹`` is used, where G is the outer product
    of the per-subject score vectors. Covariances are mapped to the
    constrained parameters with the delta method.
    """
    engine = _engine_from_fit(fit_result)
    x = np.asarray(fit_result.x, dtype=np.float64)
    H = np.atleast_2d(nd.Hessian(engine.fixed_eta_objective)(x))
    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        warnings.warn("Hessian of the objective is singular, using its pseudo-inverse")
        H_inv = np.linalg.pinv(H)
    if robust:
        scores = np.atleast_2d(nd.Jacobian(engine.fixed_eta_subject_objectives)(x))
        cov_x = H_inv @ (scores.T @ scores) @ H_inv
    else:
        cov_x = H_inv

    # delta method from unconstrained to natural scale
    T = np.atleast_2d(nd.Jacobian(lambda z: _free_values(engine, z))(x))
    estimate = _free_values(engine, x)
    cov = T @ cov_x @ T.T
    var = np.diag(cov)
    if np.any(var < 0):
        warnings.warn("negative variance estimates, the fit is probably not at a minimum")
    se = np.sqrt(np.clip(var, 0, None))
    z = scipy_norm.ppf(0.5 + ci_level / 2)
    labels = []
    for name in engine.free_names:
        value = np.asarray(fit_result.param[name])
        if value.ndim == 0:
            labels.append(name)
        elif value.ndim == 1:
            labels.extend(f"{name}[{i}]" for i in range(value.size))
        else:
            rows, cols = np.tril_indices(value.shape[0])
            labels.extend(f"{name}[{i},{j}]" for i, j in zip(rows, cols))
    return InferenceResult(labels=labels, estimate=estimate, se=se, cov=cov, ci_level=ci_level,
                           lower=estimate - z * se, upper=estimate + z * se, robust=robust)


def residuals(fit_result) -> pd.DataFrame:
    """Population (WRES) and individual (IWRES) weighted residuals per observation.

    WRES uses the first-order linearization at the random-effect mean,
    ``L⁻¹ (y - f(mean))`` with ``L Lᵀ = J Ω Jᵀ + R``; IWRES is
    ``(y - f(η̂)) / sqrt(R(η̂))``.
    """
    model, params = fit_result.model, fit_result.param
    frames = []
    for subject in fit_result.population:
        obj = SubjectObjective(model, subject, params, fit_result.config, fit_result.estimation)
        eta_hat = model.randeff_layout(params).to_vector(fit_result.eta_hat[subject.id])
        names, times = obj.records(obj.mean)
        if not names:
            continue
        y, pred, r0 = obj.moments(obj.mean)
        _, ipred, r_hat = obj.moments(eta_hat)
        J = obj.jacobian(obj.mean)
        V = J @ obj.omega @ J.T + np.diag(r0)
        L = np.linalg.cholesky(V)
        frames.append(pd.DataFrame({
            "id": subject.id,
            "time": times,
            "variable": names,
            "dv": y,
            "pred": pred,
            "ipred": ipred,
            "wres": solve_triangular(L, y - pred, lower=True),
            "iwres": (y - ipred) / np.sqrt(r_hat),
        }))
    if not frames:
        return pd.DataFrame(columns=["id", "time", "variable", "dv", "pred", "ipred", "wres",
                                     "iwres"])
    return pd.concat(frames, ignore_index=True)


def empirical_bayes(model, population, params, approx=None, *, config=None, estimation=None):
    """Per-subject conditional modes η̂ at fixed `params`, keyed by subject id."""
    engine = LikelihoodEngine(model, population, FOCEI() if approx is None else approx, config,
                              estimation)
    engine.loglikelihood(params)
    layout = model.randeff_layout(params)
    return {s.id: layout.from_vector(eta) for s, eta in zip(engine.population, engine.eta_hat)}


def find_profile_bound(root_function, start, step, lower=True, max_expansions=50):
    """Expand from `start` until `root_function` changes sign, then solve with brentq."""
    direction = -1.0 if lower else 1.0
    a = start
    b = start + direction * step
    for _ in range(max_expansions):
        if root_function(b) >= 0:
            return brentq(root_function, min(a, b), max(a, b))
        a, b = b, b + direction * step
        step *= 1.5
    logger.info("profile bound not found within %d expansions from %g", max_expansions, start)
    return None


def profile_ci(fit_result, name, ci_level=0.95, step=None):
    """Profile-likelihood confidence interval for the scalar parameter `name`.

    The other free parameters are re-optimized at every trial value; the
    bounds are where the objective rises ``chi2.ppf(ci_level, 1) / 2`` above
    its minimum.
    """
    engine = _engine_from_fit(fit_result)
    if name not in engine.free_names:
        raise DataError(f"{name!r} is not a free parameter of this fit", field=name)
    if engine.paramset[name].size != 1:
        raise DataError(f"profiling needs a scalar parameter, {name!r} has "
                        f"{engine.paramset[name].size} coordinates", field=name)
    idx = engine.paramset.slices(engine.free_names)[name].start
    x_best = np.asarray(fit_result.x, dtype=np.float64)
    best = engine.objective(x_best)
    target = chi2.ppf(ci_level, 1) / 2.0
    others = np.delete(x_best, idx)
    step = 0.1 * (1.0 + abs(x_best[idx])) if step is None else step
    logger.info("profiling %s", name)

    def root_function(value):
        def objective(z):
            return engine.objective(np.insert(z, idx, value))

        def gradient(z):
            return np.delete(engine.gradient(np.insert(z, idx, value)), idx)

        try:
            if others.size == 0:
                return objective(others) - best - target
            res = minimize(objective, others, jac=gradient, method="BFGS",
                           options={"maxiter": fit_result.estimation.outer_maxiter,
                                    "gtol": fit_result.estimation.outer_gtol})
        except SolverFailure as e:
            logger.info("profile evaluation failed at %s=%g: %s", name, value, e)
            return 1e12
        return res.fun - best - target

    domain = engine.paramset[name]
    lower = find_profile_bound(root_function, x_best[idx], step, lower=True)
    upper = find_profile_bound(root_function, x_best[idx], step, lower=False)
    return (None if lower is None else domain.from_unconstrained(np.array([lower])),
            None if upper is None else domain.from_unconstrained(np.array([upper])))
