"""Fit driver: optimize the marginal likelihood in unconstrained space."""
import glob
import logging
import os
import re
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, dump, load
from scipy.optimize import OptimizeResult, minimize
from sklearn.base import BaseEstimator
from sklearn.utils.validation import check_is_fitted

from .config import EstimationConfig, SolverConfig
from .covariates import as_population
from .errors import (CompartmentLookupError, DataError, IdentificationError,
                     IdentificationWarning)
from .likelihood import (LikelihoodEngine, NaivePooled, SubjectDiagnostics, TwoStage,
                         get_approx)
from .simulation import predict as predict_population

logger = logging.getLogger(__name__)

GRADIENT_METHODS = ("bfgs", "l-bfgs-b", "cg", "newton-cg", "tnc", "slsqp", "trust-constr")


class FitStage(Enum):
    Initial = "Initial"
    Optimizing = "Optimizing"
    Converged = "Converged"
    Failed = "Failed"


def flat_entries(name, value):
    value = np.asarray(value, dtype=np.float64)
    if value.ndim == 0:
        return [(name, float(value))]
    if value.ndim == 1:
        return [(f"{name}[{i}]", float(v)) for i, v in enumerate(value)]
    rows, cols = np.tril_indices(value.shape[0])
    return [(f"{name}[{i},{j}]", float(value[i, j])) for i, j in zip(rows, cols)]


@dataclass
class FitResult:
    param: Dict[str, object]
    optim: OptimizeResult
    approx: object
    eta_hat: Dict[object, Dict[str, object]]
    loglik: float
    diagnostics: List[SubjectDiagnostics]
    fixed: Dict[str, object]
    status: FitStage
    free_names: List[str]
    x: np.ndarray
    model: object = field(default=None, repr=False)
    population: object = field(default=None, repr=False)
    config: SolverConfig = field(default=None, repr=False)
    estimation: EstimationConfig = field(default=None, repr=False)

    @property
    def objective(self):
        """-2 log-likelihood."""
        return -2.0 * self.loglik

    @property
    def converged(self):
        return self.status is FitStage.Converged

    def coef_table(self) -> pd.DataFrame:
        rows = []
        for name, value in self.param.items():
            for label, v in flat_entries(name, value):
                rows.append({"parameter": label, "estimate": v, "fixed": name in self.fixed})
        return pd.DataFrame(rows)

    def to_pandas(self) -> pd.DataFrame:
        rows = []
        for diag in self.diagnostics:
            row = {"id": diag.subject_id}
            for name, value in self.eta_hat.get(diag.subject_id, {}).items():
                row.update(dict(flat_entries(name, value)))
            row.update({"converged": diag.converged, "n_iter": diag.n_iter,
                        "failed": diag.failed, "inner_objective": diag.inner_objective})
            rows.append(row)
        return pd.DataFrame(rows)


def _resolve_fixed(paramset, init_params, constantcoef, omegas, approx, model):
    if constantcoef is None:
        fixed = {}
    elif isinstance(constantcoef, Mapping):
        fixed = dict(constantcoef)
    else:
        fixed = {name: init_params[name] for name in constantcoef if name in init_params}
        missing = [name for name in constantcoef if name not in init_params]
        if missing:
            raise CompartmentLookupError(missing[0], paramset.names)
    for name, value in fixed.items():
        paramset[name].validate(value, name)

    if isinstance(approx, NaivePooled) and model.n_randeffs(init_params) > 0:
        if omegas is None:
            raise DataError(
                f"{approx.name} ignores the random effects; declare their variance parameters "
                "with `omegas` so they are held fixed", field="omegas",
            )
        for name in omegas:
            if name not in paramset:
                raise CompartmentLookupError(name, paramset.names)
            fixed.setdefault(name, init_params[name])
    free = [n for n in paramset.names if n not in fixed]
    if not free:
        raise DataError("every parameter is fixed, nothing to estimate", field="constantcoef")
    return fixed, free


def checkpoint_path(filename, iteration):
    base, ext = os.path.splitext(filename)
    return f"{base}__{iteration}{ext or '.jb'}"


def load_checkpoint(filename) -> Optional[dict]:
    """Latest checkpoint written for `filename`, or None."""
    base, ext = os.path.splitext(filename)
    pattern = re.compile(re.escape(os.path.basename(base)) + r"__(\d+)" + re.escape(ext or ".jb") + "$")
    found = []
    for path in glob.glob(f"{glob.escape(base)}__*{ext or '.jb'}"):
        m = pattern.search(os.path.basename(path))
        if m:
            found.append((int(m.group(1)), path))
    if not found:
        return None
    return load(max(found)[1])


class _IterationCallback:
    """Counts optimizer iterations, dumps checkpoints and forwards to user callbacks."""

    def __init__(self, engine, callbacks, checkpoint_filename, n_checkpoint, iteration=0):
        self.engine = engine
        self.callbacks = callbacks
        self.checkpoint_filename = checkpoint_filename
        self.n_checkpoint = n_checkpoint
        self.iteration = iteration

    def __call__(self, intermediate_result: OptimizeResult):
        self.iteration += 1
        x = np.asarray(intermediate_result.x, dtype=np.float64)
        fun = getattr(intermediate_result, "fun", None)
        if fun is None:
            fun = self.engine.objective(x)
        state = OptimizeResult(x=x, fun=float(fun), nit=self.iteration,
                               params=self.engine.params_from_x(x),
                               labels=self.engine.paramset.labels(self.engine.free_names))
        if self.checkpoint_filename and self.n_checkpoint > 0 and self.iteration % self.n_checkpoint == 0:
            path = checkpoint_path(self.checkpoint_filename, self.iteration)
            dump({"x": x, "iteration": self.iteration, "fun": float(fun)}, path)
            logger.info("iteration %d: objective %.6f, checkpoint saved to %s",
                        self.iteration, fun, path)
        for cb in self.callbacks:
            cb(state)


def _minimize(engine, x0, estimation, callback):
    method = estimation.optimizer_method
    kwargs = {"options": {"maxiter": estimation.outer_maxiter}}
    if method.lower() in GRADIENT_METHODS:
        kwargs["jac"] = engine.gradient
    if method.lower() in ("bfgs", "l-bfgs-b", "cg"):
        kwargs["options"]["gtol"] = estimation.outer_gtol
    return minimize(engine.objective, x0, method=method, callback=callback, **kwargs)


def _identification(engine, x, estimation):
    if not estimation.checkidentification:
        return
    g = engine.gradient(x)
    labels = engine.paramset.labels(engine.free_names)
    zero = [label for label, gi in zip(labels, g) if gi == 0.0]
    if not zero:
        return
    if estimation.checkidentification == "warn":
        warnings.warn(f"gradient is exactly zero for {zero}", IdentificationWarning)
        return
    raise IdentificationError(zero)


def _fit_single_subject(subject, model, init_params, fixed, free_names, config, estimation):
    engine = LikelihoodEngine(model, [subject], NaivePooled(), config, estimation,
                              free_names=free_names, fixed=fixed)
    res = _minimize(engine, engine.x_from_params(init_params), estimation, None)
    return res


def _fit_two_stage(model, population, init_params, fixed, free_names, config, estimation):
    inner = replace(estimation, n_jobs=1, verbose=False)
    results = Parallel(n_jobs=estimation.n_jobs, backend=estimation.backend)(
        delayed(_fit_single_subject)(subject, model, init_params, fixed, free_names, config, inner)
        for subject in population
    )
    xs = np.array([r.x for r in results])
    x_bar = xs.mean(axis=0)
    engine = LikelihoodEngine(model, population, TwoStage(), config, estimation,
                              free_names=free_names, fixed=fixed)
    individual = [engine.params_from_x(x) for x in xs]
    optim = OptimizeResult(
        x=x_bar,
        success=all(r.success for r in results),
        nit=max(int(getattr(r, "nit", 0)) for r in results),
        message="pooled individual estimates",
        individual=individual,
        individual_results=results,
    )
    optim.fun = engine.objective(x_bar)
    return engine, optim


def fit(model, population, init_params, approx, *, constantcoef=None, omegas=None,
        config: SolverConfig = None, estimation: EstimationConfig = None, optimize_fn=None,
        callback=None, cancel_event=None, checkpoint_filename=None,
        warm_start=False) -> FitResult:
    """Maximum likelihood fit of `model` to `population`.

    Args:
        init_params: starting values for every parameter of the model.
        approx: a likelihood approximation instance, class or name ("FOCEI", ...).
        constantcoef: parameters held out of the optimization, either a
            mapping of fixed values or a collection of names fixed at their
            initial values.
        omegas: names of the random-effect variance parameters; required by
            NaivePooled and TwoStage, which hold them fixed.
        optimize_fn: ``optimize_fn(objective, x0, gradient, callback)`` returning
            an `OptimizeResult`; defaults to `scipy.optimize.minimize`.
        callback: callable or list of callables receiving an `OptimizeResult`
            with ``x``, ``fun``, ``nit``, ``params`` and ``labels`` after each
            iteration.
        cancel_event: `threading.Event`; when set, evaluation stops at the
            next subject boundary with `CancellationSignal`.
        checkpoint_filename: joblib file written every
            ``estimation.n_checkpoint`` iterations. With `warm_start` the latest
            checkpoint is used as the starting point.
    """
    population = as_population(population)
    approx = get_approx(approx)
    config = SolverConfig() if config is None else config
    estimation = EstimationConfig() if estimation is None else estimation
    paramset = model.params
    init_params = dict(init_params)
    paramset.validate(init_params)
    fixed, free_names = _resolve_fixed(paramset, init_params, constantcoef, omegas, approx, model)

    stage = FitStage.Initial
    logger.info("fitting %s with %s: %d subjects, free parameters %s", model.name, approx.name,
                len(population), free_names)

    if isinstance(approx, TwoStage):
        stage = FitStage.Optimizing
        engine, optim = _fit_two_stage(model, population, init_params, fixed, free_names, config,
                                       estimation)
    else:
        engine = LikelihoodEngine(model, population, approx, config, estimation,
                                  free_names=free_names, fixed=fixed, cancel_event=cancel_event)
        x0 = engine.x_from_params(init_params)
        iteration = 0
        if warm_start and checkpoint_filename:
            checkpoint = load_checkpoint(checkpoint_filename)
            if checkpoint is not None and np.shape(checkpoint["x"]) == x0.shape:
                x0 = np.asarray(checkpoint["x"], dtype=np.float64)
                iteration = int(checkpoint["iteration"])
                logger.info("resuming optimization from iteration %d", iteration)
            else:
                logger.info("no checkpoint found, starting from the initial values")
        callbacks = [] if callback is None else (list(callback) if isinstance(callback, (list, tuple))
                                                 else [callback])
        iteration_cb = _IterationCallback(engine, callbacks, checkpoint_filename,
                                          estimation.n_checkpoint, iteration)
        stage = FitStage.Optimizing
        if optimize_fn is None:
            optim = _minimize(engine, x0, estimation, iteration_cb)
        else:
            optim = optimize_fn(engine.objective, x0, engine.gradient, iteration_cb)

    x_opt = np.asarray(optim.x, dtype=np.float64)
    params = engine.params_from_x(x_opt)
    loglik = -engine.objective(x_opt)
    if not isinstance(approx, TwoStage):
        _identification(engine, x_opt, estimation)

    stage = FitStage.Converged if getattr(optim, "success", False) else FitStage.Failed
    if stage is FitStage.Failed:
        logger.info("optimizer stopped without converging: %s", getattr(optim, "message", ""))
    logger.info("fit finished: loglik %.6f after %d evaluations", loglik, engine.n_evaluations)

    layout = model.randeff_layout(params)
    eta_hat = {s.id: layout.from_vector(eta) for s, eta in zip(population, engine.eta_hat)}
    return FitResult(
        param=params,
        optim=optim,
        approx=approx,
        eta_hat=eta_hat,
        loglik=loglik,
        diagnostics=list(engine.diagnostics),
        fixed=fixed,
        status=stage,
        free_names=free_names,
        x=x_opt,
        model=model,
        population=population,
        config=config,
        estimation=estimation,
    )


class NLMEEstimator(BaseEstimator):
    """scikit-learn style wrapper around `fit`.

    ``X`` is a `Population` (or a list of subjects); ``y`` is ignored since
    observations live on the subjects.
    """

    def __init__(self, model=None, approx="FOCEI", init_params=None, constantcoef=None,
                 omegas=None, significant_digits=None, config=None, estimation=None):
        self.model = model
        self.approx = approx
        self.init_params = init_params
        self.constantcoef = constantcoef
        self.omegas = omegas
        self.significant_digits = significant_digits
        self.config = config
        self.estimation = estimation

    def _configs(self):
        config, estimation = self.config, self.estimation
        if self.significant_digits is not None:
            config = config or SolverConfig.from_significant_digits(self.significant_digits)
            estimation = estimation or EstimationConfig.from_significant_digits(self.significant_digits)
        return config, estimation

    def fit(self, X, y=None, **fit_kwargs):
        if self.model is None:
            raise DataError("NLMEEstimator needs a model", field="model")
        config, estimation = self._configs()
        init = self.model.init_params() if self.init_params is None else self.init_params
        self.fit_result_ = fit(self.model, X, init, self.approx, constantcoef=self.constantcoef,
                               omegas=self.omegas, config=config, estimation=estimation,
                               **fit_kwargs)
        self.params_ = self.fit_result_.param
        return self

    def predict(self, X, individual=True):
        """Mean predictions; per-subject η̂ from the fit are used for subjects seen in `fit`."""
        check_is_fitted(self, "fit_result_")
        population = as_population(X)
        randeffs = None
        if individual:
            zero = self.model.zero_randeffs(self.params_)
            randeffs = [self.fit_result_.eta_hat.get(s.id, zero) for s in population]
        config, _ = self._configs()
        return predict_population(self.model, population, self.params_, randeffs, config=config)

    def score(self, X, y=None):
        """Marginal log-likelihood of `X` at the fitted parameters."""
        check_is_fitted(self, "fit_result_")
        config, estimation = self._configs()
        engine = LikelihoodEngine(self.model, X, self.fit_result_.approx, config, estimation)
        return engine.loglikelihood(self.params_)

    def save_fitted_model(self, filename):
        check_is_fitted(self, "fit_result_")
        dump(self, filename)
        return filename

    @staticmethod
    def load_fitted_model(filename) -> "NLMEEstimator":
        return load(filename)
