"""Marginal likelihood approximations and the population likelihood engine.

Each subject contributes ``log ∫ p(y | θ, η) p(η | θ) dη``. The
approximations differ in how the integral over the random effects η is
handled:

    FO           linearize the predictions at the random-effect mean
    FOCE         linearize at the conditional mode η̂, residual variance at the mean
    FOCEI        linearize at η̂, residual variance at η̂
    LaplaceI     Laplace approximation at η̂ with the full Hessian
    NaivePooled  ignore the random effects (η at their mean)
    TwoStage     per-subject NaivePooled fits, pooled by the fit driver

Inner mode searches use BFGS on central-difference gradients. Gradients of
the population objective with respect to the unconstrained parameter vector
are central differences summed over subjects, taken with η̂ held fixed plus
the implicit-function term for the movement of η̂ with the parameters.
"""
import logging
from dataclasses import dataclass
from functools import partial
from typing import List, Mapping, Optional

import numdifftools as nd
import numpy as np
from joblib import Parallel, delayed
from scipy.linalg import cho_factor, cho_solve
from scipy.optimize import minimize
from tqdm import tqdm

from .config import EstimationConfig, SolverConfig
from .covariates import as_population
from .errors import CancellationSignal, CompartmentLookupError, DataError, SolverFailure
from .pipeline import SubjectPipeline, is_distribution

logger = logging.getLogger(__name__)

LOG2PI = np.log(2 * np.pi)
# central-difference step for second derivatives
SECOND_ORDER_STEP = np.finfo(np.float64).eps ** 0.25


@dataclass
class SubjectDiagnostics:
    """Outcome of one subject's inner evaluation."""

    subject_id: object
    converged: bool = True
    n_iter: int = 0
    inner_objective: float = np.nan
    failed: bool = False
    message: str = ""


def gaussian_loglik(residuals, V):
    """log N(residuals; 0, V) through a Cholesky factorization of V."""
    n = len(residuals)
    if n == 0:
        return 0.0
    try:
        c, low = cho_factor(V, lower=True)
    except np.linalg.LinAlgError as e:
        raise SolverFailure("marginal covariance is not positive definite", recoverable=True) from e
    logdet = 2.0 * np.sum(np.log(np.diag(c)))
    quad = residuals @ cho_solve((c, low), residuals)
    return float(-0.5 * (n * LOG2PI + logdet + quad))


class SubjectObjective:
    """Conditional and prior log-densities of one subject as functions of the stacked η."""

    def __init__(self, model, subject, params, config: SolverConfig, estimation: EstimationConfig):
        self.model = model
        self.subject = subject
        self.params = params
        self.config = config
        self.estimation = estimation
        self.dists = model.randeff_dists(params)
        self.layout = model.randeff_layout(params, self.dists)
        self.mean, self.omega = model.randeff_moments(params, self.dists)

    @property
    def k(self):
        return self.layout.size

    def derived(self, eta):
        randeffs = self.layout.from_vector(eta)
        return SubjectPipeline(self.model, self.subject, self.params, randeffs, self.config).run().derived

    def _observed(self, derived):
        out = []
        for name, y in self.subject.observations.items():
            if name not in derived:
                continue
            dist = derived[name]
            if not is_distribution(dist):
                raise DataError(f"observed variable {name!r} must be derived as a distribution",
                                field=name, subject_id=self.subject.id)
            mask = ~np.isnan(y)
            if mask.any():
                out.append((name, dist, y, mask))
        return out

    def loglik(self, eta) -> float:
        """log p(y | θ, η)."""
        total = 0.0
        for _, dist, y, mask in self._observed(self.derived(eta)):
            lp = np.broadcast_to(dist.logpdf(np.where(mask, y, 0.0)), y.shape)
            total += float(np.sum(lp[mask]))
        return total

    def moments(self, eta):
        """Observed values with their conditional means and variances, concatenated."""
        ys, fs, rs = [], [], []
        for _, dist, y, mask in self._observed(self.derived(eta)):
            ys.append(y[mask])
            fs.append(np.broadcast_to(dist.mean(), y.shape)[mask])
            rs.append(np.broadcast_to(dist.var(), y.shape)[mask])
        if not ys:
            return np.zeros(0), np.zeros(0), np.zeros(0)
        return np.concatenate(ys), np.concatenate(fs), np.concatenate(rs)

    def records(self, eta):
        """(variable, time) labels in the order `moments` concatenates them."""
        names, times = [], []
        for name, _, y, mask in self._observed(self.derived(eta)):
            names.extend([name] * int(mask.sum()))
            times.append(self.subject.time[mask])
        return names, (np.concatenate(times) if times else np.zeros(0))

    def logprior(self, eta) -> float:
        if self.k == 0:
            return 0.0
        return self.model.randeff_logpdf(self.params, self.layout.from_vector(eta), self.dists)

    def jacobian(self, eta):
        """d mean / d η by central differences."""
        eta = np.asarray(eta, dtype=np.float64)
        step = self.estimation.fd_rel_step
        cols = []
        for i in range(self.k):
            h = step * (1.0 + abs(eta[i]))
            up, down = eta.copy(), eta.copy()
            up[i] += h
            down[i] -= h
            cols.append((self.moments(up)[1] - self.moments(down)[1]) / (2 * h))
        if not cols:
            return np.zeros((len(self.moments(eta)[0]), 0))
        return np.column_stack(cols)


def _central_gradient(fun, x, rel_step):
    g = np.zeros_like(x)
    for i in range(len(x)):
        h = rel_step * (1.0 + abs(x[i]))
        up, down = x.copy(), x.copy()
        up[i] += h
        down[i] -= h
        g[i] = (fun(up) - fun(down)) / (2 * h)
    return g


def find_mode(fun, eta0, estimation: EstimationConfig, subject_id=None):
    """Minimize `fun` over η with BFGS; recoverable solver failures become a large penalty."""
    penalty = estimation.failure_penalty

    def safe(eta):
        try:
            val = fun(eta)
        except SolverFailure as e:
            if not e.recoverable:
                raise
            return penalty
        return val if np.isfinite(val) else penalty

    res = minimize(
        safe,
        np.asarray(eta0, dtype=np.float64),
        jac=lambda eta: _central_gradient(safe, eta, estimation.fd_rel_step),
        method="BFGS",
        options={"maxiter": estimation.inner_maxiter, "gtol": estimation.inner_gtol},
    )
    diag = SubjectDiagnostics(subject_id=subject_id, converged=bool(res.success),
                              n_iter=int(res.nit), inner_objective=float(res.fun),
                              message=str(res.message))
    if not res.success:
        logger.debug("inner mode search for subject %r did not converge: %s", subject_id,
                     res.message)
    return res.x, diag


class LikelihoodApproximation:
    name = ""

    def evaluate(self, obj: SubjectObjective, eta0, estimation):
        """(loglik, η̂, diagnostics) for one subject."""
        eta_hat, diag = self.mode(obj, eta0, estimation)
        return self.marginal(obj, eta_hat), eta_hat, diag

    def mode(self, obj, eta0, estimation):
        inner = self.inner_objective(obj)
        if inner is None:
            return obj.mean.copy(), SubjectDiagnostics(obj.subject.id)
        return find_mode(inner, eta0, estimation, obj.subject.id)

    def inner_objective(self, obj):
        """Function of η minimized by the mode search, or None when η̂ is not searched for."""
        return None

    def marginal(self, obj, eta_hat) -> float:
        raise NotImplementedError

    def __repr__(self):
        return f"{self.name}()"

    def __eq__(self, other):
        return type(self) is type(other)

    def __hash__(self):
        return hash(self.name)


class FO(LikelihoodApproximation):
    name = "FO"

    def _linearization(self, obj):
        y, f0, r0 = obj.moments(obj.mean)
        J = obj.jacobian(obj.mean)
        V = J @ obj.omega @ J.T + np.diag(r0)
        return y - f0, J, V

    def marginal(self, obj, eta_hat):
        resid, _, V = self._linearization(obj)
        return gaussian_loglik(resid, V)

    def evaluate(self, obj, eta0, estimation):
        resid, J, V = self._linearization(obj)
        ll = gaussian_loglik(resid, V)
        # closed-form EBE of the linearized model
        eta_hat = obj.mean + obj.omega @ J.T @ np.linalg.solve(V, resid) if len(resid) else obj.mean
        return ll, eta_hat, SubjectDiagnostics(obj.subject.id)


class FOCE(LikelihoodApproximation):
    name = "FOCE"

    def inner_objective(self, obj):
        _, _, r0 = obj.moments(obj.mean)

        def neg_conditional(eta):
            y, f, _ = obj.moments(eta)
            return -(gaussian_loglik(y - f, np.diag(r0)) + obj.logprior(eta))

        return neg_conditional

    def _residual_variance(self, obj, eta_hat):
        return obj.moments(obj.mean)[2]

    def marginal(self, obj, eta_hat):
        y, f_hat, _ = obj.moments(eta_hat)
        r = self._residual_variance(obj, eta_hat)
        J = obj.jacobian(eta_hat)
        V = J @ obj.omega @ J.T + np.diag(r)
        return gaussian_loglik(y - f_hat + J @ (eta_hat - obj.mean), V)


class FOCEI(FOCE):
    name = "FOCEI"

    def inner_objective(self, obj):
        return lambda eta: -(obj.loglik(eta) + obj.logprior(eta))

    def _residual_variance(self, obj, eta_hat):
        return obj.moments(eta_hat)[2]


class LaplaceI(FOCEI):
    name = "LaplaceI"

    def marginal(self, obj, eta_hat):
        def neg_joint(eta):
            return -(obj.loglik(eta) + obj.logprior(eta))

        ell = -neg_joint(eta_hat)
        H = np.atleast_2d(nd.Hessian(neg_joint)(eta_hat))
        sign, logdet = np.linalg.slogdet(H)
        if sign <= 0 or not np.isfinite(logdet):
            raise SolverFailure("Hessian of the conditional density at the mode is not positive definite",
                                recoverable=True)
        return float(ell + 0.5 * obj.k * LOG2PI - 0.5 * logdet)


class NaivePooled(LikelihoodApproximation):
    name = "NaivePooled"

    def marginal(self, obj, eta_hat):
        return obj.loglik(obj.mean)


class TwoStage(NaivePooled):
    name = "TwoStage"


APPROXIMATIONS = {cls.name: cls for cls in (FO, FOCE, FOCEI, LaplaceI, NaivePooled, TwoStage)}


def get_approx(approx) -> LikelihoodApproximation:
    if isinstance(approx, LikelihoodApproximation):
        return approx
    if isinstance(approx, type) and issubclass(approx, LikelihoodApproximation):
        return approx()
    try:
        return APPROXIMATIONS[str(approx)]()
    except KeyError:
        raise CompartmentLookupError(approx, list(APPROXIMATIONS)) from None


def _evaluate(approx, obj, eta0, estimation):
    if obj.k == 0:
        return obj.loglik(obj.mean), obj.mean, SubjectDiagnostics(obj.subject.id)
    return approx.evaluate(obj, eta0, estimation)


def log_likelihood(model, subject, params, approx, *, eta_init=None, config: SolverConfig = None,
                   estimation: EstimationConfig = None):
    """One subject's marginal log-likelihood: ``(value, η̂, SubjectDiagnostics)``.

    A recoverable `SolverFailure` degrades the contribution to
    ``-estimation.failure_penalty`` and flags the diagnostics.
    """
    approx = get_approx(approx)
    config = SolverConfig() if config is None else config
    estimation = EstimationConfig() if estimation is None else estimation
    obj = SubjectObjective(model, subject, params, config, estimation)
    eta0 = obj.mean
    if eta_init is not None and np.shape(eta_init) == obj.mean.shape:
        eta0 = np.asarray(eta_init, dtype=np.float64)
    try:
        ll, eta_hat, diag = _evaluate(approx, obj, eta0, estimation)
    except SolverFailure as e:
        tagged = e.with_subject(subject.id)
        if not tagged.recoverable:
            raise tagged from e
        logger.debug("subject %r contributes a penalty: %s", subject.id, tagged)
        return (-estimation.failure_penalty, eta0,
                SubjectDiagnostics(subject.id, converged=False, failed=True, message=str(tagged)))
    if not np.isfinite(ll):
        diag.failed = True
        diag.message = f"non-finite log-likelihood {ll}"
        ll = -estimation.failure_penalty
    return float(ll), np.asarray(eta_hat, dtype=np.float64), diag


def marginal_at(model, subject, params, approx, eta_hat, *, config=None, estimation=None) -> float:
    """Marginal log-likelihood with η̂ held at `eta_hat` instead of re-solved."""
    approx = get_approx(approx)
    estimation = EstimationConfig() if estimation is None else estimation
    obj = SubjectObjective(model, subject, params, SolverConfig() if config is None else config,
                           estimation)
    try:
        if obj.k == 0:
            ll = obj.loglik(obj.mean)
        else:
            eta = obj.mean if eta_hat is None or np.shape(eta_hat) != obj.mean.shape else eta_hat
            ll = approx.marginal(obj, np.asarray(eta, dtype=np.float64))
    except SolverFailure as e:
        tagged = e.with_subject(subject.id)
        if not tagged.recoverable:
            raise tagged from e
        return -estimation.failure_penalty
    return float(ll) if np.isfinite(ll) else -estimation.failure_penalty


def _subject_loglik(subject, eta_init, model, params, approx, config, estimation):
    return log_likelihood(model, subject, params, approx, eta_init=eta_init, config=config,
                          estimation=estimation)


def _eta_sensitivity(model, subject, paramset, free_names, fixed, x, approx, eta_hat, config,
                     estimation):
    """Chain-rule term ``dL/dη̂ · dη̂/dx`` for a marginal evaluated at a fixed η̂.

    η̂ minimizes the inner objective ``f(η; x)``, so by the implicit function
    theorem ``dη̂/dx = -H⁻¹ ∂²f/∂η∂x`` with ``H = ∂²f/∂η²``.
    """
    zero = np.zeros_like(x)
    params = paramset.unflatten(x, free_names, fixed)
    obj = SubjectObjective(model, subject, params, config, estimation)
    inner = approx.inner_objective(obj)
    if inner is None or obj.k == 0 or eta_hat is None or np.shape(eta_hat) != obj.mean.shape:
        return zero
    eta_hat = np.asarray(eta_hat, dtype=np.float64)

    def inner_gradient(xp):
        shifted = SubjectObjective(model, subject, paramset.unflatten(xp, free_names, fixed),
                                   config, estimation)
        return _central_gradient(approx.inner_objective(shifted), eta_hat, SECOND_ORDER_STEP)

    try:
        dL_deta = _central_gradient(lambda eta: approx.marginal(obj, eta), eta_hat,
                                    SECOND_ORDER_STEP)
        H = np.atleast_2d(nd.Hessian(inner)(eta_hat))
        B = np.empty((obj.k, len(x)))
        for j in range(len(x)):
            h = SECOND_ORDER_STEP * (1.0 + abs(x[j]))
            up, down = x.copy(), x.copy()
            up[j] += h
            down[j] -= h
            B[:, j] = (inner_gradient(up) - inner_gradient(down)) / (2 * h)
        deta_dx = -np.linalg.solve(H, B)
    except SolverFailure as e:
        if not e.recoverable:
            raise
        logger.debug("no η̂ sensitivity for subject %r: %s", subject.id, e)
        return zero
    except np.linalg.LinAlgError:
        logger.debug("singular inner Hessian for subject %r", subject.id)
        return zero
    return dL_deta @ deta_dx


def _subject_gradient(subject, eta_state, model, paramset, free_names, fixed, x, approx, config,
                      estimation):
    eta_hat, failed = eta_state
    x = np.asarray(x, dtype=np.float64)

    def contribution(xp):
        params = paramset.unflatten(xp, free_names, fixed)
        if estimation.gradient_reoptimize_eta:
            return log_likelihood(model, subject, params, approx, eta_init=eta_hat, config=config,
                                  estimation=estimation)[0]
        return marginal_at(model, subject, params, approx, eta_hat, config=config,
                           estimation=estimation)

    g = _central_gradient(contribution, x, estimation.fd_rel_step)
    if estimation.gradient_reoptimize_eta or failed:
        return g
    return g + _eta_sensitivity(model, subject, paramset, free_names, fixed, x, approx, eta_hat,
                                config, estimation)


class LikelihoodEngine:
    """Population log-likelihood over the unconstrained vector of the free parameters.

    Keeps the per-subject η̂ of the last evaluation and warm-starts the next
    inner searches from them.
    """

    def __init__(self, model, population, approx, config: SolverConfig = None,
                 estimation: EstimationConfig = None, free_names=None,
                 fixed: Optional[Mapping[str, object]] = None, cancel_event=None):
        self.model = model
        self.population = as_population(population)
        self.approx = get_approx(approx)
        self.config = SolverConfig() if config is None else config
        self.estimation = EstimationConfig() if estimation is None else estimation
        self.paramset = model.params
        self.fixed = dict(fixed or {})
        self.free_names = ([n for n in self.paramset.names if n not in self.fixed]
                           if free_names is None else list(free_names))
        self.cancel_event = cancel_event
        n = len(self.population)
        self.eta_hat: List[Optional[np.ndarray]] = [None] * n
        self.diagnostics: List[Optional[SubjectDiagnostics]] = [None] * n
        self.subject_loglik = np.full(n, np.nan)
        self.n_evaluations = 0
        self._last = (None, None)

    def params_from_x(self, x):
        return self.paramset.unflatten(x, self.free_names, self.fixed)

    def x_from_params(self, params):
        return self.paramset.flatten(params, self.free_names)

    def _map(self, fn, per_subject):
        est = self.estimation
        iter_obj = zip(self.population, per_subject)
        if est.verbose:
            iter_obj = tqdm(iter_obj, total=len(self.population))

        def tasks():
            for subject, arg in iter_obj:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise CancellationSignal(subject.id)
                yield delayed(fn)(subject, arg)

        return Parallel(n_jobs=est.n_jobs, backend=est.backend)(tasks())

    def loglikelihood(self, params) -> float:
        fn = partial(_subject_loglik, model=self.model, params=params, approx=self.approx,
                     config=self.config, estimation=self.estimation)
        results = self._map(fn, self.eta_hat)
        for i, (ll, eta_hat, diag) in enumerate(results):
            self.subject_loglik[i] = ll
            self.eta_hat[i] = eta_hat
            self.diagnostics[i] = diag
        self.n_evaluations += 1
        n_bad = sum(1 for d in self.diagnostics if not d.converged or d.failed)
        if n_bad:
            logger.debug("%d of %d subjects flagged in evaluation %d", n_bad,
                         len(self.population), self.n_evaluations)
        return float(np.sum(self.subject_loglik))

    def objective(self, x) -> float:
        """Negative population log-likelihood at the unconstrained point `x`."""
        x = np.asarray(x, dtype=np.float64)
        value = -self.loglikelihood(self.params_from_x(x))
        self._last = (x.copy(), value)
        logger.debug("objective %.6f", value)
        return value

    def gradient(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        if self._last[0] is None or not np.array_equal(self._last[0], x):
            self.objective(x)
        fn = partial(_subject_gradient, model=self.model, paramset=self.paramset,
                     free_names=self.free_names, fixed=self.fixed, x=x, approx=self.approx,
                     config=self.config, estimation=self.estimation)
        states = [(eta, diag is not None and diag.failed)
                  for eta, diag in zip(self.eta_hat, self.diagnostics)]
        grads = self._map(fn, states)
        return -np.sum(grads, axis=0) if grads else np.zeros_like(x)

    def fixed_eta_subject_objectives(self, x) -> np.ndarray:
        """Per-subject negative log-likelihoods with every η̂ held at its last value."""
        params = self.params_from_x(np.asarray(x, dtype=np.float64))
        return np.array([
            -marginal_at(self.model, subject, params, self.approx, eta_hat, config=self.config,
                         estimation=self.estimation)
            for subject, eta_hat in zip(self.population, self.eta_hat)
        ])

    def fixed_eta_objective(self, x) -> float:
        return float(np.sum(self.fixed_eta_subject_objectives(x)))


def loglikelihood(model, population, params, approx, *, config: SolverConfig = None,
                  estimation: EstimationConfig = None, cancel_event=None) -> float:
    """Population marginal log-likelihood at `params`."""
    model.params.validate(params)
    engine = LikelihoodEngine(model, population, approx, config, estimation,
                              cancel_event=cancel_event)
    return engine.loglikelihood(params)
