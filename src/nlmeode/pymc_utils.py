"""MCMC over the population parameters with pymc, using the marginal likelihood as a potential."""
import logging
from dataclasses import dataclass, field

import numdifftools as nd
import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt
from pytensor.graph.op import Apply, Op

from .config import EstimationConfig, SolverConfig
from .covariates import as_population
from .domains import ConstrainedDomain
from .errors import SolverFailure
from .fit import _resolve_fixed, flat_entries
from .likelihood import LikelihoodEngine, get_approx

logger = logging.getLogger(__name__)


def _log_prior(engine, x):
    """Declared priors on the natural scale, carried to the unconstrained coordinates."""
    params = engine.params_from_x(x)
    total = 0.0
    for name, sl in engine.paramset.slices(engine.free_names).items():
        domain = engine.paramset[name]
        if isinstance(domain, ConstrainedDomain):
            total += domain.logpdf(params[name]) + domain.logjac(x[sl])
    return total


class _LogPosteriorGrad(Op):
    itypes = [pt.dvector]
    otypes = [pt.dvector]

    def __init__(self, engine):
        self.engine = engine
        self._prior_grad = nd.Gradient(lambda z: _log_prior(engine, z))

    def perform(self, node, inputs, outputs):
        (x,) = inputs
        try:
            g = -self.engine.gradient(x)
        except SolverFailure as e:
            logger.debug("gradient failed at %s: %s", x, e)
            g = np.zeros_like(x)
        if any(isinstance(self.engine.paramset[n], ConstrainedDomain) for n in self.engine.free_names):
            g = g + np.atleast_1d(self._prior_grad(x))
        outputs[0][0] = np.asarray(g, dtype=np.float64)


class LogPosterior(Op):
    """pytensor Op: unnormalized log posterior of the free parameters in unconstrained space.

    The likelihood is the engine's marginal approximation. Parameters
    declared with a `ConstrainedDomain` contribute their prior density plus
    the log-Jacobian of the transform; the others get a flat prior on the
    unconstrained scale.
    """

    itypes = [pt.dvector]
    otypes = [pt.dscalar]

    def __init__(self, engine, failure_penalty=None):
        self.engine = engine
        self.failure_penalty = (engine.estimation.failure_penalty if failure_penalty is None
                                else failure_penalty)
        self.grad_op = _LogPosteriorGrad(engine)

    def make_node(self, x):
        x = pt.as_tensor_variable(x)
        return Apply(self, [x], [pt.dscalar()])

    def perform(self, node, inputs, outputs):
        (x,) = inputs
        try:
            value = -self.engine.objective(x) + _log_prior(self.engine, x)
        except SolverFailure as e:
            logger.debug("log posterior failed at %s: %s", x, e)
            value = -self.failure_penalty
        outputs[0][0] = np.asarray(value, dtype=np.float64)

    def grad(self, inputs, output_gradients):
        (x,) = inputs
        return [output_gradients[0] * self.grad_op(x)]


def make_pymc_model(model, population, init_params, approx="FOCEI", *, constantcoef=None,
                    omegas=None, config: SolverConfig = None, estimation: EstimationConfig = None):
    """Build a `pm.Model` with one vector ``x`` of unconstrained free parameters.

    Returns the pymc model and the `LikelihoodEngine` behind its potential,
    which maps draws of ``x`` back to parameter dictionaries.
    """
    population = as_population(population)
    approx = get_approx(approx)
    init_params = dict(init_params)
    model.params.validate(init_params)
    fixed, free_names = _resolve_fixed(model.params, init_params, constantcoef, omegas, approx,
                                       model)
    engine = LikelihoodEngine(model, population, approx, config, estimation,
                              free_names=free_names, fixed=fixed)
    x0 = engine.x_from_params(init_params)
    logp = LogPosterior(engine)
    with pm.Model() as pm_model:
        x = pm.Flat("x", shape=x0.shape, initval=x0)
        pm.Potential("log_posterior", logp(x))
    return pm_model, engine


@dataclass
class BayesResult:
    idata: object
    engine: LikelihoodEngine = field(repr=False)
    labels: list = field(default_factory=list)

    def draws(self) -> pd.DataFrame:
        """Posterior draws on the natural scale, one row per chain and draw."""
        x = self.idata.posterior["x"].values
        rows = []
        for chain in range(x.shape[0]):
            for draw in range(x.shape[1]):
                params = self.engine.params_from_x(x[chain, draw])
                row = {"chain": chain, "draw": draw}
                for name in self.engine.free_names:
                    row.update(dict(flat_entries(name, params[name])))
                rows.append(row)
        return pd.DataFrame(rows)

    def summary(self) -> pd.DataFrame:
        df = self.draws().drop(columns=["chain", "draw"])
        return df.describe(percentiles=[0.025, 0.5, 0.975]).T


def fit_bayes(model, population, init_params, approx="FOCEI", *, draws=1000, tune=1000,
              chains=2, cores=1, random_seed=None, constantcoef=None, omegas=None,
              config: SolverConfig = None, estimation: EstimationConfig = None,
              progressbar=False, **sample_kwargs) -> BayesResult:
    """Sample the posterior of the free population parameters with NUTS."""
    pm_model, engine = make_pymc_model(model, population, init_params, approx,
                                       constantcoef=constantcoef, omegas=omegas, config=config,
                                       estimation=estimation)
    logger.info("sampling %d draws x %d chains for %s", draws, chains, engine.free_names)
    with pm_model:
        idata = pm.sample(draws=draws, tune=tune, chains=chains, cores=cores,
                          random_seed=random_seed, progressbar=progressbar,
                          compute_convergence_checks=False, **sample_kwargs)
    return BayesResult(idata=idata, engine=engine,
                       labels=engine.paramset.labels(engine.free_names))
