import os

import numpy as np
import pytest
from scipy.stats import norm

from nlmeode.config import EstimationConfig, SolverConfig
from nlmeode.covariates import Population, Subject
from nlmeode.domains import RealDomain
from nlmeode.dosing import DosageRegimen
from nlmeode.model import NLMEModel
from nlmeode.simulation import simulate

# Recent MLflow releases refuse the file-based tracking store unless opted in;
# the tracking tests log to a tmp_path file store.
os.environ.setdefault("MLFLOW_ALLOW_FILE_STORE", "true")


def one_cmt_pre(params, randeffs, covariates, t):
    return {"CL": params["tvcl"] * np.exp(randeffs["eta"]), "Vc": params["tvv"]}


def conc_derived(params, randeffs, pre, sol, t):
    conc = sol["Central"] / pre["Vc"]
    return {"conc": conc, "dv": norm(conc, params["sigma"])}


def eta_random(params):
    return {"eta": norm(0.0, np.sqrt(params["omega2"]))}


@pytest.fixture
def one_cmt_model():
    params = {
        "tvcl": RealDomain(lower=0.0, init=1.0),
        "tvv": RealDomain(lower=0.0, init=10.0),
        "omega2": RealDomain(lower=0.0, init=0.09),
        "sigma": RealDomain(lower=0.0, init=0.1),
    }
    return NLMEModel(params, one_cmt_pre, "Central1", conc_derived, random=eta_random,
                     name="one_cmt")


def linear_pre(params, randeffs, covariates, t):
    return {"CL": 1.0, "Vc": 1.0}


def linear_derived(params, randeffs, pre, sol, t):
    mean = np.full(np.shape(t), params["theta"] + randeffs.get("eta", 0.0))
    return {"dv": norm(mean, params["sigma"])}


@pytest.fixture
def linear_model():
    """Observations are theta + eta + noise, so FO is exact."""
    params = {
        "theta": RealDomain(init=2.0),
        "omega2": RealDomain(lower=0.0, init=0.5),
        "sigma": RealDomain(lower=0.0, init=0.3),
    }
    return NLMEModel(params, linear_pre, "Central1", linear_derived, random=eta_random,
                     name="linear")


@pytest.fixture
def linear_population(linear_model):
    rng = np.random.default_rng(11)
    times = np.array([1.0, 2.0, 3.0, 4.0])
    subjects = []
    for i in range(8):
        eta = rng.normal(0.0, np.sqrt(0.5))
        y = 2.0 + eta + rng.normal(0.0, 0.3, size=times.size)
        subjects.append(Subject(id=i + 1, time=times, observations={"dv": y}))
    return Population(subjects)


def observed_population(model, params, regimen, times, n, seed):
    """Simulate `n` subjects and return them as a population carrying the sampled dv."""
    template = Population([Subject(id=i + 1, events=regimen, time=times) for i in range(n)])
    results = simulate(model, template, params, seed=seed)
    return Population([
        Subject(id=r.subject_id, events=regimen, time=times, observations={"dv": r.derived["dv"]})
        for r in results
    ])


@pytest.fixture
def fast_estimation():
    return EstimationConfig(outer_maxiter=60, inner_maxiter=50, outer_gtol=1e-2)


@pytest.fixture
def tight_solver():
    return SolverConfig(rtol=1e-10, atol=1e-12)


@pytest.fixture
def bolus_regimen():
    return DosageRegimen(100.0)


@pytest.fixture
def make_observed():
    return observed_population
