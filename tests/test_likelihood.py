import threading

import numpy as np
import pytest
from scipy.stats import multivariate_normal, norm

from nlmeode.config import EstimationConfig, SolverConfig
from nlmeode.covariates import Subject
from nlmeode.diffeqs import NumericalSystem
from nlmeode.domains import RealDomain
from nlmeode.dosing import DosageRegimen
from nlmeode.errors import CancellationSignal, CompartmentLookupError, DataError
from nlmeode.likelihood import (FO, FOCE, FOCEI, LaplaceI, LikelihoodEngine, NaivePooled,
                                gaussian_loglik, get_approx, log_likelihood, loglikelihood)
from nlmeode.model import NLMEModel

LINEAR_PARAMS = {"theta": 2.0, "omega2": 0.5, "sigma": 0.3}


def exact_linear_loglik(subject, params):
    y = subject.observations["dv"]
    n = len(y)
    cov = params["omega2"] * np.ones((n, n)) + params["sigma"] ** 2 * np.eye(n)
    return multivariate_normal(np.full(n, params["theta"]), cov).logpdf(y)


def test_gaussian_loglik_matches_scipy():
    V = np.array([[2.0, 0.3], [0.3, 1.0]])
    r = np.array([0.4, -1.1])
    assert gaussian_loglik(r, V) == pytest.approx(multivariate_normal(np.zeros(2), V).logpdf(r))
    assert gaussian_loglik(np.zeros(0), np.zeros((0, 0))) == 0.0


@pytest.mark.parametrize("approx", [FO(), FOCE(), FOCEI()])
def test_linear_gaussian_model_is_exact(linear_model, linear_population, approx):
    subject = linear_population[0]
    ll, eta_hat, diag = log_likelihood(linear_model, subject, LINEAR_PARAMS, approx)
    assert ll == pytest.approx(exact_linear_loglik(subject, LINEAR_PARAMS), rel=1e-6)
    assert not diag.failed
    # posterior mean of eta for the linear model
    y = subject.observations["dv"]
    n = len(y)
    post = LINEAR_PARAMS["omega2"] * np.sum(y - 2.0) / (n * LINEAR_PARAMS["omega2"] + 0.09)
    assert eta_hat[0] == pytest.approx(post, abs=1e-3)


def test_laplace_is_exact_for_the_linear_model(linear_model, linear_population):
    subject = linear_population[1]
    ll, _, _ = log_likelihood(linear_model, subject, LINEAR_PARAMS, LaplaceI())
    assert ll == pytest.approx(exact_linear_loglik(subject, LINEAR_PARAMS), rel=1e-4)


def test_naive_pooled_uses_the_mean(linear_model, linear_population):
    subject = linear_population[2]
    ll, eta_hat, _ = log_likelihood(linear_model, subject, LINEAR_PARAMS, "NaivePooled")
    y = subject.observations["dv"]
    assert ll == pytest.approx(norm(2.0, 0.3).logpdf(y).sum())
    np.testing.assert_array_equal(eta_hat, [0.0])


def test_missing_observations_are_skipped(linear_model):
    full = Subject(id=1, time=[1.0, 2.0, 3.0], observations={"dv": [2.5, 1.0, 1.7]})
    holes = Subject(id=1, time=[1.0, 2.0, 3.0, 4.0], observations={"dv": [2.5, np.nan, 1.0, 1.7]})
    a = log_likelihood(linear_model, full, LINEAR_PARAMS, FO())[0]
    b = log_likelihood(linear_model, holes, LINEAR_PARAMS, FO())[0]
    assert a == pytest.approx(b)


def test_population_loglik_is_a_sum(linear_model, linear_population):
    total = loglikelihood(linear_model, linear_population, LINEAR_PARAMS, "FO")
    expected = sum(exact_linear_loglik(s, LINEAR_PARAMS) for s in linear_population)
    assert total == pytest.approx(expected, rel=1e-6)


def test_model_without_random_effects(linear_population):
    params = {"theta": RealDomain(init=2.0), "sigma": RealDomain(lower=0.0, init=0.3)}
    model = NLMEModel(params, lambda p, r, c, t: {"CL": 1.0, "Vc": 1.0}, "Central1",
                      lambda p, r, pre, sol, t: {"dv": norm(np.full(np.shape(t), p["theta"]),
                                                            p["sigma"])})
    subject = linear_population[0]
    for approx in ("FO", "FOCEI", "LaplaceI"):
        ll, eta_hat, _ = log_likelihood(model, subject, {"theta": 2.0, "sigma": 0.3}, approx)
        assert ll == pytest.approx(norm(2.0, 0.3).logpdf(subject.observations["dv"]).sum())
        assert eta_hat.shape == (0,)


def test_solver_failure_becomes_a_penalty(one_cmt_model):
    def rhs(u, pre, t):
        return np.array([-pre["CL"] / pre["Vc"] * u[0]])

    model = NLMEModel(one_cmt_model.params, one_cmt_model.pre, NumericalSystem(rhs, ("Central",)),
                      one_cmt_model.derived, random=one_cmt_model.random)
    subject = Subject(id=3, events=DosageRegimen(100.0, ii=12.0, ss=1), time=[1.0, 2.0],
                      observations={"dv": [8.0, 7.0]})
    params = {"tvcl": 1.0, "tvv": 10.0, "omega2": 0.09, "sigma": 0.1}
    ll, _, diag = log_likelihood(model, subject, params, FO(), config=SolverConfig(ss_max_iters=1),
                                 estimation=EstimationConfig(failure_penalty=1e8))
    assert ll == -1e8
    assert diag.failed and "subject 3" in diag.message


def test_observed_variable_must_be_a_distribution(one_cmt_model):
    subject = Subject(id=1, events=DosageRegimen(100.0), time=[1.0], observations={"conc": [9.0]})
    with pytest.raises(DataError) as excinfo:
        log_likelihood(one_cmt_model, subject, {"tvcl": 1.0, "tvv": 10.0, "omega2": 0.09,
                                                "sigma": 0.1}, FO())
    assert excinfo.value.field == "conc"


def test_engine_warm_starts_and_gradient(linear_model, linear_population):
    engine = LikelihoodEngine(linear_model, linear_population, FOCEI(),
                              free_names=["theta", "sigma"], fixed={"omega2": 0.5})
    x = engine.x_from_params(LINEAR_PARAMS)
    value = engine.objective(x)
    assert value == pytest.approx(-sum(exact_linear_loglik(s, LINEAR_PARAMS)
                                       for s in linear_population), rel=1e-6)
    assert all(eta is not None for eta in engine.eta_hat)
    g = engine.gradient(x)
    h = 1e-5
    numeric = np.array([(engine.objective(x + h * e) - engine.objective(x - h * e)) / (2 * h)
                        for e in np.eye(len(x))])
    np.testing.assert_allclose(g, numeric, rtol=1e-3, atol=1e-4)


def test_engine_cancellation(linear_model, linear_population):
    event = threading.Event()
    event.set()
    engine = LikelihoodEngine(linear_model, linear_population, FO(), cancel_event=event)
    with pytest.raises(CancellationSignal):
        engine.loglikelihood(LINEAR_PARAMS)


def test_get_approx():
    assert get_approx("FOCEI") == FOCEI()
    assert isinstance(get_approx(NaivePooled), NaivePooled)
    with pytest.raises(CompartmentLookupError):
        get_approx("SAEM")


def test_engine_is_deterministic_across_n_jobs(linear_model, linear_population):
    serial = LikelihoodEngine(linear_model, linear_population, FOCE())
    threaded = LikelihoodEngine(linear_model, linear_population, FOCE(),
                                estimation=EstimationConfig(n_jobs=2, backend="threading"))
    assert serial.loglikelihood(LINEAR_PARAMS) == threaded.loglikelihood(LINEAR_PARAMS)


@pytest.mark.parametrize("approx", ["FOCE", "FOCEI"])
def test_gradient_follows_the_mode_for_a_nonlinear_model(one_cmt_model, make_observed, approx):
    truth = {"tvcl": 1.0, "tvv": 10.0, "omega2": 0.09, "sigma": 0.1}
    pop = make_observed(one_cmt_model, truth, DosageRegimen(100.0),
                        np.array([1.0, 2.0, 4.0, 8.0, 12.0]), n=6, seed=5)
    engine = LikelihoodEngine(one_cmt_model, pop, approx,
                              estimation=EstimationConfig(inner_gtol=1e-8))
    x = engine.x_from_params({"tvcl": 1.3, "tvv": 9.0, "omega2": 0.15, "sigma": 0.15})
    g = engine.gradient(x)
    numeric = []
    for e in np.eye(len(x)):
        h = 1e-4 * (1.0 + abs(x @ e))
        numeric.append((engine.objective(x + h * e) - engine.objective(x - h * e)) / (2 * h))
    np.testing.assert_allclose(g, numeric, rtol=5e-3, atol=1e-3)

    reoptimized = LikelihoodEngine(one_cmt_model, pop, approx,
                                   estimation=EstimationConfig(inner_gtol=1e-8,
                                                               gradient_reoptimize_eta=True))
    np.testing.assert_allclose(reoptimized.gradient(x), numeric, rtol=5e-2, atol=5e-2)
