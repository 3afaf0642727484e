import numpy as np
import pytest
from scipy.stats import norm
from sklearn.base import clone

from nlmeode.config import EstimationConfig
from nlmeode.covariates import Population, Subject
from nlmeode.domains import RealDomain
from nlmeode.dosing import DosageRegimen
from nlmeode.errors import DataError, IdentificationError, IdentificationWarning
from nlmeode.fit import FitStage, NLMEEstimator, checkpoint_path, fit, load_checkpoint
from nlmeode.likelihood import loglikelihood
from nlmeode.model import NLMEModel

TWO_CMT_TRUTH = {"tvcl": 2.0, "tvvc": 10.0, "tvq": 1.5, "tvvp": 20.0, "omega2": 0.1,
                 "sigma": 0.2}


def two_cmt_pre(params, randeffs, covariates, t):
    return {"CL": params["tvcl"] * np.exp(randeffs["eta"]), "Vc": params["tvvc"],
            "Q": params["tvq"], "Vp": params["tvvp"]}


def two_cmt_derived(params, randeffs, pre, sol, t):
    conc = sol["Central"] / pre["Vc"]
    return {"dv": norm(conc, params["sigma"])}


@pytest.fixture
def two_cmt_model():
    params = {
        "tvcl": RealDomain(lower=0.0, init=1.0),
        "tvvc": RealDomain(lower=0.0, init=8.0),
        "tvq": RealDomain(lower=0.0, init=1.5),
        "tvvp": RealDomain(lower=0.0, init=20.0),
        "omega2": RealDomain(lower=0.0, init=0.2),
        "sigma": RealDomain(lower=0.0, init=0.3),
    }
    return NLMEModel(params, two_cmt_pre, "Central1Periph1", two_cmt_derived,
                     random=lambda p: {"eta": norm(0.0, np.sqrt(p["omega2"]))}, name="two_cmt")


@pytest.fixture
def two_cmt_population(two_cmt_model, make_observed):
    times = np.array([1.0, 2.0, 4.0, 8.0, 12.0, 16.0, 24.0])
    return make_observed(two_cmt_model, TWO_CMT_TRUTH, DosageRegimen(150, rate=10, cmt=1), times,
                         n=10, seed=2024)


def test_focei_fit_recovers_the_simulated_parameters(two_cmt_model, two_cmt_population,
                                                     fast_estimation):
    init = two_cmt_model.init_params()
    start = loglikelihood(two_cmt_model, two_cmt_population, init, "FOCEI",
                          estimation=fast_estimation)
    trace = []
    result = fit(two_cmt_model, two_cmt_population, init, "FOCEI",
                 constantcoef=("tvq", "tvvp"), estimation=fast_estimation,
                 callback=trace.append)
    assert result.loglik > start
    assert result.status is FitStage.Converged
    assert result.param["tvcl"] == pytest.approx(TWO_CMT_TRUTH["tvcl"], rel=0.25)
    assert result.param["tvvc"] == pytest.approx(TWO_CMT_TRUTH["tvvc"], rel=0.2)
    assert result.param["tvq"] == init["tvq"]
    assert result.param["tvvp"] == init["tvvp"]
    assert result.free_names == ["tvcl", "tvvc", "omega2", "sigma"]
    assert set(result.eta_hat) == set(two_cmt_population.ids)
    assert result.objective == pytest.approx(-2 * result.loglik)
    assert trace and trace[-1].nit == len(trace)
    assert set(trace[-1].params) == set(init)

    coef = result.coef_table()
    assert list(coef["parameter"]) == list(init)
    assert coef.set_index("parameter").loc["tvq", "fixed"]
    per_subject = result.to_pandas()
    assert len(per_subject) == len(two_cmt_population)
    assert "eta" in per_subject.columns


def test_constantcoef_mapping_fixes_values(linear_model, linear_population):
    result = fit(linear_model, linear_population, linear_model.init_params(), "FO",
                 constantcoef={"omega2": 0.5})
    assert result.fixed == {"omega2": 0.5}
    assert result.param["omega2"] == 0.5
    assert result.param["theta"] == pytest.approx(np.mean(
        [s.observations["dv"].mean() for s in linear_population]), abs=0.05)


def test_unused_parameter_is_not_identified(linear_population):
    params = {"theta": RealDomain(init=2.0), "sigma": RealDomain(lower=0.0, init=0.3),
              "unused": RealDomain(lower=0.0, init=1.0)}
    model = NLMEModel(params, lambda p, r, c, t: {"CL": 1.0, "Vc": 1.0}, "Central1",
                      lambda p, r, pre, sol, t: {"dv": norm(np.full(np.shape(t), p["theta"]),
                                                            p["sigma"])})
    with pytest.raises(IdentificationError) as excinfo:
        fit(model, linear_population, model.init_params(), "FO")
    assert excinfo.value.param_names == ("unused",)

    with pytest.warns(IdentificationWarning):
        fit(model, linear_population, model.init_params(), "FO",
            estimation=EstimationConfig(checkidentification="warn"))
    result = fit(model, linear_population, model.init_params(), "FO",
                 estimation=EstimationConfig(checkidentification=False))
    assert result.param["unused"] == pytest.approx(1.0)


def test_naive_pooled_requires_omegas(linear_model, linear_population):
    with pytest.raises(DataError) as excinfo:
        fit(linear_model, linear_population, linear_model.init_params(), "NaivePooled")
    assert excinfo.value.field == "omegas"
    result = fit(linear_model, linear_population, linear_model.init_params(), "NaivePooled",
                 omegas=["omega2"])
    assert result.param["omega2"] == linear_model.init_params()["omega2"]


def test_two_stage_pools_individual_fits(linear_model, linear_population):
    result = fit(linear_model, linear_population, linear_model.init_params(), "TwoStage",
                 omegas=["omega2"], estimation=EstimationConfig(checkidentification=False))
    assert len(result.optim.individual) == len(linear_population)
    thetas = [p["theta"] for p in result.optim.individual]
    assert result.param["theta"] == pytest.approx(np.mean(thetas))


def test_everything_fixed_is_an_error(linear_model, linear_population):
    with pytest.raises(DataError):
        fit(linear_model, linear_population, linear_model.init_params(), "FO",
            constantcoef=["theta", "omega2", "sigma"])


def test_checkpoints_and_warm_start(linear_model, linear_population, tmp_path):
    filename = str(tmp_path / "fit.jb")
    estimation = EstimationConfig(n_checkpoint=1)
    first = fit(linear_model, linear_population, linear_model.init_params(), "FO",
                estimation=estimation, checkpoint_filename=filename)
    checkpoint = load_checkpoint(filename)
    assert checkpoint is not None
    assert checkpoint["iteration"] >= 1
    assert checkpoint_path(filename, 3).endswith("fit__3.jb")
    resumed = fit(linear_model, linear_population, linear_model.init_params(), "FO",
                  estimation=estimation, checkpoint_filename=filename, warm_start=True)
    assert resumed.loglik == pytest.approx(first.loglik, abs=1e-3)


def test_custom_optimizer(linear_model, linear_population):
    from scipy.optimize import minimize

    def nelder_mead(objective, x0, gradient, callback):
        return minimize(objective, x0, method="Nelder-Mead", callback=callback,
                        options={"maxiter": 400, "xatol": 1e-6, "fatol": 1e-8})

    result = fit(linear_model, linear_population, linear_model.init_params(), "FO",
                 optimize_fn=nelder_mead)
    reference = fit(linear_model, linear_population, linear_model.init_params(), "FO")
    assert result.loglik == pytest.approx(reference.loglik, abs=1e-2)


def test_estimator_wrapper(linear_model, linear_population, tmp_path):
    est = NLMEEstimator(model=linear_model, approx="FO", significant_digits=3)
    assert clone(est).get_params()["approx"] == "FO"
    est.fit(linear_population)
    assert set(est.params_) == set(linear_model.params.names)
    preds = est.predict(linear_population)
    assert [p.subject_id for p in preds] == linear_population.ids
    assert est.score(linear_population) == pytest.approx(est.fit_result_.loglik, rel=1e-6)

    path = est.save_fitted_model(str(tmp_path / "est.jb"))
    loaded = NLMEEstimator.load_fitted_model(path)
    assert loaded.params_ == pytest.approx(est.params_)

    new = Population([Subject(id="new", time=[1.0], observations={"dv": [2.0]})])
    assert est.predict(new)[0].derived["dv"][0] == pytest.approx(est.params_["theta"])
