import numpy as np
import pytest
from scipy.stats import norm

from nlmeode.config import SolverConfig
from nlmeode.covariates import Subject
from nlmeode.diffeqs import NumericalSystem, analytical
from nlmeode.domains import RealDomain
from nlmeode.dosing import DosageRegimen
from nlmeode.errors import CompartmentLookupError, DataError, NLMEError, SolverFailure
from nlmeode.model import NLMEModel
from nlmeode.pipeline import Stage, SubjectPipeline, solve

PARAMS = {"tvcl": 1.0, "tvv": 10.0, "omega2": 0.09, "sigma": 0.1}
ETA0 = {"eta": 0.0}
K = 0.1


def numerical_one_cmt(model):
    def rhs(u, pre, t):
        return np.array([-pre["CL"] / pre["Vc"] * u[0]])

    return NLMEModel(model.params, model.pre, NumericalSystem(rhs, ("Central",)), model.derived,
                     random=model.random, dosecontrol=model.dosecontrol, name="one_cmt_ode")


def test_bolus_decays_exponentially(one_cmt_model):
    times = np.array([0.0, 0.5, 1.0, 2.0, 8.0])
    subject = Subject(id=1, events=DosageRegimen(100.0), time=times)
    sol = solve(one_cmt_model, subject, PARAMS, ETA0)
    np.testing.assert_allclose(sol.trajectory["Central"], 100.0 * np.exp(-K * times), rtol=1e-10)
    np.testing.assert_allclose(sol.derived["conc"], 10.0 * np.exp(-K * times), rtol=1e-10)
    assert sol.derived["dv"].mean() == pytest.approx(sol.derived["conc"])
    assert sol.pre["CL"] == 1.0


def test_steady_state_peak_is_seen_at_the_dose_time(one_cmt_model):
    ii = 12.0
    subject = Subject(id=1, events=DosageRegimen(100.0, ii=ii, ss=1), time=[0.0, 6.0, 12.0])
    sol = solve(one_cmt_model, subject, PARAMS, ETA0)
    peak = 100.0 / (1.0 - np.exp(-K * ii))
    conc = sol.derived["conc"]
    assert conc[0] == pytest.approx(peak / 10.0)
    assert conc[1] == pytest.approx(peak * np.exp(-K * 6.0) / 10.0)
    assert conc[2] == pytest.approx(peak * np.exp(-K * ii) / 10.0)


def test_steady_state_matches_a_long_regimen(one_cmt_model):
    ii = 12.0
    long_run = Subject(id=1, events=DosageRegimen(100.0, ii=ii, addl=60), time=[60 * ii + 3.0])
    ss = Subject(id=2, events=DosageRegimen(100.0, time=60 * ii, ii=ii, ss=1),
                 time=[60 * ii + 3.0])
    a = solve(one_cmt_model, long_run, PARAMS, ETA0).trajectory["Central"]
    b = solve(one_cmt_model, ss, PARAMS, ETA0).trajectory["Central"]
    np.testing.assert_allclose(a, b, rtol=1e-8)


def test_analytical_and_numerical_agree(one_cmt_model, tight_solver):
    times = np.linspace(0.0, 24.0, 13)
    reg = DosageRegimen(DosageRegimen(100.0), DosageRegimen(50.0, time=6.0, rate=10.0))
    subject = Subject(id=1, events=reg, time=times)
    exact = solve(one_cmt_model, subject, PARAMS, ETA0, config=tight_solver)
    ode = solve(numerical_one_cmt(one_cmt_model), subject, PARAMS, ETA0, config=tight_solver)
    np.testing.assert_allclose(ode.trajectory.values, exact.trajectory.values, rtol=1e-6,
                               atol=1e-8)


def test_numerical_steady_state_uses_periodic_iteration(one_cmt_model, tight_solver):
    ii = 12.0
    subject = Subject(id=1, events=DosageRegimen(100.0, ii=ii, ss=1), time=[0.0, 6.0])
    ode = solve(numerical_one_cmt(one_cmt_model), subject, PARAMS, ETA0, config=tight_solver)
    peak = 100.0 / (1.0 - np.exp(-K * ii))
    assert ode.trajectory["Central"][0] == pytest.approx(peak, rel=1e-6)


def test_numerical_steady_state_failure_is_recoverable(one_cmt_model):
    subject = Subject(id=5, events=DosageRegimen(100.0, ii=12.0, ss=1), time=[1.0])
    model = numerical_one_cmt(one_cmt_model)
    with pytest.raises(SolverFailure) as excinfo:
        solve(model, subject, PARAMS, ETA0, config=SolverConfig(ss_max_iters=1))
    assert excinfo.value.recoverable
    assert excinfo.value.subject_id == 5
    with pytest.warns(RuntimeWarning):
        solve(model, subject, PARAMS, ETA0, config=SolverConfig(ss_max_iters=1, ss_fallback=True))


def test_infusion(one_cmt_model):
    subject = Subject(id=1, events=DosageRegimen(100.0, rate=10.0), time=[5.0, 10.0, 12.0])
    x = solve(one_cmt_model, subject, PARAMS, ETA0).trajectory["Central"]
    assert x[0] == pytest.approx(100.0 * (1 - np.exp(-0.5)))
    assert x[1] == pytest.approx(100.0 * (1 - np.exp(-1.0)))
    assert x[2] == pytest.approx(100.0 * (1 - np.exp(-1.0)) * np.exp(-0.2))


def test_steady_state_infusion(one_cmt_model):
    subject = Subject(id=1, events=DosageRegimen(0.0, rate=10.0, ss=1), time=[0.0, 50.0])
    x = solve(one_cmt_model, subject, PARAMS, ETA0).trajectory["Central"]
    np.testing.assert_allclose(x, [100.0, 100.0])


def test_reset_clears_the_state(one_cmt_model):
    reg = DosageRegimen(DosageRegimen(100.0), DosageRegimen(0.0, time=5.0, evid=3))
    subject = Subject(id=1, events=reg, time=[4.0, 5.0, 6.0])
    x = solve(one_cmt_model, subject, PARAMS, ETA0).trajectory["Central"]
    assert x[0] == pytest.approx(100.0 * np.exp(-0.4))
    np.testing.assert_array_equal(x[1:], [0.0, 0.0])


def test_reset_and_dose_replaces_the_state(one_cmt_model):
    reg = DosageRegimen(DosageRegimen(100.0), DosageRegimen(50.0, time=5.0, evid=4))
    subject = Subject(id=1, events=reg, time=[4.0, 5.0, 6.0])
    x = solve(one_cmt_model, subject, PARAMS, ETA0).trajectory["Central"]
    np.testing.assert_allclose(x, [100.0 * np.exp(-0.4), 50.0, 50.0 * np.exp(-K)], rtol=1e-10)


def test_additive_steady_state_keeps_the_current_amount(one_cmt_model):
    ii = 12.0
    reg = DosageRegimen(DosageRegimen(100.0), DosageRegimen(100.0, time=5.0, ii=ii, ss=2))
    replaced = DosageRegimen(DosageRegimen(100.0), DosageRegimen(100.0, time=5.0, ii=ii, ss=1))
    peak = 100.0 / (1.0 - np.exp(-K * ii))
    additive = solve(one_cmt_model, Subject(id=1, events=reg, time=[5.0, 7.0]), PARAMS, ETA0)
    plain = solve(one_cmt_model, Subject(id=2, events=replaced, time=[5.0, 7.0]), PARAMS, ETA0)
    np.testing.assert_allclose(plain.trajectory["Central"], peak * np.exp(-K * np.array([0.0, 2.0])))
    np.testing.assert_allclose(additive.trajectory["Central"],
                               (peak + 100.0 * np.exp(-0.5)) * np.exp(-K * np.array([0.0, 2.0])))


@pytest.mark.parametrize("numerical", [False, True])
def test_repeated_observation_times(one_cmt_model, tight_solver, numerical):
    model = numerical_one_cmt(one_cmt_model) if numerical else one_cmt_model
    times = np.array([1.0, 2.0, 2.0, 3.0])
    subject = Subject(id=1, events=DosageRegimen(100.0), time=times,
                      observations={"dv": [9.0, 8.1, 8.3, 7.4]})
    sol = solve(model, subject, PARAMS, ETA0, config=tight_solver)
    x = sol.trajectory["Central"]
    np.testing.assert_allclose(x, 100.0 * np.exp(-K * times), rtol=1e-7)
    assert x[1] == x[2]


def test_lag_delays_the_dose(one_cmt_model):
    model = NLMEModel(one_cmt_model.params, one_cmt_model.pre, "Central1", one_cmt_model.derived,
                      random=one_cmt_model.random, dosecontrol=lambda pre: {"lags": 2.0})
    subject = Subject(id=1, events=DosageRegimen(100.0), time=[1.0, 3.0])
    x = solve(model, subject, PARAMS, ETA0).trajectory["Central"]
    assert x[0] == 0.0
    assert x[1] == pytest.approx(100.0 * np.exp(-K))


def test_absorption_with_bioavailability():
    params = {"ka": RealDomain(lower=0.0, init=1.0), "cl": RealDomain(lower=0.0, init=1.0)}

    def pre(p, randeffs, covariates, t):
        return {"Ka": p["ka"], "CL": p["cl"], "Vc": 10.0}

    model = NLMEModel(params, pre, "Depots1Central1",
                      lambda p, r, pre, sol, t: {"amount": sol["Depot"] + sol["Central"]},
                      dosecontrol=lambda pre: {"bioav": {"Depot": 0.5}})
    subject = Subject(id=1, events=DosageRegimen(100.0, cmt="Depot"), time=[0.0, 2.0])
    sol = solve(model, subject, model.init_params())
    assert sol.trajectory["Depot"][0] == pytest.approx(50.0)
    assert sol.trajectory["Depot"][1] == pytest.approx(50.0 * np.exp(-2.0))
    assert sol.derived["amount"][1] < 50.0


def test_time_varying_covariate_switches_clearance():
    params = {"tvcl": RealDomain(lower=0.0, init=1.0)}

    def pre(p, randeffs, covariates, t):
        return {"CL": p["tvcl"] * covariates["wt"] / 70.0, "Vc": 10.0}

    model = NLMEModel(params, pre, "Central1", lambda p, r, pre, sol, t: {"cl": pre["CL"]})
    subject = Subject(id=1, events=DosageRegimen(100.0), time=[4.0, 8.0],
                      covariates={"wt": ([0.0, 5.0], [70.0, 140.0])})
    sol = solve(model, subject, model.init_params())
    x = sol.trajectory["Central"]
    assert x[0] == pytest.approx(100.0 * np.exp(-0.4))
    assert x[1] == pytest.approx(100.0 * np.exp(-0.5) * np.exp(-0.2 * 3.0))
    np.testing.assert_allclose(sol.derived["cl"], [1.0, 2.0])


def test_init_sets_the_starting_state(one_cmt_model):
    model = NLMEModel(one_cmt_model.params, one_cmt_model.pre, "Central1", one_cmt_model.derived,
                      random=one_cmt_model.random, init=lambda pre, t0: {"Central": 20.0})
    subject = Subject(id=1, time=[0.0, 10.0])
    x = solve(model, subject, PARAMS, ETA0).trajectory["Central"]
    np.testing.assert_allclose(x, [20.0, 20.0 * np.exp(-1.0)])


def test_unknown_dose_compartment(one_cmt_model):
    subject = Subject(id=1, events=DosageRegimen(100.0, cmt="Depot"), time=[1.0])
    with pytest.raises(CompartmentLookupError):
        solve(one_cmt_model, subject, PARAMS, ETA0)


def test_missing_pre_value_names_it(one_cmt_model):
    model = NLMEModel(one_cmt_model.params, lambda p, r, c, t: {"CL": 1.0}, "Central1",
                      one_cmt_model.derived)
    with pytest.raises(CompartmentLookupError) as excinfo:
        solve(model, Subject(id=1, events=DosageRegimen(1.0), time=[1.0]), PARAMS)
    assert excinfo.value.name == "Vc"


def test_pipeline_stages_and_errored_state(one_cmt_model):
    subject = Subject(id=1, events=DosageRegimen(100.0), time=[1.0])
    pipe = SubjectPipeline(one_cmt_model, subject, PARAMS, ETA0)
    assert pipe.stage is Stage.Init
    pipe.run()
    assert pipe.stage is Stage.Done

    model = NLMEModel(one_cmt_model.params, one_cmt_model.pre, "Central1",
                      lambda p, r, pre, sol, t: [sol["Central"]], random=one_cmt_model.random)
    pipe = SubjectPipeline(model, subject, PARAMS, ETA0)
    with pytest.raises(DataError):
        pipe.run()
    assert pipe.stage is Stage.Errored
    with pytest.raises(NLMEError):
        pipe.run()


def test_obstimes_override(one_cmt_model):
    subject = Subject(id=1, events=DosageRegimen(100.0), time=[1.0])
    sol = solve(one_cmt_model, subject, PARAMS, ETA0, obstimes=[0.0, 2.0, 4.0])
    assert sol.trajectory.values.shape == (3, 1)
    with pytest.raises(DataError):
        solve(one_cmt_model, subject, PARAMS, ETA0, obstimes=[2.0, 1.0])


def test_analytical_lookup():
    assert analytical("Central1Periph1").states == ("Central", "Peripheral")
    with pytest.raises(CompartmentLookupError):
        analytical("Central3")


def test_derived_distribution_is_kept(one_cmt_model):
    subject = Subject(id=1, events=DosageRegimen(100.0), time=[1.0, 2.0])
    sol = solve(one_cmt_model, subject, PARAMS, ETA0)
    dv = sol.derived["dv"]
    assert dv.logpdf(sol.derived["conc"]) == pytest.approx(norm(0, 0.1).logpdf([0.0, 0.0]))
