"""Population simulation: an order-preserving parallel map of the subject pipeline."""
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from .config import SolverConfig
from .covariates import as_population
from .errors import CancellationSignal, DataError, SolverFailure
from .pipeline import SubjectPipeline, is_distribution

logger = logging.getLogger(__name__)


@dataclass
class SimulationResult:
    subject_id: object
    times: np.ndarray
    derived: Dict[str, np.ndarray] = field(default_factory=dict)
    predictions: Dict[str, np.ndarray] = field(default_factory=dict)
    trajectory: Dict[str, np.ndarray] = field(default_factory=dict)
    randeffs: Dict[str, object] = field(default_factory=dict)
    error: Optional[Exception] = None

    @property
    def ok(self):
        return self.error is None

    def to_pandas(self) -> pd.DataFrame:
        df = pd.DataFrame({"id": [self.subject_id] * len(self.times), "time": self.times})
        for name, values in self.trajectory.items():
            df[name] = values
        for name, values in self.predictions.items():
            df[f"{name}_pred"] = values
        for name, values in self.derived.items():
            df[name] = values
        for name, value in self.randeffs.items():
            if np.ndim(value) == 0:
                df[name] = value
            else:
                for i, v in enumerate(np.ravel(value)):
                    df[f"{name}[{i}]"] = v
        return df


def simulations_to_pandas(results: Sequence[SimulationResult]) -> pd.DataFrame:
    frames = [r.to_pandas() for r in results if r.ok]
    if not frames:
        return pd.DataFrame(columns=["id", "time"])
    return pd.concat(frames, ignore_index=True)


def subject_seeds(seed, n) -> List[np.random.SeedSequence]:
    """One independent `SeedSequence` per subject."""
    if isinstance(seed, np.random.Generator):
        seed = np.random.SeedSequence(seed.integers(0, 2 ** 63 - 1, size=4))
    elif not isinstance(seed, np.random.SeedSequence):
        seed = np.random.SeedSequence(seed)
    return seed.spawn(n)


def sample_randeffs(model, params, n, rng=None) -> List[Dict[str, object]]:
    """Draw `n` independent sets of random effects from ``model.random(params)``."""
    rng = np.random.default_rng(rng)
    return [model.sample_randeffs(params, rng) for _ in range(n)]


def _per_subject_randeffs(randeffs, population):
    """Align a randeffs argument with the population order."""
    n = len(population)
    if randeffs is None:
        return [None] * n
    if isinstance(randeffs, Mapping):
        ids = population.ids
        if randeffs and all(k in ids for k in randeffs):
            missing = [i for i in ids if i not in randeffs]
            if missing:
                raise DataError(f"randeffs missing for subjects {missing}", field="randeffs")
            return [randeffs[i] for i in ids]
        return [randeffs] * n
    if isinstance(randeffs, Sequence) and not isinstance(randeffs, str):
        if len(randeffs) != n:
            raise DataError(f"got {len(randeffs)} randeffs for {n} subjects", field="randeffs")
        return list(randeffs)
    raise DataError(f"cannot use {type(randeffs).__name__} as randeffs", field="randeffs")


def _simulate_subject(model, subject, params, randeffs, seed_seq, config, obstimes, strict,
                      sample):
    rng = np.random.default_rng(seed_seq)
    if randeffs is None:
        randeffs = model.sample_randeffs(params, rng) if sample else model.zero_randeffs(params)
    times = subject.time if obstimes is None else np.asarray(obstimes, dtype=np.float64)
    try:
        sol = SubjectPipeline(model, subject, params, randeffs, config, times).run()
    except SolverFailure as e:
        if strict:
            raise
        logger.info("simulation failed for subject %r: %s", subject.id, e)
        return SimulationResult(subject_id=subject.id, times=np.asarray(times, dtype=np.float64),
                                randeffs=randeffs, error=e)

    derived, predictions = {}, {}
    for name, value in sol.derived.items():
        if is_distribution(value):
            predictions[name] = np.broadcast_to(np.asarray(value.mean(), dtype=np.float64),
                                                sol.times.shape).copy()
            if sample:
                draw = value.rvs(random_state=rng)
                derived[name] = np.broadcast_to(np.asarray(draw, dtype=np.float64),
                                                sol.times.shape).copy()
            else:
                derived[name] = predictions[name]
        else:
            predictions[name] = value
            derived[name] = value
    return SimulationResult(
        subject_id=subject.id,
        times=sol.times,
        derived=derived,
        predictions=predictions,
        trajectory=sol.trajectory.as_dict(),
        randeffs=randeffs,
    )


def _run(model, population, params, randeffs, seed, config, n_jobs, strict, obstimes, sample,
         backend, verbose, cancel_event):
    population = as_population(population)
    model.params.validate(params)
    config = SolverConfig() if config is None else config
    seeds = subject_seeds(seed, len(population))
    per_subject = _per_subject_randeffs(randeffs, population)

    iter_obj = zip(population, per_subject, seeds)
    if verbose:
        iter_obj = tqdm(iter_obj, total=len(population))

    def tasks():
        for subject, eta, seed_seq in iter_obj:
            if cancel_event is not None and cancel_event.is_set():
                raise CancellationSignal(subject.id)
            yield delayed(_simulate_subject)(model, subject, params, eta, seed_seq, config,
                                             obstimes, strict, sample)

    return Parallel(n_jobs=n_jobs, backend=backend)(tasks())


def simulate(model, population, params, randeffs=None, *, seed=None, rng=None,
             config: SolverConfig = None, n_jobs: int = 1, strict: bool = False, obstimes=None,
             backend="loky", verbose=False, cancel_event=None) -> List[SimulationResult]:
    """Simulate every subject of `population` under `params`.

    Random effects not given in `randeffs` are sampled, and derived
    distributions are sampled with a generator private to each subject, so a
    fixed `seed` reproduces the result whatever `n_jobs` is. `randeffs` may
    be one mapping shared by every subject, a list aligned with the
    population, or a mapping keyed by subject id.

    Results come back in population order. A `SolverFailure` is stored on
    the subject's result unless `strict` is set.
    """
    if rng is not None and seed is not None:
        raise DataError("pass either seed or rng, not both", field="seed")
    return _run(model, population, params, randeffs, seed if rng is None else rng, config,
                n_jobs, strict, obstimes, True, backend, verbose, cancel_event)


def predict(model, population, params, randeffs=None, *, config: SolverConfig = None,
            n_jobs: int = 1, strict: bool = False, obstimes=None, backend="loky",
            verbose=False) -> List[SimulationResult]:
    """Mean predictions; without `randeffs` these are population predictions at the random-effect means."""
    return _run(model, population, params, randeffs, 0, config, n_jobs, strict, obstimes, False,
                backend, verbose, None)
