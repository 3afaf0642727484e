"""Per-subject covariate series and the Subject / Population containers."""
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Dict, Literal, Optional, Tuple

import numpy as np
import pandas as pd

from .dosing import DosageRegimen, normalize
from .errors import CompartmentLookupError, DataError

Direction = Literal["right", "left"]


def _readonly(arr):
    arr = np.array(arr, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


class CovariateSeries:
    """Piecewise-constant covariate observed on its own time grid.

    With ``direction="right"`` a value holds from its observation time
    forward; with ``"left"`` it holds backward to the previous observation
    time. Queries outside the grid return the first or last value.
    """

    def __init__(self, times, values, direction: Direction = "right"):
        if direction not in ("right", "left"):
            raise DataError(f"direction must be 'right' or 'left', got {direction!r}",
                            field="direction")
        times = np.asarray(times, dtype=np.float64).ravel()
        values = list(np.atleast_1d(values)) if np.ndim(values) <= 1 else list(values)
        if len(times) != len(values) or len(times) == 0:
            raise DataError(
                f"covariate needs one value per time, got {len(times)} times and {len(values)} values",
                field="covariates",
            )
        order = np.argsort(times, kind="stable")
        self.times = _readonly(times[order])
        self.values = tuple(values[i] for i in order)
        self.direction = direction

    def _index(self, t):
        n = len(self.times)
        if self.direction == "right":
            k = int(np.searchsorted(self.times, t, side="right")) - 1
        else:
            k = int(np.searchsorted(self.times, t, side="left"))
        return min(max(k, 0), n - 1)

    def value_at(self, t):
        return self.values[self._index(t)]

    def change_times(self) -> np.ndarray:
        """Times at which the interpolated value switches."""
        out = []
        for k in range(1, len(self.times)):
            if np.all(np.asarray(self.values[k]) == np.asarray(self.values[k - 1])):
                continue
            # right: new value starts at t_k; left: old value ends at t_{k-1}
            out.append(self.times[k] if self.direction == "right" else self.times[k - 1])
        return np.asarray(out, dtype=np.float64)

    @property
    def is_time_varying(self):
        return len(self.change_times()) > 0

    def __repr__(self):
        return f"CovariateSeries(n={len(self.times)}, direction={self.direction!r})"


@dataclass
class Subject:
    """One individual: dosing history, covariates and observations.

    `observations` maps a derived-variable name to an array aligned with
    `time`; use NaN for missing samples.
    """

    id: object
    events: Optional[DosageRegimen] = None
    covariates: Mapping[str, object] = field(default_factory=dict)
    time: Optional[np.ndarray] = None
    observations: Mapping[str, np.ndarray] = field(default_factory=dict)
    covariates_direction: Direction = "right"

    def __post_init__(self):
        if self.events is not None:
            self.events = normalize(self.events)
        time = np.zeros(0) if self.time is None else np.asarray(self.time, dtype=np.float64).ravel()
        if np.any(np.diff(time) < 0):
            raise DataError("observation times must be non-decreasing", field="time",
                            subject_id=self.id)
        self.time = _readonly(time)

        obs = {}
        for name, values in dict(self.observations).items():
            arr = np.array([np.nan if v is None else v for v in np.atleast_1d(values)],
                           dtype=np.float64)
            if arr.shape != self.time.shape:
                raise DataError(
                    f"observation {name!r} has {arr.size} values for {self.time.size} times",
                    field=name, subject_id=self.id,
                )
            obs[name] = _readonly(arr)
        self.observations = obs

        covs = {}
        for name, cov in dict(self.covariates).items():
            if isinstance(cov, CovariateSeries):
                covs[name] = cov
            elif isinstance(cov, Mapping):
                covs[name] = CovariateSeries(cov["time"], cov["value"],
                                             cov.get("direction", self.covariates_direction))
            elif isinstance(cov, tuple) and len(cov) == 2:
                covs[name] = CovariateSeries(cov[0], cov[1], self.covariates_direction)
            else:
                covs[name] = cov
        self.covariates = covs

    @property
    def dose_events(self):
        return () if self.events is None else self.events.events

    def covariates_at(self, t) -> Dict[str, object]:
        return {name: (cov.value_at(t) if isinstance(cov, CovariateSeries) else cov)
                for name, cov in self.covariates.items()}

    def covariate(self, name, t):
        if name not in self.covariates:
            raise CompartmentLookupError(name, list(self.covariates), subject_id=self.id)
        cov = self.covariates[name]
        return cov.value_at(t) if isinstance(cov, CovariateSeries) else cov

    @property
    def has_time_varying_covariates(self):
        return any(isinstance(c, CovariateSeries) and c.is_time_varying
                   for c in self.covariates.values())

    def covariate_change_times(self) -> np.ndarray:
        times = [c.change_times() for c in self.covariates.values()
                 if isinstance(c, CovariateSeries)]
        if not times:
            return np.zeros(0)
        return np.unique(np.concatenate(times))

    def observations_frame(self) -> pd.DataFrame:
        df = pd.DataFrame({"id": self.id, "time": self.time})
        for name, values in self.observations.items():
            df[name] = values
        return df


class Population(Sequence):
    """Ordered, id-unique collection of subjects."""

    def __init__(self, subjects):
        subjects = tuple(subjects)
        for s in subjects:
            if not isinstance(s, Subject):
                raise DataError(f"expected Subject, got {type(s).__name__}", field="population")
        ids = [s.id for s in subjects]
        if len(set(ids)) != len(ids):
            dupes = sorted({str(i) for i in ids if ids.count(i) > 1})
            raise DataError(f"subject ids must be unique, duplicated: {dupes}", field="id")
        self._subjects: Tuple[Subject, ...] = subjects

    def __getitem__(self, idx):
        if isinstance(idx, slice):
            return Population(self._subjects[idx])
        return self._subjects[idx]

    def __len__(self):
        return len(self._subjects)

    @property
    def ids(self):
        return [s.id for s in self._subjects]

    def __repr__(self):
        return f"Population({len(self)} subjects)"


def as_population(population) -> Population:
    if isinstance(population, Population):
        return population
    if isinstance(population, Subject):
        return Population([population])
    return Population(population)
