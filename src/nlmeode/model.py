"""The NLME model object: parameters, random effects and the staged functions."""
from collections import OrderedDict
from typing import Callable, Dict, Mapping, NamedTuple, Optional, Tuple

import numpy as np
from scipy.linalg import block_diag

from .diffeqs import Dynamics, analytical
from .domains import ParamSet
from .errors import CompartmentLookupError, DataError


def _is_multivariate(dist):
    return hasattr(dist, "cov") and not callable(getattr(dist, "mean", None))


def randeff_size(dist) -> int:
    return len(np.atleast_1d(dist.mean)) if _is_multivariate(dist) else 1


class RandeffLayout(NamedTuple):
    """Names, sizes and shapes of the random effects, in stacking order."""

    names: Tuple[str, ...] = ()
    sizes: Tuple[int, ...] = ()
    multivariate: Tuple[bool, ...] = ()

    @property
    def size(self) -> int:
        return sum(self.sizes)

    def labels(self):
        out = []
        for name, size, mv in zip(self.names, self.sizes, self.multivariate):
            out.extend([f"{name}[{i}]" for i in range(size)] if mv else [name])
        return out

    def to_vector(self, randeffs) -> np.ndarray:
        if not self.names:
            return np.zeros(0)
        parts = []
        for name, size in zip(self.names, self.sizes):
            if name not in randeffs:
                raise CompartmentLookupError(name, list(randeffs))
            value = np.atleast_1d(np.asarray(randeffs[name], dtype=np.float64)).ravel()
            if value.size != size:
                raise DataError(f"random effect {name!r} has {value.size} entries, expected {size}",
                                field=name)
            parts.append(value)
        return np.concatenate(parts)

    def from_vector(self, eta) -> Dict[str, object]:
        eta = np.asarray(eta, dtype=np.float64)
        out = {}
        start = 0
        for name, size, mv in zip(self.names, self.sizes, self.multivariate):
            block = eta[start:start + size]
            out[name] = block.copy() if mv else float(block[0])
            start += size
        return out


class NLMEModel:
    """Declarative NLME model.

    The stages are plain functions with explicit arguments:

    * ``pre(params, randeffs, covariates, t) -> mapping`` individual parameters,
    * ``dosecontrol(pre) -> mapping`` with any of ``lags``, ``bioav``, ``rate``, ``duration``,
    * ``init(pre, t0) -> mapping`` initial state by name, omitted states start at zero,
    * ``derived(params, randeffs, pre, solution, t) -> mapping`` observed variables,
      each an array or a frozen `scipy.stats` distribution over the observation times,
    * ``random(params) -> mapping`` frozen distributions of the random effects.

    `dynamics` is either a `Dynamics` instance or the name of a closed-form
    kind such as ``"Central1Periph1"``.

    When `time_dependent_pre` is False and a subject has no time-varying
    covariates, `pre` is evaluated once per subject and reused everywhere.
    """

    def __init__(
        self,
        params,
        pre: Callable,
        dynamics,
        derived: Callable,
        random: Optional[Callable] = None,
        init: Optional[Callable] = None,
        dosecontrol: Optional[Callable] = None,
        time_dependent_pre: bool = False,
        name: str = None,
    ):
        self.params = params if isinstance(params, ParamSet) else ParamSet(params)
        if isinstance(dynamics, str):
            dynamics = analytical(dynamics)
        if not isinstance(dynamics, Dynamics):
            raise DataError(f"dynamics must be a Dynamics instance or a kind name, got {dynamics!r}",
                            field="dynamics")
        for stage, fn in (("pre", pre), ("derived", derived), ("random", random),
                          ("init", init), ("dosecontrol", dosecontrol)):
            if fn is not None and not callable(fn):
                raise DataError(f"{stage} must be callable", field=stage)
        self.pre = pre
        self.dynamics = dynamics
        self.derived = derived
        self.random = random
        self.init = init
        self.dosecontrol = dosecontrol
        self.time_dependent_pre = time_dependent_pre
        self.name = type(dynamics).__name__ if name is None else name

    @property
    def states(self):
        return self.dynamics.states

    def init_params(self) -> Dict[str, object]:
        return self.params.init()

    # random effects

    def randeff_dists(self, params) -> "OrderedDict[str, object]":
        if self.random is None:
            return OrderedDict()
        dists = self.random(params)
        if not isinstance(dists, Mapping):
            raise DataError("random must return a mapping of frozen distributions", field="random")
        return OrderedDict(dists)

    def randeff_layout(self, params, dists=None) -> RandeffLayout:
        dists = self.randeff_dists(params) if dists is None else dists
        return RandeffLayout(
            names=tuple(dists),
            sizes=tuple(randeff_size(d) for d in dists.values()),
            multivariate=tuple(_is_multivariate(d) for d in dists.values()),
        )

    def n_randeffs(self, params) -> int:
        return self.randeff_layout(params).size

    def randeff_logpdf(self, params, randeffs, dists=None) -> float:
        dists = self.randeff_dists(params) if dists is None else dists
        total = 0.0
        for name, dist in dists.items():
            total += float(np.sum(dist.logpdf(randeffs[name])))
        return total

    def randeff_moments(self, params, dists=None):
        """Mean vector and block-diagonal covariance of the stacked random effects."""
        dists = self.randeff_dists(params) if dists is None else dists
        means, blocks = [], []
        for dist in dists.values():
            if _is_multivariate(dist):
                means.append(np.atleast_1d(np.asarray(dist.mean, dtype=np.float64)))
                blocks.append(np.atleast_2d(np.asarray(dist.cov, dtype=np.float64)))
            else:
                means.append(np.array([float(dist.mean())]))
                blocks.append(np.array([[float(dist.var())]]))
        if not means:
            return np.zeros(0), np.zeros((0, 0))
        return np.concatenate(means), block_diag(*blocks)

    def sample_randeffs(self, params, rng) -> Dict[str, object]:
        out = {}
        for name, dist in self.randeff_dists(params).items():
            draw = dist.rvs(random_state=rng)
            out[name] = (np.atleast_1d(np.asarray(draw, dtype=np.float64))
                         if _is_multivariate(dist) else float(draw))
        return out

    def zero_randeffs(self, params) -> Dict[str, object]:
        dists = self.randeff_dists(params)
        mean, _ = self.randeff_moments(params, dists)
        return self.randeff_layout(params, dists).from_vector(mean)

    def __repr__(self):
        return f"NLMEModel({self.name}, params={self.params.names}, states={self.states})"
