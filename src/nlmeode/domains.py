"""Constrained parameter domains and their unconstrained transforms.

Every domain maps a concrete parameter value to a flat real vector and back.
The fit driver optimizes in that unconstrained space, so whatever trial point
the optimizer proposes, the pipeline only ever sees values inside the domain.
"""
import abc
from collections import OrderedDict
from typing import Dict, List, Mapping

import numpy as np
from scipy.special import expit, logit

from .errors import CompartmentLookupError, DataError


def _interval_to_unconstrained(v, lower, upper):
    v = np.asarray(v, dtype=np.float64)
    lo_fin = np.isfinite(lower)
    up_fin = np.isfinite(upper)
    out = np.array(v, dtype=np.float64, copy=True)
    both = lo_fin & up_fin
    only_lo = lo_fin & ~up_fin
    only_up = ~lo_fin & up_fin
    out[both] = logit((v[both] - lower[both]) / (upper[both] - lower[both]))
    out[only_lo] = np.log(v[only_lo] - lower[only_lo])
    out[only_up] = np.log(upper[only_up] - v[only_up])
    return out


def _interval_from_unconstrained(x, lower, upper):
    x = np.asarray(x, dtype=np.float64)
    lo_fin = np.isfinite(lower)
    up_fin = np.isfinite(upper)
    out = np.array(x, dtype=np.float64, copy=True)
    both = lo_fin & up_fin
    only_lo = lo_fin & ~up_fin
    only_up = ~lo_fin & up_fin
    out[both] = lower[both] + (upper[both] - lower[both]) * expit(x[both])
    out[only_lo] = lower[only_lo] + np.exp(x[only_lo])
    out[only_up] = upper[only_up] - np.exp(x[only_up])
    return out


def _interval_logjac(x, lower, upper):
    x = np.asarray(x, dtype=np.float64)
    lo_fin = np.isfinite(lower)
    up_fin = np.isfinite(upper)
    both = lo_fin & up_fin
    one_sided = lo_fin ^ up_fin
    lj = np.sum(x[one_sided])
    xb = x[both]
    lj += np.sum(np.log(upper[both] - lower[both]) - np.logaddexp(0, -xb) - np.logaddexp(0, xb))
    return float(lj)


def _default_interval_init(lower, upper):
    init = np.zeros_like(lower, dtype=np.float64)
    for i, (lo, up) in enumerate(zip(lower, upper)):
        if np.isfinite(lo) and np.isfinite(up):
            init[i] = 0.5 * (lo + up)
        elif np.isfinite(lo):
            init[i] = lo + 1.0
        elif np.isfinite(up):
            init[i] = up - 1.0
    return init


class Domain(abc.ABC):
    """A parameter space with a membership predicate and an unconstrained transform."""

    init = None

    @property
    @abc.abstractmethod
    def size(self) -> int:
        """Length of the unconstrained vector."""

    @abc.abstractmethod
    def contains(self, value) -> bool:
        pass

    @abc.abstractmethod
    def to_unconstrained(self, value) -> np.ndarray:
        pass

    @abc.abstractmethod
    def from_unconstrained(self, x):
        pass

    def logjac(self, x) -> float:
        """log |d from_unconstrained(x) / dx|."""
        return 0.0

    def validate(self, value, name="param"):
        if not self.contains(value):
            raise DataError(
                f"value {value!r} is outside of {self!r}", field=name
            )
        return value


class RealDomain(Domain):
    def __init__(self, lower=-np.inf, upper=np.inf, init=None):
        if not lower < upper:
            raise DataError(f"lower bound {lower} must be below upper bound {upper}",
                            field="lower")
        self.lower = float(lower)
        self.upper = float(upper)
        self.init = (float(_default_interval_init(np.array([self.lower]), np.array([self.upper]))[0])
                     if init is None else float(init))
        self.validate(self.init, "init")

    @property
    def size(self):
        return 1

    def contains(self, value):
        if not np.isscalar(value) and np.ndim(value) != 0:
            return False
        return bool(self.lower <= float(value) <= self.upper)

    def to_unconstrained(self, value):
        return _interval_to_unconstrained(np.array([value]), np.array([self.lower]),
                                          np.array([self.upper]))

    def from_unconstrained(self, x):
        x = np.atleast_1d(x)
        return float(_interval_from_unconstrained(x[:1], np.array([self.lower]),
                                                  np.array([self.upper]))[0])

    def logjac(self, x):
        return _interval_logjac(np.atleast_1d(x)[:1], np.array([self.lower]),
                                np.array([self.upper]))

    def __repr__(self):
        return f"RealDomain(lower={self.lower}, upper={self.upper}, init={self.init})"


class VectorDomain(Domain):
    def __init__(self, n=None, lower=-np.inf, upper=np.inf, init=None):
        if n is None:
            candidates = [np.size(a) for a in (lower, upper, init)
                          if a is not None and np.ndim(a) > 0]
            if not candidates:
                raise DataError("could not infer the vector length, pass `n`", field="n")
            n = candidates[0]
        self.n = int(n)
        self.lower = np.broadcast_to(np.asarray(lower, dtype=np.float64), (self.n,)).copy()
        self.upper = np.broadcast_to(np.asarray(upper, dtype=np.float64), (self.n,)).copy()
        if np.any(self.lower >= self.upper):
            raise DataError("every lower bound must be below its upper bound", field="lower")
        self.init = (_default_interval_init(self.lower, self.upper) if init is None
                     else np.broadcast_to(np.asarray(init, dtype=np.float64), (self.n,)).copy())
        self.validate(self.init, "init")

    @property
    def size(self):
        return self.n

    def contains(self, value):
        value = np.asarray(value, dtype=np.float64)
        if value.shape != (self.n,):
            return False
        return bool(np.all((self.lower <= value) & (value <= self.upper)))

    def to_unconstrained(self, value):
        return _interval_to_unconstrained(np.asarray(value, dtype=np.float64),
                                          self.lower, self.upper)

    def from_unconstrained(self, x):
        return _interval_from_unconstrained(np.asarray(x, dtype=np.float64), self.lower, self.upper)

    def logjac(self, x):
        return _interval_logjac(x, self.lower, self.upper)

    def __repr__(self):
        return f"VectorDomain(n={self.n})"


class PSDDomain(Domain):
    """Symmetric positive-definite matrices, parameterized by a log-diagonal Cholesky factor."""

    def __init__(self, n=None, init=None):
        if init is None and n is None:
            raise DataError("PSDDomain needs either `n` or `init`", field="n")
        if init is None:
            init = np.eye(int(n))
        init = np.atleast_2d(np.asarray(init, dtype=np.float64))
        self.n = init.shape[0] if n is None else int(n)
        self.init = init
        self._tril = np.tril_indices(self.n)
        self.validate(self.init, "init")

    @property
    def size(self):
        return self.n * (self.n + 1) // 2

    def contains(self, value):
        value = np.asarray(value, dtype=np.float64)
        if value.shape != (self.n, self.n) or not np.allclose(value, value.T):
            return False
        try:
            np.linalg.cholesky(value)
        except np.linalg.LinAlgError:
            return False
        return True

    def to_unconstrained(self, value):
        L = np.linalg.cholesky(np.asarray(value, dtype=np.float64))
        L[np.diag_indices(self.n)] = np.log(np.diag(L))
        return L[self._tril].copy()

    def _cholesky(self, x):
        L = np.zeros((self.n, self.n), dtype=np.float64)
        L[self._tril] = x
        L[np.diag_indices(self.n)] = np.exp(np.diag(L))
        return L

    def from_unconstrained(self, x):
        L = self._cholesky(np.asarray(x, dtype=np.float64))
        return L @ L.T

    def logjac(self, x):
        L = self._cholesky(np.asarray(x, dtype=np.float64))
        k = np.arange(self.n)
        return float(self.n * np.log(2.0) + np.sum((self.n - k + 1) * np.log(np.diag(L))))

    def __repr__(self):
        return f"PSDDomain(n={self.n})"


class PDiagDomain(Domain):
    """Diagonal matrices with a strictly positive diagonal."""

    def __init__(self, n=None, init=None):
        if init is None and n is None:
            raise DataError("PDiagDomain needs either `n` or `init`", field="n")
        if init is None:
            init = np.ones(int(n))
        init = np.asarray(init, dtype=np.float64)
        if init.ndim == 1:
            init = np.diag(init)
        self.n = init.shape[0]
        self.init = init
        self.validate(self.init, "init")

    @property
    def size(self):
        return self.n

    def contains(self, value):
        value = np.asarray(value, dtype=np.float64)
        if value.shape != (self.n, self.n):
            return False
        off_diag = value - np.diag(np.diag(value))
        return bool(np.all(np.diag(value) > 0) and np.all(off_diag == 0))

    def to_unconstrained(self, value):
        return np.log(np.diag(np.asarray(value, dtype=np.float64)))

    def from_unconstrained(self, x):
        return np.diag(np.exp(np.asarray(x, dtype=np.float64)))

    def logjac(self, x):
        return float(np.sum(x))

    def __repr__(self):
        return f"PDiagDomain(n={self.n})"


class ConstrainedDomain(Domain):
    """A parameter carrying a `scipy.stats` prior; its support defines the domain."""

    def __init__(self, dist, init=None):
        self.dist = dist
        mean = dist.mean
        self._multivariate = hasattr(dist, "cov") and not callable(mean)
        if self._multivariate:
            self.n = len(np.atleast_1d(mean))
            self.lower = np.full(self.n, -np.inf)
            self.upper = np.full(self.n, np.inf)
            self.init = np.asarray(mean if init is None else init, dtype=np.float64)
        else:
            self.n = 1
            a, b = dist.support()
            self.lower = np.array([a], dtype=np.float64)
            self.upper = np.array([b], dtype=np.float64)
            if init is None:
                init = dist.mean()
                if not np.isfinite(init):
                    init = dist.median()
            self.init = float(init)
        self.validate(self.init, "init")

    @property
    def size(self):
        return self.n

    def contains(self, value):
        value = np.atleast_1d(np.asarray(value, dtype=np.float64))
        if value.shape != (self.n,):
            return False
        return bool(np.all((self.lower <= value) & (value <= self.upper))
                    and np.isfinite(self.logpdf(value if self._multivariate else value[0])))

    def logpdf(self, value):
        return float(np.sum(self.dist.logpdf(value)))

    def to_unconstrained(self, value):
        return _interval_to_unconstrained(np.atleast_1d(np.asarray(value, dtype=np.float64)),
                                          self.lower, self.upper)

    def from_unconstrained(self, x):
        v = _interval_from_unconstrained(np.atleast_1d(x), self.lower, self.upper)
        return v if self._multivariate else float(v[0])

    def logjac(self, x):
        return _interval_logjac(np.atleast_1d(x), self.lower, self.upper)

    def __repr__(self):
        return f"ConstrainedDomain({self.dist.dist.name if hasattr(self.dist, 'dist') else self.dist})"


class ParamSet:
    """Ordered mapping of parameter names to domains.

    Flattens parameter dictionaries into the unconstrained optimization
    vector, honoring a subset of free names so fixed parameters can be
    held out of the vector.
    """

    def __init__(self, domains: Mapping[str, Domain]):
        self.domains: Dict[str, Domain] = OrderedDict()
        for name, dom in domains.items():
            if not isinstance(dom, Domain):
                raise DataError(f"parameter {name!r} must be declared with a Domain, got {dom!r}",
                                field=name)
            self.domains[name] = dom

    @property
    def names(self) -> List[str]:
        return list(self.domains)

    def __contains__(self, name):
        return name in self.domains

    def __getitem__(self, name):
        try:
            return self.domains[name]
        except KeyError:
            raise CompartmentLookupError(name, self.names) from None

    def init(self) -> Dict[str, object]:
        return {name: (np.copy(dom.init) if isinstance(dom.init, np.ndarray) else dom.init)
                for name, dom in self.domains.items()}

    def validate(self, params: Mapping[str, object]):
        for name in params:
            if name not in self.domains:
                raise CompartmentLookupError(name, self.names)
        for name, dom in self.domains.items():
            if name not in params:
                raise CompartmentLookupError(name, list(params))
            dom.validate(params[name], name)
        return params

    def slices(self, names=None) -> Dict[str, slice]:
        names = self.names if names is None else names
        out = OrderedDict()
        start = 0
        for name in names:
            size = self[name].size
            out[name] = slice(start, start + size)
            start += size
        return out

    def size(self, names=None) -> int:
        names = self.names if names is None else names
        return sum(self[name].size for name in names)

    def flatten(self, params: Mapping[str, object], names=None) -> np.ndarray:
        names = self.names if names is None else names
        if not names:
            return np.zeros(0, dtype=np.float64)
        return np.concatenate([np.atleast_1d(self[name].to_unconstrained(params[name]))
                               for name in names]).astype(np.float64)

    def unflatten(self, x, names=None, fixed: Mapping[str, object] = None) -> Dict[str, object]:
        names = self.names if names is None else names
        fixed = {} if fixed is None else fixed
        x = np.asarray(x, dtype=np.float64)
        if x.shape != (self.size(names),):
            raise DataError(f"expected a vector of length {self.size(names)}, got shape {x.shape}",
                            field="x")
        out = {}
        sl = self.slices(names)
        for name in self.names:
            if name in sl:
                out[name] = self.domains[name].from_unconstrained(x[sl[name]])
            elif name in fixed:
                out[name] = fixed[name]
            else:
                raise CompartmentLookupError(name, list(fixed))
        return out

    def logjac(self, x, names=None) -> float:
        names = self.names if names is None else names
        return sum(self[name].logjac(x[s]) for name, s in self.slices(names).items())

    def prior_logpdf(self, params: Mapping[str, object]) -> float:
        total = 0.0
        for name, dom in self.domains.items():
            if isinstance(dom, ConstrainedDomain):
                total += dom.logpdf(params[name])
        return total

    def labels(self, names=None) -> List[str]:
        """One label per unconstrained coordinate, e.g. ``Ω[2]``."""
        names = self.names if names is None else names
        out = []
        for name in names:
            size = self[name].size
            out.extend([name] if size == 1 else [f"{name}[{i}]" for i in range(size)])
        return out
