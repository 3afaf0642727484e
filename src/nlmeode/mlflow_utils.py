import ast
import hashlib
import inspect
import logging
import re
import textwrap

import mlflow
import numpy as np
import pandas as pd
from scipy.optimize import OptimizeResult

from .fit import flat_entries

logger = logging.getLogger(__name__)

_INVALID_METRIC_CHARS = re.compile(r"[^\w\-. /]")


class _DocstringRemover(ast.NodeTransformer):
    """
    An AST transformer that drops the docstrings of classes and functions.
    """

    def _strip(self, node):
        if ast.get_docstring(node, clean=False) is not None:
            if node.body and isinstance(node.body[0], ast.Expr):
                node.body = node.body[1:] or [ast.Pass()]
        self.generic_visit(node)
        return node

    def visit_ClassDef(self, node: ast.ClassDef) -> ast.ClassDef:
        return self._strip(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.FunctionDef:
        return self._strip(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AsyncFunctionDef:
        return self._strip(node)


def source_without_docstrings(obj) -> str | None:
    """
    Source text of a function or class with docstrings and comments removed.

    Comments disappear as a side effect of the parse/unparse round trip.
    Returns None when the source is not available (builtins, lambdas defined
    in a REPL, dynamically generated code).
    """
    try:
        source_text = inspect.getsource(obj)
    except (TypeError, OSError) as e:
        logger.debug("no source for %r: %s", obj, e)
        return None
    try:
        tree = ast.parse(textwrap.dedent(source_text))
    except SyntaxError as e:
        # lambdas inside expressions cannot be parsed on their own
        logger.debug("could not parse source of %r: %s", obj, e)
        return source_text.strip()
    tree = _DocstringRemover().visit(tree)
    ast.fix_missing_locations(tree)
    return ast.unparse(tree)


def contents_hash(text: str) -> str:
    hasher = hashlib.sha256()
    hasher.update(text.encode("utf-8"))
    return hasher.hexdigest()


def model_fingerprint(model) -> str:
    """SHA256 over the model's stage functions and dynamics.

    Editing a docstring or a comment leaves the fingerprint unchanged.
    """
    parts = [model.name or "", type(model.dynamics).__name__, ",".join(model.states)]
    for stage in (model.pre, model.derived, model.random, model.init, model.dosecontrol,
                  getattr(model.dynamics, "rhs", None)):
        if stage is None:
            parts.append("-")
            continue
        src = source_without_docstrings(stage)
        parts.append(src if src is not None else getattr(stage, "__qualname__", repr(stage)))
    parts.extend(f"{name}:{type(domain).__name__}" for name, domain in model.params.domains.items())
    return contents_hash("\n".join(parts))


def metric_name(label: str) -> str:
    """MLflow-safe metric name for a parameter label such as ``Ω[1,0]``."""
    return _INVALID_METRIC_CHARS.sub("_", label).strip("_")


def correlation_entries(name, value):
    """Standard deviations and lower-triangle correlations of a covariance matrix."""
    cov = np.asarray(value, dtype=np.float64)
    sd = np.sqrt(np.diag(cov))
    corr = cov / np.outer(sd, sd)
    entries = [(f"{name}_sd[{i}]", float(s)) for i, s in enumerate(sd)]
    rows, cols = np.tril_indices(cov.shape[0], k=-1)
    entries.extend((f"{name}_corr[{i},{j}]", float(corr[i, j])) for i, j in zip(rows, cols))
    return entries


class IterationTrace:
    """Optimizer callback keeping one row per iteration: objective and natural-scale parameters."""

    def __init__(self, objective_name: str = "neg_loglik"):
        self.objective_name = objective_name
        self.iteration = 0
        self._rows = []
        self._cache_df = pd.DataFrame()

    def _entries(self, params):
        entries = []
        for name, value in params.items():
            entries.extend(flat_entries(name, value))
            if np.ndim(value) == 2 and np.shape(value)[0] > 1:
                entries.extend(correlation_entries(name, value))
        return entries

    def __call__(self, intermediate_result: OptimizeResult):
        self.iteration = int(getattr(intermediate_result, "nit", self.iteration + 1))
        row = {"iteration": self.iteration, self.objective_name: float(intermediate_result.fun)}
        row.update(self._entries(intermediate_result.params))
        self._rows.append(row)
        self._cache_df = pd.DataFrame()
        return row

    def to_pandas(self) -> pd.DataFrame:
        if self._cache_df.empty and self._rows:
            self._cache_df = pd.DataFrame(self._rows)
        return self._cache_df


class MLflowCallback(IterationTrace):
    """Logs the objective and every parameter to the active MLflow run after each iteration.

    Parameters are logged as ``param_<label>_value`` metrics; covariance
    matrices additionally get their standard deviations and correlations.
    With `model` given, the run is tagged with the model fingerprint on the
    first call.
    """

    def __init__(self, objective_name: str = "neg_loglik", model=None):
        super().__init__(objective_name)
        self.model = model
        self._tagged = False

    def log_vals_names(self, vals, names):
        for val, name in zip(vals, names):
            mlflow.log_metric(metric_name(name), val, step=self.iteration)

    def __call__(self, intermediate_result: OptimizeResult):
        if self.model is not None and not self._tagged:
            mlflow.set_tag("model_fingerprint", model_fingerprint(self.model))
            self._tagged = True
        row = super().__call__(intermediate_result)
        mlflow.log_metric(self.objective_name, row[self.objective_name], step=self.iteration)
        names = [k for k in row if k not in ("iteration", self.objective_name)]
        self.log_vals_names([row[k] for k in names], [f"param_{k}_value" for k in names])
        return row


def log_fit_result(fit_result, prefix: str = ""):
    """Log final estimates, objective and convergence of a `FitResult` to the active run."""
    mlflow.log_metric(f"{prefix}objective", fit_result.objective)
    mlflow.log_metric(f"{prefix}loglik", fit_result.loglik)
    mlflow.log_param(f"{prefix}approx", fit_result.approx.name)
    mlflow.set_tag(f"{prefix}status", fit_result.status.value)
    for label, value in fit_result.coef_table()[["parameter", "estimate"]].itertuples(index=False):
        mlflow.log_metric(metric_name(f"{prefix}final_{label}"), value)
    if fit_result.model is not None:
        mlflow.set_tag(f"{prefix}model_fingerprint", model_fingerprint(fit_result.model))
