"""Exceptions and warning categories raised by the simulation and estimation core."""


class NLMEError(RuntimeError):
    """Base class for nlmeode errors."""


def _where(subject_id=None, time=None):
    parts = []
    if subject_id is not None:
        parts.append(f"subject {subject_id!r}")
    if time is not None:
        parts.append(f"t={time:g}")
    return f" ({', '.join(parts)})" if parts else ""


class DataError(NLMEError, ValueError):
    """Raised when a dosing, domain or subject specification is malformed.

    `field` names the offending field(s) so the caller can localize the problem.
    """

    def __init__(self, message, field=None, subject_id=None, time=None):
        self.field = field
        self.subject_id = subject_id
        self.time = time
        prefix = f"[{field}] " if field is not None else ""
        super().__init__(prefix + message + _where(subject_id, time))


class CompartmentLookupError(NLMEError, LookupError):
    """Raised when a compartment, state or parameter name cannot be resolved."""

    def __init__(self, name, known=(), subject_id=None):
        self.name = name
        self.known = tuple(known)
        self.subject_id = subject_id
        msg = f"could not resolve {name!r}"
        if self.known:
            msg += f"; known names are {list(self.known)}"
        super().__init__(msg + _where(subject_id))


class SolverFailure(NLMEError):
    """Raised when integration or an inner optimization fails to converge."""

    def __init__(self, message, subject_id=None, time=None, recoverable=False):
        self.message = message
        self.subject_id = subject_id
        self.time = time
        self.recoverable = recoverable
        super().__init__(message + _where(subject_id, time))

    def with_subject(self, subject_id):
        """Return a copy tagged with `subject_id` (no-op if already tagged)."""
        if self.subject_id is not None:
            return self
        err = SolverFailure(self.message, subject_id=subject_id, time=self.time,
                            recoverable=self.recoverable)
        err.__cause__ = self.__cause__
        return err


class CancellationSignal(NLMEError):
    """Raised when an external cancellation request is honored at a subject boundary."""

    def __init__(self, subject_id=None):
        self.subject_id = subject_id
        super().__init__("evaluation cancelled" + _where(subject_id))


class IdentificationError(NLMEError):
    """Raised when the objective gradient at the optimum has exactly-zero components."""

    def __init__(self, param_names):
        self.param_names = tuple(param_names)
        super().__init__(
            "gradient of the objective is exactly zero for "
            f"{list(self.param_names)}; the model is likely not identified "
            "(pass checkidentification=False to skip this check)"
        )


class IdentificationWarning(UserWarning):
    """Issued instead of IdentificationError when the check is downgraded."""


class SteadyStateWarning(RuntimeWarning):
    """Issued when a steady-state iteration stops before reaching tolerance."""


__all__ = [
    "NLMEError",
    "DataError",
    "CompartmentLookupError",
    "SolverFailure",
    "CancellationSignal",
    "IdentificationError",
    "IdentificationWarning",
    "SteadyStateWarning",
]
