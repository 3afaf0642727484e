"""Dose events, dosage regimens and dosing control parameters.

A `DosageRegimen` is normalized at construction time: vector arguments are
broadcast elementwise, `addl`/`ii` shorthand is expanded into explicit
events and the rate/duration/amount relation is checked, so a malformed
regimen fails long before any integration work starts.
"""
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Dict, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .errors import CompartmentLookupError, DataError

# rate = -2 in a dose record means "take the rate or duration from the model"
MODEL_RATE = -2.0


class EventKind(IntEnum):
    Dose = 1
    Reset = 3
    ResetAndDose = 4


class SteadyStateKind(IntEnum):
    NONE = 0
    SteadyState = 1
    SteadyStateAdditive = 2


@dataclass(frozen=True)
class DoseEvent:
    time: float
    cmt: Union[int, str] = 1
    amt: float = 0.0
    evid: EventKind = EventKind.Dose
    ii: float = 0.0
    addl: int = 0
    rate: float = 0.0
    duration: float = 0.0
    ss: SteadyStateKind = SteadyStateKind.NONE
    # position within an expanded addl series; not part of the event's identity
    repeat_index: int = field(default=0, compare=False)

    @property
    def is_infusion(self):
        return self.rate != 0 or self.duration > 0

    @property
    def is_ss_infusion(self):
        return self.ss != SteadyStateKind.NONE and self.amt == 0 and self.rate > 0

    @property
    def resets(self):
        return self.evid in (EventKind.Reset, EventKind.ResetAndDose)

    @property
    def doses(self):
        return self.evid in (EventKind.Dose, EventKind.ResetAndDose)


def _check_event(ev: DoseEvent):
    if ev.evid not in (EventKind.Dose, EventKind.Reset, EventKind.ResetAndDose):
        raise DataError(f"evid must be one of 1, 3 or 4, got {ev.evid}", field="evid", time=ev.time)
    if ev.amt < 0:
        raise DataError(f"amt must be non-negative, got {ev.amt}", field="amt", time=ev.time)
    if ev.rate < 0 and ev.rate != MODEL_RATE:
        raise DataError(f"rate must be non-negative (or -2 for a model rate), got {ev.rate}",
                        field="rate", time=ev.time)
    if ev.duration < 0:
        raise DataError(f"duration must be non-negative, got {ev.duration}",
                        field="duration", time=ev.time)
    if ev.ii < 0 or ev.addl < 0:
        raise DataError("ii and addl must be non-negative", field="ii,addl", time=ev.time)
    if ev.rate > 0 and ev.duration > 0 and not np.isclose(ev.amt, ev.rate * ev.duration):
        raise DataError(
            f"amt={ev.amt} is inconsistent with rate*duration={ev.rate * ev.duration} "
            f"(rate={ev.rate}, duration={ev.duration}); specify only one of rate or duration",
            field="rate,duration,amt", time=ev.time,
        )
    if ev.addl > 0 and ev.ii <= 0:
        raise DataError(f"addl={ev.addl} requires a positive ii", field="addl,ii", time=ev.time)
    if ev.ii > 0 and ev.addl == 0 and ev.ss == SteadyStateKind.NONE:
        raise DataError(f"ii={ev.ii} requires addl > 0 or a steady-state dose",
                        field="addl,ii", time=ev.time)
    if ev.ss != SteadyStateKind.NONE:
        if ev.is_ss_infusion:
            if ev.ii != 0 or ev.addl != 0:
                raise DataError("a steady-state infusion (amt=0, rate>0) requires ii=0 and addl=0",
                                field="ss,ii,addl", time=ev.time)
        elif ev.ii <= 0:
            raise DataError("a steady-state dose requires a positive ii", field="ss,ii",
                            time=ev.time)


def _broadcast_args(kwargs: Dict[str, object]):
    lengths = {k: len(v) for k, v in kwargs.items()
               if isinstance(v, (Sequence, np.ndarray)) and not isinstance(v, str)}
    n = max(lengths.values()) if lengths else 1
    bad = {k: m for k, m in lengths.items() if m != n}
    if bad:
        raise DataError(
            f"vector arguments must share one length, got {lengths}",
            field=",".join(sorted(bad)),
        )
    rows = []
    for i in range(n):
        rows.append({k: (v[i] if k in lengths else v) for k, v in kwargs.items()})
    return rows


def expand_event(ev: DoseEvent) -> Tuple[DoseEvent, ...]:
    """Expand `addl` repeats into `addl + 1` events spaced by `ii`."""
    if ev.addl == 0:
        return (ev,)
    return tuple(replace(ev, time=ev.time + k * ev.ii, repeat_index=k)
                 for k in range(ev.addl + 1))


class DosageRegimen:
    """An ordered, normalized collection of dose events.

    Build it from (possibly vector-valued) dose fields::

        DosageRegimen(100, time=[0, 12], cmt="Depot")
        DosageRegimen(150, rate=10, cmt=1)

    or by concatenating regimens, optionally starting each one `offset`
    after the final dose of the previous one::

        DosageRegimen(loading, maintenance, offset=24)
    """

    def __init__(self, *args, time=0.0, cmt=1, evid=1, ii=0.0, addl=0, rate=0.0,
                 duration=0.0, ss=0, offset=None):
        if args and all(isinstance(a, DosageRegimen) for a in args):
            self.rows = self._concatenate(args, offset)
        elif len(args) == 1:
            self.rows = self._rows_from_fields(amt=args[0], time=time, cmt=cmt, evid=evid,
                                               ii=ii, addl=addl, rate=rate,
                                               duration=duration, ss=ss)
        else:
            raise DataError("DosageRegimen takes one amt argument or one or more regimens",
                            field="amt")
        expanded = [e for row in self.rows for e in expand_event(row)]
        # stable sort keeps record order for doses sharing a time
        order = sorted(range(len(expanded)), key=lambda i: expanded[i].time)
        self.events: Tuple[DoseEvent, ...] = tuple(expanded[i] for i in order)

    @staticmethod
    def _rows_from_fields(**kwargs):
        rows = []
        for r in _broadcast_args(kwargs):
            try:
                ev = DoseEvent(
                    time=float(r["time"]),
                    cmt=r["cmt"] if isinstance(r["cmt"], str) else int(r["cmt"]),
                    amt=float(r["amt"]),
                    evid=EventKind(int(r["evid"])),
                    ii=float(r["ii"]),
                    addl=int(r["addl"]),
                    rate=float(r["rate"]),
                    duration=float(r["duration"]),
                    ss=SteadyStateKind(int(r["ss"])),
                )
            except ValueError as e:
                raise DataError(str(e), field="evid,ss") from e
            _check_event(ev)
            rows.append(ev)
        return tuple(rows)

    @staticmethod
    def _concatenate(regimens, offset):
        rows = list(regimens[0].rows)
        for reg in regimens[1:]:
            if offset is None:
                rows.extend(reg.rows)
                continue
            if offset < 0:
                raise DataError(f"offset must be non-negative, got {offset}", field="offset")
            end = max(r.time + r.ii * r.addl for r in rows)
            start = min(r.time for r in reg.rows)
            shift = end + offset - start
            rows.extend(replace(r, time=r.time + shift) for r in reg.rows)
        return tuple(rows)

    def __len__(self):
        return len(self.events)

    def __iter__(self):
        return iter(self.events)

    def __eq__(self, other):
        return isinstance(other, DosageRegimen) and self.rows == other.rows

    def __repr__(self):
        return f"DosageRegimen({len(self.rows)} rows, {len(self.events)} events)"

    def to_pandas(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"time": r.time, "cmt": r.cmt, "amt": r.amt, "evid": int(r.evid), "ii": r.ii,
              "addl": r.addl, "rate": r.rate, "duration": r.duration, "ss": int(r.ss)}
             for r in self.rows]
        )


def normalize(regimen_spec) -> DosageRegimen:
    """Build a normalized `DosageRegimen` from a regimen, a field mapping or a list of either."""
    if isinstance(regimen_spec, DosageRegimen):
        return regimen_spec
    if isinstance(regimen_spec, DoseEvent):
        regimen_spec = [regimen_spec]
    if isinstance(regimen_spec, Mapping):
        spec = dict(regimen_spec)
        if "amt" not in spec:
            raise DataError("a regimen mapping needs an `amt` entry", field="amt")
        amt = spec.pop("amt")
        return DosageRegimen(amt, **spec)
    if isinstance(regimen_spec, Sequence) and not isinstance(regimen_spec, str):
        parts = []
        for item in regimen_spec:
            if isinstance(item, DoseEvent):
                parts.append(DosageRegimen(item.amt, time=item.time, cmt=item.cmt,
                                           evid=int(item.evid), ii=item.ii, addl=item.addl,
                                           rate=item.rate, duration=item.duration,
                                           ss=int(item.ss)))
            else:
                parts.append(normalize(item))
        if not parts:
            raise DataError("an empty regimen specification has no events", field="amt")
        return DosageRegimen(*parts)
    raise DataError(f"cannot build a regimen from {type(regimen_spec).__name__}", field="amt")


@dataclass(frozen=True)
class DosingControl:
    lag: float = 0.0
    bioav: float = 1.0
    rate: Optional[float] = None
    duration: Optional[float] = None


_DCP_KEYS = {"lags": "lag", "bioav": "bioav", "rate": "rate", "duration": "duration"}


def compartment_index(cmt, states: Sequence[str], subject_id=None) -> int:
    """0-based state index for a 1-based compartment number or a state name."""
    if isinstance(cmt, str):
        if cmt not in states:
            raise CompartmentLookupError(cmt, states, subject_id=subject_id)
        return list(states).index(cmt)
    idx = int(cmt) - 1
    if not 0 <= idx < len(states):
        raise CompartmentLookupError(cmt, states, subject_id=subject_id)
    return idx


def _resolve_entry(value, idx, name, default, states):
    if value is None:
        return default
    if isinstance(value, Mapping):
        for key in value:
            if states is not None:
                compartment_index(key, states)
            elif not isinstance(key, (str, int, np.integer)):
                raise CompartmentLookupError(key)
        if name is not None and name in value:
            return float(value[name])
        if idx is not None and (idx + 1) in value:
            return float(value[idx + 1])
        return default
    if np.ndim(value) == 0:
        return float(value)
    seq = np.asarray(value, dtype=np.float64).ravel()
    if idx is None:
        # positional entries need a compartment number
        raise CompartmentLookupError(name)
    return float(seq[idx]) if idx < len(seq) else default


def resolve_dcp(dcp_output, cmt, states: Sequence[str] = None) -> DosingControl:
    """Resolve the dosing control overrides that apply to compartment `cmt`.

    Every entry of `dcp_output` (keys ``lags``, ``bioav``, ``rate``,
    ``duration``) may be a scalar applying to every compartment, a mapping
    keyed by compartment name or 1-based number, or a positional sequence
    indexed by compartment number. Missing compartments get the defaults
    ``lag=0`` and ``bioav=1``.
    """
    if dcp_output is None:
        return DosingControl()
    if not isinstance(dcp_output, Mapping):
        raise DataError(f"dosecontrol must return a mapping, got {type(dcp_output).__name__}",
                        field="dosecontrol")
    unknown = set(dcp_output) - set(_DCP_KEYS)
    if unknown:
        raise CompartmentLookupError(sorted(unknown)[0], list(_DCP_KEYS))

    if states is not None:
        idx = compartment_index(cmt, states)
        name = states[idx]
    elif isinstance(cmt, str):
        idx, name = None, cmt
    else:
        idx, name = int(cmt) - 1, None

    defaults = DosingControl()
    resolved = {}
    for key, attr in _DCP_KEYS.items():
        resolved[attr] = _resolve_entry(dcp_output.get(key), idx, name,
                                        getattr(defaults, attr), states)
    dcp = DosingControl(**resolved)
    if dcp.lag < 0:
        raise DataError(f"lag must be non-negative, got {dcp.lag}", field="lags")
    if dcp.bioav < 0:
        raise DataError(f"bioavailability must be non-negative, got {dcp.bioav}", field="bioav")
    if dcp.rate is not None and dcp.rate < 0:
        raise DataError(f"rate must be non-negative, got {dcp.rate}", field="rate")
    if dcp.duration is not None and dcp.duration < 0:
        raise DataError(f"duration must be non-negative, got {dcp.duration}", field="duration")
    return dcp
