"""Merge a subject's dose events into an ordered list of integration actions.

Lags move doses to their actual time, bioavailability and the model rate
sentinel are resolved here, infusions are split into start/stop pairs and
covariate change times become breakpoints. At equal times actions run in
the order given by `ActionKind`: resets first, then steady-state
initialisation, doses and infusion starts, then infusion stops. Observation
saves happen after every action at that time.
"""
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterable, Optional, Sequence, Tuple

import numpy as np

from .dosing import MODEL_RATE, SteadyStateKind, compartment_index, resolve_dcp
from .errors import DataError

logger = logging.getLogger(__name__)


class ActionKind(IntEnum):
    Reset = 0
    SteadyState = 1
    Bolus = 2
    InfusionStart = 3
    SteadyStateInfusion = 4
    InfusionStop = 5
    Breakpoint = 6


@dataclass(frozen=True)
class TimelineAction:
    time: float
    kind: ActionKind
    cmt: int = -1
    amount: float = 0.0
    rate: float = 0.0
    duration: float = 0.0
    ii: float = 0.0
    ss: SteadyStateKind = SteadyStateKind.NONE
    infusion_id: int = -1
    nominal_time: Optional[float] = None
    seq: int = 0

    @property
    def sort_key(self):
        return (self.time, int(self.kind), self.seq)


def _infusion_shape(ev, dcp, amount, subject_id):
    """(rate, duration) of the dose after resolving the model rate sentinel; (0, 0) for a bolus."""
    rate, duration = ev.rate, ev.duration
    if rate == MODEL_RATE:
        if dcp.rate is not None and dcp.rate > 0:
            rate, duration = dcp.rate, 0.0
        elif dcp.duration is not None and dcp.duration > 0:
            rate, duration = 0.0, dcp.duration
        else:
            raise DataError(
                "dose has rate=-2 but dosecontrol defines neither a rate nor a duration",
                field="rate", subject_id=subject_id, time=ev.time,
            )
    if rate > 0:
        return rate, amount / rate
    if duration > 0:
        return amount / duration, duration
    return 0.0, 0.0


def build_timeline(
    events: Iterable,
    states: Sequence[str],
    dcp_at: Optional[Callable[[float], object]] = None,
    breakpoints: Iterable[float] = (),
    subject_id=None,
) -> Tuple[TimelineAction, ...]:
    """Turn dose events into sorted `TimelineAction`s.

    Args:
        events: normalized `DoseEvent`s (addl already expanded).
        states: state names of the dynamical system; `cmt` is resolved against them.
        dcp_at: callable giving the model's dosecontrol output at a nominal dose time.
        breakpoints: extra times at which integration must stop, e.g. covariate changes.
    """
    actions = []
    seq = 0
    infusion_id = 0

    def add(**kwargs):
        nonlocal seq
        actions.append(TimelineAction(seq=seq, **kwargs))
        seq += 1

    for ev in events:
        t_nom = float(ev.time)
        if ev.resets:
            add(time=t_nom, kind=ActionKind.Reset, nominal_time=t_nom)
        if not ev.doses:
            continue

        idx = compartment_index(ev.cmt, states, subject_id=subject_id)
        dcp = resolve_dcp(None if dcp_at is None else dcp_at(t_nom), ev.cmt, states)
        t_act = t_nom + dcp.lag
        amount = ev.amt * dcp.bioav

        if ev.is_ss_infusion:
            add(time=t_act, kind=ActionKind.SteadyStateInfusion, cmt=idx, rate=ev.rate,
                ss=ev.ss, infusion_id=infusion_id, nominal_time=t_nom)
            infusion_id += 1
            continue

        rate, duration = _infusion_shape(ev, dcp, amount, subject_id)
        if ev.ss != SteadyStateKind.NONE:
            if duration > ev.ii:
                raise DataError(
                    f"steady-state infusion lasts {duration:g}, longer than ii={ev.ii:g}",
                    field="ss,ii,duration", subject_id=subject_id, time=t_nom,
                )
            add(time=t_act, kind=ActionKind.SteadyState, cmt=idx, amount=amount, rate=rate,
                duration=duration, ii=ev.ii, ss=ev.ss, nominal_time=t_nom)

        if duration > 0:
            if amount == 0:
                continue
            add(time=t_act, kind=ActionKind.InfusionStart, cmt=idx, amount=amount, rate=rate,
                duration=duration, infusion_id=infusion_id, nominal_time=t_nom)
            add(time=t_act + duration, kind=ActionKind.InfusionStop, cmt=idx, rate=rate,
                infusion_id=infusion_id, nominal_time=t_nom)
            infusion_id += 1
        elif amount != 0:
            add(time=t_act, kind=ActionKind.Bolus, cmt=idx, amount=amount, nominal_time=t_nom)

    for t in np.unique(np.asarray(list(breakpoints), dtype=np.float64)):
        add(time=float(t), kind=ActionKind.Breakpoint)

    actions.sort(key=lambda a: a.sort_key)
    logger.debug("subject %s: %d timeline actions", subject_id, len(actions))
    return tuple(actions)


def group_by_time(actions: Sequence[TimelineAction]):
    """Yield ``(time, actions_at_time)`` in time order."""
    i = 0
    n = len(actions)
    while i < n:
        t = actions[i].time
        j = i
        while j < n and actions[j].time == t:
            j += 1
        yield t, actions[i:j]
        i = j
