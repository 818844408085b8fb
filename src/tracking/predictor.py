"""Veset / onah predictor.

Computes the onot on which a user must anticipate the next onset, from the
period starts of their cycle history.  Each period start is mapped to its onah
(day or night) in the user's timezone, and every rule projects the *same*
onah forward:

    veset_hachodesh  same Hebrew day-of-month, next Hebrew month
    veset_haflagah   last start + the last interval
    veset_haguf      last start + interval, once the last N intervals are equal
    onah_beinonit    day 30 (last start + 29 days)

Stringencies add further onot:

    ohr_zaruah       the onah preceding each of the above
    kreisi_upleisi   the other onah of the onah-beinonit day
    chasam_sofer     day 31 (last start + 30 days)

With fewer than two cycles there is no interval, so only veset ha-chodesh
(with its ohr zaruah) is produced.

Usage::

    predictions = predict_next_onsets(cycles, preferences, config)
    for p in predictions:
        print(p.rule, p.stringency, p.starts_at, p.hebrew_date)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterable

from src.tracking.calendar import (
    Onah,
    OnahSlot,
    hebrew_date_label,
    onah_slot_for,
    same_day_next_hebrew_month,
)
from src.tracking.config_loader import TrackingConfig, get_tracking_config
from src.tracking.records import CycleRecord, UserPreferences

logger = logging.getLogger("mikvahcal.tracking.predictor")


class VesetRule(str, Enum):
    veset_hachodesh = "veset_hachodesh"
    veset_haflagah = "veset_haflagah"
    veset_haguf = "veset_haguf"
    onah_beinonit = "onah_beinonit"


class Stringency(str, Enum):
    ohr_zaruah = "ohr_zaruah"
    kreisi_upleisi = "kreisi_upleisi"
    chasam_sofer = "chasam_sofer"


@dataclass(frozen=True)
class VesetPrediction:
    """One anticipated onah.

    Attributes:
        rule:        Veset rule that produced the onah.
        stringency:  Set when the onah exists only because of a chumra.
        onah:        Day or night.
        local_date:  Civil date (user timezone) on which the onah begins.
        starts_at:   Aware start of the onah.
        ends_at:     Aware end of the onah.
        hebrew_date: Hebrew date of the onah, e.g. "3 Iyyar 5786".
        interval:    Interval in days for haflagah / guf predictions.
    """

    rule: VesetRule
    stringency: Stringency | None
    onah: Onah
    local_date: date
    starts_at: datetime
    ends_at: datetime
    hebrew_date: str
    interval: int | None = None

    @property
    def label(self) -> str:
        name = self.rule.value.replace("_", " ")
        if self.stringency is not None:
            return f"{name} ({self.stringency.value.replace('_', ' ')})"
        return name


def onset_slots(history: Iterable[CycleRecord], preferences: UserPreferences,
                config: TrackingConfig) -> list[OnahSlot]:
    """Return the onah of every live period start, oldest first."""
    zone = preferences.zone
    starts = sorted(r.period_start for r in history if not r.is_deleted)
    return [onah_slot_for(ts, zone, config.onah) for ts in starts]


def intervals_between(slots: list[OnahSlot]) -> list[int]:
    """Day counts between consecutive onset onot.

    Onsets on the same civil day count once, so no interval is ever zero.
    """
    days = [
        (later.local_date - earlier.local_date).days
        for earlier, later in zip(slots, slots[1:])
    ]
    return [d for d in days if d > 0]


def predict_next_onsets(
    history: Iterable[CycleRecord],
    preferences: UserPreferences,
    config: TrackingConfig | None = None,
) -> list[VesetPrediction]:
    """Predict the onot to anticipate after the most recent period start.

    Args:
        history:     The user's cycle records (any order; soft-deleted ignored).
        preferences: Timezone and stringency flags.
        config:      Tracking config (defaults to the global singleton).

    Returns:
        Distinct predictions sorted by start time. Empty if there is no history.
    """
    cfg = config or get_tracking_config()
    h = cfg.halachic
    slots = onset_slots(history, preferences, cfg)
    if not slots:
        return []

    last = slots[-1]
    intervals = intervals_between(slots)
    # (rule, stringency, slot, interval)
    candidates: list[tuple[VesetRule, Stringency | None, OnahSlot, int | None]] = []

    hebrew_target = same_day_next_hebrew_month(last.hebrew_civil_date)
    # A night onah begins on the civil evening before its Hebrew date
    if last.onah is Onah.night:
        hebrew_target -= timedelta(days=1)
    chodesh = OnahSlot(hebrew_target, last.onah)
    candidates.append((VesetRule.veset_hachodesh, None, chodesh, None))

    if intervals:
        haflagah = intervals[-1]
        candidates.append((VesetRule.veset_haflagah, None, last.shifted(haflagah), haflagah))

        repetitions = h.fixed_pattern_repetitions
        recent = intervals[-repetitions:]
        if len(recent) == repetitions and len(set(recent)) == 1:
            candidates.append((VesetRule.veset_haguf, None, last.shifted(recent[0]), recent[0]))

        beinonit = last.shifted(h.onah_beinonit_day - 1)
        candidates.append((VesetRule.onah_beinonit, None, beinonit, None))
        if preferences.kreisi_upleisi:
            candidates.append(
                (VesetRule.onah_beinonit, Stringency.kreisi_upleisi, beinonit.opposite(), None)
            )
        if preferences.chasam_sofer:
            candidates.append(
                (VesetRule.onah_beinonit, Stringency.chasam_sofer,
                 last.shifted(h.chasam_sofer_day - 1), None)
            )

    if preferences.ohr_zaruah:
        for rule, stringency, slot, interval in list(candidates):
            if stringency is None:
                candidates.append((rule, Stringency.ohr_zaruah, slot.preceding(), interval))

    zone = preferences.zone
    seen: set[tuple] = set()
    predictions: list[VesetPrediction] = []
    for rule, stringency, slot, interval in candidates:
        key = (rule, stringency, slot)
        if key in seen:
            continue
        seen.add(key)
        starts_at, ends_at = slot.window(zone, cfg.onah)
        predictions.append(
            VesetPrediction(
                rule=rule,
                stringency=stringency,
                onah=slot.onah,
                local_date=slot.local_date,
                starts_at=starts_at,
                ends_at=ends_at,
                hebrew_date=hebrew_date_label(slot.hebrew_civil_date),
                interval=interval,
            )
        )

    predictions.sort(key=lambda p: (p.starts_at, p.rule.value, p.stringency.value if p.stringency else ""))
    logger.debug(
        "Predicted %d onot from %d onsets (last=%s %s)",
        len(predictions), len(slots), last.local_date, last.onah.value,
    )
    return predictions
