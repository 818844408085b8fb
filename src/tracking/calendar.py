"""Onah and Hebrew calendar arithmetic.

An onah is half of a halachic day: the *night* onah runs from sunset to the
next sunrise, the *day* onah from sunrise to sunset.  Because the Hebrew day
begins at nightfall, a night onah that starts on civil date D belongs to the
Hebrew date of D + 1.

All arithmetic happens on civil dates in the user's IANA timezone and is
converted back to aware datetimes only at the edges, so a DST change between
two onot never shifts a prediction by a day.

Sunrise and sunset are nominal local times taken from ``tracking_config.yaml``
(``onah.sunrise`` / ``onah.sunset``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from zoneinfo import ZoneInfo

from hdate import HebrewDate

from src.tracking.config_loader import OnahConfig


class Onah(str, Enum):
    day = "day"
    night = "night"

    @property
    def opposite(self) -> "Onah":
        return Onah.night if self is Onah.day else Onah.day


@dataclass(frozen=True, order=True)
class OnahSlot:
    """One onah, identified by the civil date on which it begins.

    Attributes:
        local_date: Civil date (user timezone) at the onah's start.
        onah:       Day or night.
    """

    local_date: date
    onah: Onah

    @property
    def hebrew_civil_date(self) -> date:
        """Civil date whose daytime shares this onah's Hebrew date."""
        if self.onah is Onah.night:
            return self.local_date + timedelta(days=1)
        return self.local_date

    def shifted(self, days: int) -> "OnahSlot":
        return OnahSlot(self.local_date + timedelta(days=days), self.onah)

    def preceding(self) -> "OnahSlot":
        """The onah immediately before this one."""
        if self.onah is Onah.day:
            return OnahSlot(self.local_date - timedelta(days=1), Onah.night)
        return OnahSlot(self.local_date, Onah.day)

    def opposite(self) -> "OnahSlot":
        """The other onah of the same Hebrew day."""
        if self.onah is Onah.day:
            return OnahSlot(self.local_date - timedelta(days=1), Onah.night)
        return OnahSlot(self.local_date + timedelta(days=1), Onah.day)

    def window(self, zone: ZoneInfo, boundaries: OnahConfig) -> tuple[datetime, datetime]:
        """Return the aware ``[start, end)`` interval of this onah."""
        if self.onah is Onah.day:
            start = datetime.combine(self.local_date, boundaries.sunrise, tzinfo=zone)
            end = datetime.combine(self.local_date, boundaries.sunset, tzinfo=zone)
        else:
            start = datetime.combine(self.local_date, boundaries.sunset, tzinfo=zone)
            end = datetime.combine(
                self.local_date + timedelta(days=1), boundaries.sunrise, tzinfo=zone
            )
        return start, end


def onah_slot_for(timestamp: datetime, zone: ZoneInfo, boundaries: OnahConfig) -> OnahSlot:
    """Map an aware timestamp to the onah it falls in.

    Before sunrise belongs to the night that began the previous evening.
    """
    local = timestamp.astimezone(zone)
    clock = local.time()
    if clock < boundaries.sunrise:
        return OnahSlot(local.date() - timedelta(days=1), Onah.night)
    if clock < boundaries.sunset:
        return OnahSlot(local.date(), Onah.day)
    return OnahSlot(local.date(), Onah.night)


# Display names keyed by hdate Months member name
_MONTH_NAMES = {
    "TISHREI": "Tishrei", "MARCHESHVAN": "Cheshvan", "KISLEV": "Kislev",
    "TEVET": "Tevet", "SHVAT": "Shevat", "ADAR": "Adar", "ADAR_I": "Adar I",
    "ADAR_II": "Adar II", "NISAN": "Nisan", "IYYAR": "Iyar", "SIVAN": "Sivan",
    "TAMMUZ": "Tammuz", "AV": "Av", "ELUL": "Elul",
}


def hebrew_date_label(civil: date) -> str:
    """Format the Hebrew date of a civil date, e.g. ``"14 Nisan 5786"``."""
    hd = HebrewDate.from_gdate(civil)
    month_name = _MONTH_NAMES.get(hd.month.name, hd.month.name.title())
    return f"{hd.day} {month_name} {hd.year}"


def same_day_next_hebrew_month(civil: date) -> date:
    """Return the civil date carrying the same Hebrew day-of-month next month.

    When next month is too short (day 30 after a 29-day month), the first day
    of the month after it is returned.
    """
    start = HebrewDate.from_gdate(civil)
    next_month = None
    for offset in range(1, 64):
        candidate = civil + timedelta(days=offset)
        hd = HebrewDate.from_gdate(candidate)
        if next_month is None:
            if hd.month == start.month:
                continue
            next_month = hd.month
        if hd.month != next_month:
            return candidate
        if hd.day == start.day:
            return candidate
    raise ValueError(f"Could not resolve next Hebrew month for {civil.isoformat()}")
