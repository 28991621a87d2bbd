"""
Backup type selection.

select_backup_type() is a pure function of the operator's request, the
weekly-day policy and the catalog state. For fixed inputs it always returns
the same answer, which is what lets a resumed run on the same day repeat the
decision of the interrupted one.
"""

from datetime import date
from typing import Callable, Union

from snaprest.schemas import BackupMode, BackupType

WEEKDAYS = {
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
    "sunday": 7,
}

WeeklyDayPredicate = Callable[[date], bool]


def select_backup_type(
    explicit_mode: BackupMode,
    skip_requested: bool,
    is_designated_weekly_day: bool,
    catalog_has_full_backup: bool,
) -> BackupType:
    """
    Choose the backup type for the current run.

    Rules, in priority order:
    1. skip requested (flag or mode) -> skip
    2. explicit full/incr -> that type; setup -> full
    3. auto: weekly day -> full; catalog has a full -> incr; otherwise full

    Args:
        explicit_mode: Operator-requested mode
        skip_requested: Skip-backup flag
        is_designated_weekly_day: Result of the weekly-day policy for today
        catalog_has_full_backup: Whether the stanza already has a full backup

    Returns:
        The BackupType to take
    """
    if skip_requested or explicit_mode == BackupMode.SKIP:
        return BackupType.SKIP

    if explicit_mode == BackupMode.FULL:
        return BackupType.FULL
    if explicit_mode == BackupMode.INCR:
        return BackupType.INCR
    if explicit_mode == BackupMode.SETUP:
        return BackupType.FULL

    if is_designated_weekly_day:
        return BackupType.FULL
    if catalog_has_full_backup:
        return BackupType.INCR
    # Nothing to diff against
    return BackupType.FULL


def needs_catalog(
    explicit_mode: BackupMode,
    skip_requested: bool,
    is_designated_weekly_day: bool,
) -> bool:
    """Whether the catalog answer can change select_backup_type's result."""
    return (
        not skip_requested
        and explicit_mode == BackupMode.AUTO
        and not is_designated_weekly_day
    )


def designated_weekday(day: Union[str, int] = "sunday") -> WeeklyDayPredicate:
    """
    Build the weekly-day predicate.

    Args:
        day: Weekday name ("sunday") or ISO weekday number (1=Monday .. 7=Sunday)

    Returns:
        Predicate returning True on the designated weekday
    """
    if isinstance(day, str):
        key = day.strip().lower()
        if key.isdigit():
            iso_day = int(key)
        elif key in WEEKDAYS:
            iso_day = WEEKDAYS[key]
        else:
            raise ValueError(f"Unknown weekday: {day!r}")
    else:
        iso_day = int(day)

    if not 1 <= iso_day <= 7:
        raise ValueError(f"ISO weekday must be between 1 and 7, got {iso_day}")

    def is_weekly_day(d: date) -> bool:
        return d.isoweekday() == iso_day

    is_weekly_day.iso_weekday = iso_day  # type: ignore[attr-defined]
    return is_weekly_day
