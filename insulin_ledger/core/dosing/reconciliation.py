"""Dose reconciliation.

Turns a chronologically ordered stream of raw delivery reports into a
canonical timeline in which basal-like entries (basal, temp basal,
suspend) never overlap. Boluses are carried alongside the timeline.

One basal-like entry is "open" at a time. Each new basal-like event
closes it; a later start always wins, so the earlier entry is truncated
and never the later one.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import assert_never

from insulin_ledger.core.dosing.enums import DoseType
from insulin_ledger.core.dosing.models import DoseEntry


def _is_open_ended_suspend(dose: DoseEntry) -> bool:
    return dose.type == DoseType.suspend and dose.end_date == dose.start_date


def _close(
    entry: DoseEntry, at: datetime, delivery_increment: float | None
) -> DoseEntry | None:
    """Finalize ``entry`` as ending at ``at`` (or earlier, if it already ended).

    Returns ``None`` for an entry left with no duration.
    """
    if _is_open_ended_suspend(entry):
        closed = entry.model_copy(update={"end_date": max(at, entry.start_date)})
    else:
        closed = entry.trimmed(end=at)

    if closed.duration.total_seconds() <= 0:
        return None
    return closed.with_resolved_delivery(delivery_increment)


def reconciled(
    doses: Iterable[DoseEntry], delivery_increment: float | None = None
) -> list[DoseEntry]:
    """Merge raw delivery reports into a non-overlapping timeline.

    Args:
        doses: Raw entries, expected in ascending start order. Ties keep
            their input order.
        delivery_increment: Pump delivery resolution in units. When given,
            finalized temp basal delivery is rounded down to it.

    Returns:
        Entries ordered by start date. Every entry except a trailing,
        still-running one is finalized with ``delivered_units`` resolved.
    """
    output: list[DoseEntry] = []
    open_entry: DoseEntry | None = None

    def close_open(at: datetime) -> None:
        nonlocal open_entry
        if open_entry is not None:
            closed = _close(open_entry, at, delivery_increment)
            if closed is not None:
                output.append(closed)
            open_entry = None

    for dose in sorted(doses, key=lambda d: d.start_date):
        match dose.type:
            case DoseType.bolus:
                if dose.is_mutable:
                    output.append(dose)
                else:
                    output.append(dose.with_resolved_delivery(delivery_increment))
            case DoseType.basal | DoseType.temp_basal | DoseType.suspend:
                close_open(dose.start_date)
                open_entry = dose
            case DoseType.resume:
                # A resume without an open suspend is absorbed
                if open_entry is not None and open_entry.type == DoseType.suspend:
                    close_open(dose.start_date)
            case _:
                assert_never(dose.type)

    if open_entry is not None:
        if open_entry.is_mutable or _is_open_ended_suspend(open_entry):
            output.append(
                open_entry.model_copy(update={"is_mutable": True, "delivered_units": None})
            )
        elif open_entry.duration.total_seconds() > 0:
            output.append(open_entry.with_resolved_delivery(delivery_increment))

    output.sort(key=lambda d: d.start_date)
    return output


def extended_open_suspend(
    doses: Sequence[DoseEntry], until: datetime
) -> list[DoseEntry]:
    """``doses`` with a still-running, open-ended suspend stretched to ``until``.

    Nothing is delivered until the pump reports a resume, so the suspend
    covers the whole interval up to the last history read.
    """
    return [
        dose.model_copy(update={"end_date": until})
        if dose.is_mutable and _is_open_ended_suspend(dose) and until > dose.start_date
        else dose
        for dose in doses
    ]
