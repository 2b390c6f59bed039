"""Fixed-point usage accumulator.

Usage is reported as an integer ``quantity`` at a scale of
``10^log10_scale * 2^log2_scale`` units per quantity step, e.g. milliseconds
of MB (log10 -3, log2 -10) for a line item priced per GB-second. Whole units
are billed; whatever is left is kept as an exact integer remainder and carried
into the next recording.
"""

import math

from planbill.models.billing import UsageRecord, UsageRemainder

MIN_SCALE = -10
MAX_SCALE = 0


def _clamp_scale(scale: int) -> int:
    return max(MIN_SCALE, min(int(scale), MAX_SCALE))


def _to_quantity(quantity) -> int:
    try:
        value = math.floor(quantity)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, value)


def scale_factor(log10_scale: int, log2_scale: int) -> int:
    """Number of quantity steps that make one whole unit."""
    return 10 ** -log10_scale * 2 ** -log2_scale


def calculate_usage(quantity, log10_scale: int = 0, log2_scale: int = 0) -> UsageRecord:
    """Split ``quantity`` into billable units and a remainder at the given scale."""
    quantity = _to_quantity(quantity)
    log10_scale = _clamp_scale(log10_scale)
    log2_scale = _clamp_scale(log2_scale)

    factor = scale_factor(log10_scale, log2_scale)
    units, remainder = divmod(quantity, factor)
    return UsageRecord(
        units=units,
        remainder=UsageRemainder(
            decimal=remainder / factor,
            quantity=remainder,
            log10_scale=log10_scale,
            log2_scale=log2_scale,
        ),
    )


def _rescale(remainder: UsageRemainder, log10_scale: int, log2_scale: int) -> int:
    return (
        int(remainder.quantity)
        * 10 ** (remainder.log10_scale - log10_scale)
        * 2 ** (remainder.log2_scale - log2_scale)
    )


def add_usage(a: UsageRecord, b: UsageRecord) -> UsageRecord:
    """Merge two usage records, keeping the finer of their two scales.

    Units are summed, both remainders are moved to the common scale exactly,
    and the total is normalized again so that whole units leave the remainder.
    """
    log10_scale = min(a.remainder.log10_scale, b.remainder.log10_scale)
    log2_scale = min(a.remainder.log2_scale, b.remainder.log2_scale)

    remainder_quantity = _rescale(a.remainder, log10_scale, log2_scale) + _rescale(
        b.remainder, log10_scale, log2_scale
    )
    units = a.units + b.units
    return calculate_usage(
        units * scale_factor(log10_scale, log2_scale) + remainder_quantity,
        log10_scale,
        log2_scale,
    )
