import math
from collections.abc import Iterable


def clean_samples(samples: Iterable[float | None]) -> list[float]:
    """Sorted samples without None, NaN and non-positive values."""
    return sorted(
        float(sample) for sample in samples if sample is not None and not math.isnan(sample) and sample > 0
    )


def percentile(sorted_values: list[float], p: float) -> float | None:
    """
    Percentile of pre-sorted values using linear interpolation between adjacent ranks,
    the same definition the warehouse `percentile()` aggregate uses.

    :param sorted_values: samples sorted ascending
    :param p: percentile in [0, 100]
    :return: the percentile, or None for no samples
    """
    if not 0 <= p <= 100:
        raise ValueError("Percentile 'p' must be in the range [0, 100].")
    if not sorted_values:
        return None

    position = (len(sorted_values) - 1) * (p / 100.0)
    lower_index = math.floor(position)
    upper_index = math.ceil(position)
    if lower_index == upper_index:
        return sorted_values[lower_index]

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + (upper_value - lower_value) * (position - lower_index)


def median(samples: Iterable[float | None]) -> float:
    """Median over every valid sample; 0 when there is none."""
    value = percentile(clean_samples(samples), 50)
    return value if value is not None else 0.0


def hours_to_days(hours: float) -> float:
    return round(hours / 24, 2)
