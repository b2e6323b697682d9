"""DTI oscillator calculation - the default indicator factory."""

import logging

from .indicators import (
    ema,
    calculate_dti,
    aggregate_to_7day,
    calculate_7day_dti,
    build_indicator_series
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ema",
    "calculate_dti",
    "aggregate_to_7day",
    "calculate_7day_dti",
    "build_indicator_series"
]
