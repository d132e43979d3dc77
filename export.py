"""
File export for bench runs.
"""

import logging
from datetime import datetime
from pathlib import Path

import pandas as pd

from bench import BenchResult

logger = logging.getLogger(__name__)


def admissions_frame(result: BenchResult) -> pd.DataFrame:
    """One row per admission, with how many admissions share its rolling window.

    `in_window` counts admissions in [offset - reset_span, offset], so no
    value should exceed max_count.
    """
    offsets = pd.Series(sorted(result.admissions), dtype='float64')
    if result.reset_span > 0:
        lower = offsets.searchsorted(offsets - result.reset_span, side='right')
        in_window = pd.Series(range(1, len(offsets) + 1)) - lower
    else:
        in_window = pd.Series(range(1, len(offsets) + 1))
    return pd.DataFrame({
        'index': range(len(offsets)),
        'offset_seconds': offsets.round(6),
        'in_window': in_window.astype('int64'),
    })


def save_admissions_csv(result: BenchResult, output_dir: Path) -> Path:
    """Save a bench admission timeline to a timestamped CSV in output_dir.

    Returns the path to the written file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    filename = output_dir / f"admissions_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.csv"

    admissions_frame(result).to_csv(filename, index=False)
    logger.info(f"Admissions saved to {filename}")
    return filename
