from __future__ import annotations

import pytest

from config import METRICS
from timeseries import TimeSeriesStore


@pytest.fixture
def store() -> TimeSeriesStore:
    return TimeSeriesStore(METRICS)
