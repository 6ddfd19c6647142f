"""Build statistics engine — derived health and trend figures per build."""

from alpsci.engines.build_stats.aggregator import FetchBuildStatsUseCase
from alpsci.engines.build_stats.details import FetchBuildDetailsStatsUseCase
from alpsci.engines.build_stats.models import (
    BuildDetailsStats,
    BuildStats,
    DailySuccess,
    MonthlyBuildStats,
    MonthlyCommitStats,
    TestStats,
    TestTrendPoint,
)

__all__ = [
    "BuildDetailsStats",
    "BuildStats",
    "DailySuccess",
    "FetchBuildDetailsStatsUseCase",
    "FetchBuildStatsUseCase",
    "MonthlyBuildStats",
    "MonthlyCommitStats",
    "TestStats",
    "TestTrendPoint",
]
