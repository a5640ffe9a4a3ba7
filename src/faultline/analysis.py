"""Error trend analysis: recent-error rings, frequencies, trends and anomalies.

The classifier feeds every classification into an ``ErrorTrendAnalyzer``.
A periodic job asks it for a ``PatternAnalysis`` (trends, anomalies and
simple predictions) and an hourly job prunes records older than the
retention window.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from faultline.logging import get_logger
from faultline.models import ErrorClassification, ErrorSeverity, utcnow

logger = get_logger(__name__, component="analysis")


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass(frozen=True)
class ErrorRecord:
    """One classified error kept for trend analysis."""

    error_id: str
    error_type: str
    severity: ErrorSeverity
    message: str
    timestamp: float


class ErrorTrend(BaseModel):
    error_type: str
    frequency: int
    trend: TrendDirection
    severity: ErrorSeverity


class ErrorAnomaly(BaseModel):
    type: str = "frequency_spike"
    error_type: str
    description: str
    severity: ErrorSeverity
    recommendation: str
    frequency: int


class ErrorPrediction(BaseModel):
    error_type: str
    probability: float = Field(ge=0.0, le=1.0)
    timeframe: str = "24 hours"
    prevention_actions: List[str] = Field(default_factory=list)


class PatternAnalysis(BaseModel):
    """Output of one analysis pass."""

    trends: List[ErrorTrend] = Field(default_factory=list)
    anomalies: List[ErrorAnomaly] = Field(default_factory=list)
    predictions: List[ErrorPrediction] = Field(default_factory=list)
    generated_at: float = Field(default_factory=lambda: utcnow().timestamp())


PREVENTION_ACTIONS = [
    "Monitor system resources",
    "Review recent deployments",
    "Check external service status",
]


class ErrorTrendAnalyzer:
    """Keeps per-type recent errors and derives trends from them.

    All mutation and snapshotting happens under one lock so that pruning
    never races with concurrent ``record`` calls.
    """

    def __init__(
        self,
        max_recent: int = 100,
        spike_threshold: int = 100,
        trend_window_seconds: float = 300.0,
        retention_seconds: float = 24 * 60 * 60,
        prediction_min_frequency: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize analyzer.

        Args:
            max_recent: Ring size per error type.
            spike_threshold: Frequency above which a type is anomalous.
            trend_window_seconds: Width of each window compared for trends.
            retention_seconds: Records older than this are pruned.
            prediction_min_frequency: Minimum frequency for a prediction.
            clock: Wall clock returning epoch seconds.
        """
        self.max_recent = max_recent
        self.spike_threshold = spike_threshold
        self.trend_window_seconds = trend_window_seconds
        self.retention_seconds = retention_seconds
        self.prediction_min_frequency = prediction_min_frequency
        self._clock = clock
        self._recent: Dict[str, Deque[ErrorRecord]] = {}
        self._frequency: Dict[str, int] = {}
        self._lock = threading.Lock()

    def record(self, classification: ErrorClassification, message: str = "") -> ErrorRecord:
        """Append a classification to its type's ring and bump the frequency."""
        error_type = classification.type.value
        record = ErrorRecord(
            error_id=classification.error_id,
            error_type=error_type,
            severity=classification.severity,
            message=message,
            timestamp=self._clock(),
        )
        with self._lock:
            ring = self._recent.get(error_type)
            if ring is None:
                ring = deque(maxlen=self.max_recent)
                self._recent[error_type] = ring
            ring.append(record)
            self._frequency[error_type] = self._frequency.get(error_type, 0) + 1
        return record

    def frequency(self, error_type: str) -> int:
        with self._lock:
            return self._frequency.get(error_type, 0)

    def recent(self, error_type: str) -> List[ErrorRecord]:
        with self._lock:
            return list(self._recent.get(error_type, ()))

    def error_types(self) -> List[str]:
        with self._lock:
            return list(self._frequency)

    def calculate_trend(self, error_type: str, now: Optional[float] = None) -> TrendDirection:
        """Compare the last window's count with the window before it."""
        now = self._clock() if now is None else now
        return self._trend(self.recent(error_type), now)

    def _trend(self, records: List[ErrorRecord], now: float) -> TrendDirection:
        window = self.trend_window_seconds
        recent_count = sum(1 for r in records if now - window < r.timestamp <= now)
        previous_count = sum(
            1 for r in records if now - 2 * window < r.timestamp <= now - window
        )

        if recent_count > previous_count * 1.2:
            return TrendDirection.INCREASING
        if recent_count < previous_count * 0.8:
            return TrendDirection.DECREASING
        return TrendDirection.STABLE

    @staticmethod
    def trend_severity(frequency: int, trend: TrendDirection) -> ErrorSeverity:
        if trend == TrendDirection.INCREASING and frequency > 50:
            return ErrorSeverity.HIGH
        if trend == TrendDirection.INCREASING and frequency > 20:
            return ErrorSeverity.MEDIUM
        return ErrorSeverity.LOW

    def analyze(self, now: Optional[float] = None) -> PatternAnalysis:
        """Compute trends, anomalies and predictions from a consistent snapshot."""
        now = self._clock() if now is None else now
        with self._lock:
            snapshot = {
                error_type: (frequency, list(self._recent.get(error_type, ())))
                for error_type, frequency in self._frequency.items()
            }

        analysis = PatternAnalysis()
        for error_type, (frequency, records) in snapshot.items():
            trend = self._trend(records, now)
            analysis.trends.append(
                ErrorTrend(
                    error_type=error_type,
                    frequency=frequency,
                    trend=trend,
                    severity=self.trend_severity(frequency, trend),
                )
            )

            if frequency > self.spike_threshold:
                analysis.anomalies.append(
                    ErrorAnomaly(
                        error_type=error_type,
                        description=f"Unusual spike in {error_type} errors ({frequency} occurrences)",
                        severity=ErrorSeverity.HIGH,
                        recommendation="Investigate root cause and implement mitigation",
                        frequency=frequency,
                    )
                )

            if trend == TrendDirection.INCREASING and frequency > self.prediction_min_frequency:
                analysis.predictions.append(
                    ErrorPrediction(
                        error_type=error_type,
                        probability=min(0.8, frequency / 100),
                        prevention_actions=list(PREVENTION_ACTIONS),
                    )
                )

        return analysis

    def prune(self, now: Optional[float] = None) -> int:
        """Drop records older than the retention window.

        Types left without records are forgotten; otherwise the frequency is
        reset to the number of retained records.

        Returns:
            Number of records removed.
        """
        now = self._clock() if now is None else now
        cutoff = now - self.retention_seconds
        removed = 0
        with self._lock:
            for error_type in list(self._frequency):
                ring = self._recent.get(error_type, deque())
                kept = [r for r in ring if r.timestamp > cutoff]
                removed += len(ring) - len(kept)
                if not kept:
                    self._recent.pop(error_type, None)
                    del self._frequency[error_type]
                else:
                    self._recent[error_type] = deque(kept, maxlen=self.max_recent)
                    self._frequency[error_type] = len(kept)

        if removed:
            logger.info("error_records_pruned", removed=removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()
            self._frequency.clear()
