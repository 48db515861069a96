"""Reporting of non-fatal inconsistencies in the event stream."""

import logging
from collections import Counter
from typing import Any, Dict

from .utils.logging import log_with_context


logger = logging.getLogger(__name__)


class AnomalyReporter:
    """
    Side channel for anomalies: unknown events, orphan correlations, duplicates.

    Anomalies are logged with their context and counted per kind; they are
    never raised.
    """

    def __init__(self, log_level: int = logging.WARNING):
        self.log_level = log_level
        self.counts: Counter = Counter()

    def report(self, kind: str, message: str, **context: Any) -> None:
        """Record one anomaly of the given kind."""
        self.counts[kind] += 1
        log_with_context(logger, self.log_level, message, anomaly=kind, **context)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def get_stats(self) -> Dict[str, int]:
        return dict(self.counts)

    def reset(self) -> None:
        self.counts.clear()
