"""In-process observability sink: labelled counters and gauges"""

import threading
from collections import defaultdict
from typing import Any, Dict, Tuple

from loguru import logger

_LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Dict[str, Any]) -> _LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


class Metrics:
    """
    Counter/gauge registry fed by the classifier, proxy pool and cache.

    Exporting is left to the embedding application; ``snapshot()`` returns a
    plain dict it can forward anywhere.
    """

    def __init__(self):
        self._counters: Dict[str, Dict[_LabelKey, float]] = defaultdict(dict)
        self._gauges: Dict[str, Dict[_LabelKey, float]] = defaultdict(dict)
        self._lock = threading.Lock()

    def increment(self, name: str, value: float = 1, **labels: Any) -> None:
        key = _label_key(labels)
        with self._lock:
            series = self._counters[name]
            series[key] = series.get(key, 0) + value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        key = _label_key(labels)
        with self._lock:
            self._gauges[name][key] = value

    def get_counter(self, name: str, **labels: Any) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0)

    def get_gauge(self, name: str, **labels: Any) -> float:
        with self._lock:
            return self._gauges.get(name, {}).get(_label_key(labels), 0)

    def snapshot(self) -> Dict[str, Any]:
        """Copy of every series as ``{name: [{labels, value}, ...]}``"""
        with self._lock:
            return {
                "counters": {
                    name: [{"labels": dict(k), "value": v} for k, v in series.items()]
                    for name, series in self._counters.items()
                },
                "gauges": {
                    name: [{"labels": dict(k), "value": v} for k, v in series.items()]
                    for name, series in self._gauges.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()

    def print_stats(self) -> None:
        """Log every series"""
        snap = self.snapshot()

        logger.info("")
        logger.info("=" * 80)
        logger.info("📊 RESILIENCE METRICS")
        logger.info("=" * 80)

        for kind in ("counters", "gauges"):
            for name in sorted(snap[kind]):
                for point in snap[kind][name]:
                    labels = ", ".join(f"{k}={v}" for k, v in point["labels"].items())
                    suffix = f"{{{labels}}}" if labels else ""
                    logger.info(f"  {name}{suffix}: {point['value']:g}")

        logger.info("=" * 80)
