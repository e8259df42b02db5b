from __future__ import annotations

import csv
import threading
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ChartSeries:
    chart: str
    series: str
    x_label: str = "x"
    y_label: str = "y"
    points: list[tuple[float, float]] = field(default_factory=list)


class ChartRecorder:
    """In-memory progress sink that keeps every chart point and grid note.

    Safe to feed from metric worker threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._series: dict[tuple[str, str], ChartSeries] = {}
        self._entries: dict[tuple[str, int, int], str] = {}

    def configure_chart(self, chart: str, series: str, x_label: str, y_label: str) -> None:
        with self._lock:
            existing = self._series.get((chart, series))
            if existing is None:
                self._series[(chart, series)] = ChartSeries(chart, series, x_label, y_label)
            else:
                existing.x_label = x_label
                existing.y_label = y_label

    def add_point(self, chart: str, series: str, clear: bool, x: float, y: float) -> None:
        with self._lock:
            entry = self._series.setdefault((chart, series), ChartSeries(chart, series))
            if clear:
                entry.points.clear()
            entry.points.append((float(x), float(y)))

    def add_entry(self, module: str, row: int, column: int, text: str) -> None:
        with self._lock:
            self._entries[(module, row, column)] = text

    def charts(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._series)

    def points(self, chart: str, series: str) -> list[tuple[float, float]]:
        with self._lock:
            entry = self._series.get((chart, series))
            return [] if entry is None else list(entry.points)

    def entries(self, module: str) -> dict[tuple[int, int], str]:
        with self._lock:
            return {(row, col): text for (name, row, col), text in self._entries.items() if name == module}

    def save_csv(self, path: str | Path) -> None:
        """Write every recorded point as one row (chart, series, x, y)."""

        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            rows = [
                {"chart": s.chart, "series": s.series, "x": x, "y": y}
                for s in self._series.values()
                for x, y in s.points
            ]
        with out_path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=["chart", "series", "x", "y"])
            writer.writeheader()
            writer.writerows(rows)
