from __future__ import annotations

from collections import defaultdict
from typing import Any


class Metrics:
    """In-process counters and latency samples, rendered as JSON or Prometheus text."""

    def __init__(self, prefix: str = "auction_intel") -> None:
        self.prefix = prefix
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def set(self, name: str, value: int) -> None:
        self.counters[name] = value

    def record_latency(self, name: str, seconds: float) -> None:
        self.histograms[name].append(seconds)
        self.counters[f"{name}_count"] += 1

    def _percentile_ms(self, name: str, q: float) -> float:
        vals = sorted(self.histograms.get(name, []))
        if not vals:
            return 0.0
        idx = min(int(len(vals) * q), len(vals) - 1)
        return round(vals[idx] * 1000, 1)

    def snapshot(self) -> dict[str, Any]:
        latency = {
            name: {
                "count": len(vals),
                "p50_ms": self._percentile_ms(name, 0.5),
                "p95_ms": self._percentile_ms(name, 0.95),
                "p99_ms": self._percentile_ms(name, 0.99),
            }
            for name, vals in sorted(self.histograms.items())
        }
        return {"counters": dict(self.counters), "latency": latency}

    def prometheus_text(self) -> str:
        lines: list[str] = []
        for k, v in sorted(self.counters.items()):
            safe = k.replace(".", "_").replace("-", "_")
            lines.append(f"# TYPE {self.prefix}_{safe} counter")
            lines.append(f"{self.prefix}_{safe} {v}")

        for name, vals in sorted(self.histograms.items()):
            if not vals:
                continue
            safe = name.replace(".", "_").replace("-", "_")
            sorted_vals = sorted(vals)
            n = len(sorted_vals)
            lines.append(f"# TYPE {self.prefix}_{safe}_seconds summary")
            for q in (0.5, 0.9, 0.95, 0.99):
                idx = min(int(n * q), n - 1)
                lines.append(f'{self.prefix}_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
            lines.append(f"{self.prefix}_{safe}_seconds_count {n}")
            lines.append(f"{self.prefix}_{safe}_seconds_sum {sum(sorted_vals):.6f}")

        return "\n".join(lines) + "\n"
