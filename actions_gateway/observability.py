import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List

_STRUCTURED_FIELDS = ("tool", "tenant", "correlation_id", "duration_ms", "status")


class StructuredFormatter(logging.Formatter):
    """One JSON object per line. Structured fields appear when the record carries them."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
        }
        for name in _STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None and value != "":
                entry[name] = value
        entry["msg"] = record.getMessage()
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, separators=(",", ":"), default=str)


def setup_logger(config: Dict[str, Any]) -> logging.Logger:
    logger = logging.getLogger("actions_gateway")
    server_cfg = config.get("server", {}) or {}
    level_name = str(server_cfg.get("log_level", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    if logger.handlers:
        return logger
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


@dataclass
class ToolMetrics:
    calls: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0

    def observe(self, duration_ms: float, error: bool) -> None:
        self.calls += 1
        self.total_latency_ms += float(duration_ms)
        if error:
            self.errors += 1

    @property
    def avg_latency_ms(self) -> float:
        if self.calls == 0:
            return 0.0
        return self.total_latency_ms / self.calls


class InMemoryMetrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: Dict[str, ToolMetrics] = {}

    def record(self, tool: str, duration_ms: float, error: bool) -> None:
        with self._lock:
            metrics = self._tools.get(tool)
            if metrics is None:
                metrics = ToolMetrics()
                self._tools[tool] = metrics
            metrics.observe(duration_ms, error)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            data: Dict[str, Dict[str, float]] = {}
            for name, m in self._tools.items():
                data[name] = {
                    "calls": float(m.calls),
                    "errors": float(m.errors),
                    "avg_latency_ms": float(m.avg_latency_ms),
                }
            return data

    def render_prometheus(self) -> str:
        """Prometheus text exposition of the per-tool counters."""
        data = self.snapshot()
        lines: List[str] = []
        series = (
            ("actions_gateway_tool_calls_total", "counter", "Tool calls handled.", "calls"),
            ("actions_gateway_tool_errors_total", "counter", "Tool calls that ended in an error.", "errors"),
            ("actions_gateway_tool_latency_ms_avg", "gauge", "Average tool call latency in milliseconds.", "avg_latency_ms"),
        )
        for metric, kind, help_text, field_name in series:
            lines.append(f"# HELP {metric} {help_text}")
            lines.append(f"# TYPE {metric} {kind}")
            for tool in sorted(data):
                value = data[tool][field_name]
                rendered = f"{value:.3f}" if field_name == "avg_latency_ms" else str(int(value))
                lines.append(f'{metric}{{tool="{tool}"}} {rendered}')
        return "\n".join(lines) + "\n"
