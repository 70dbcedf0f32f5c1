"""Timing helpers and logging setup for pipeline-control."""

from __future__ import annotations

import json
import logging
import time

log = logging.getLogger(__name__)


class Timer:
	"""Context manager for timing operations."""

	def __init__(self) -> None:
		self._start: float = 0.0
		self.elapsed: float = 0.0

	def __enter__(self) -> "Timer":
		self._start = time.monotonic()
		return self

	def __exit__(self, *args: object) -> None:
		self.elapsed = time.monotonic() - self._start

	@property
	def elapsed_ms(self) -> int:
		return int(self.elapsed * 1000)


def format_duration(ms: int) -> str:
	"""Render milliseconds as e.g. `850ms`, `12.3s`, `4m 05s` or `1h 02m`."""
	if ms < 1000:
		return f"{ms}ms"
	seconds = ms / 1000
	if seconds < 60:
		return f"{seconds:.1f}s"
	minutes, secs = divmod(int(seconds), 60)
	if minutes < 60:
		return f"{minutes}m {secs:02d}s"
	hours, minutes = divmod(minutes, 60)
	return f"{hours}h {minutes:02d}m"


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
	"""Configure logging with optional JSON output format.

	Args:
		level: Log level (DEBUG, INFO, WARNING, ERROR).
		json_format: If True, emit structured JSON log lines.
	"""
	root = logging.getLogger("pipeline_control")
	root.setLevel(getattr(logging, level.upper(), logging.INFO))

	if root.handlers:
		return

	handler = logging.StreamHandler()

	if json_format:
		handler.setFormatter(_JsonFormatter())
	else:
		handler.setFormatter(logging.Formatter(
			"%(asctime)s [%(levelname)s] %(name)s: %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		))

	root.addHandler(handler)


class _JsonFormatter(logging.Formatter):
	"""Emit log records as JSON lines."""

	def format(self, record: logging.LogRecord) -> str:
		data = {
			"ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
			"level": record.levelname,
			"logger": record.name,
			"msg": record.getMessage(),
		}
		if record.exc_info and record.exc_info[1]:
			data["exception"] = str(record.exc_info[1])
		return json.dumps(data)
