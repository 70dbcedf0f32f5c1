"""Liveness heartbeat for an in-flight agent attempt.

While the runner executes, a background task emits a `heartbeat` event every
`interval` seconds. A missing heartbeat beyond the supervisor's window is how
a stalled attempt is detected; the hard wall-clock ceiling is enforced
separately by the attempt controller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

HeartbeatCallback = Callable[[int, float], None]


class AttemptHeartbeat:
	"""Periodic liveness signal for one attempt.

	The callback receives the beat count and elapsed seconds. Callback errors
	are logged and do not stop the heartbeat.
	"""

	def __init__(self, interval: float, on_beat: HeartbeatCallback) -> None:
		self._interval = interval
		self._on_beat = on_beat
		self._task: asyncio.Task[None] | None = None
		self._started: float = 0.0
		self.beats = 0

	async def __aenter__(self) -> AttemptHeartbeat:
		self.start()
		return self

	async def __aexit__(self, *args: object) -> None:
		await self.stop()

	def start(self) -> None:
		if self._task is not None or self._interval <= 0:
			return
		self._started = time.monotonic()
		self._task = asyncio.create_task(self._run())

	async def stop(self) -> None:
		if self._task is None:
			return
		self._task.cancel()
		try:
			await self._task
		except asyncio.CancelledError:
			pass
		self._task = None

	async def _run(self) -> None:
		while True:
			await asyncio.sleep(self._interval)
			self.beats += 1
			try:
				self._on_beat(self.beats, time.monotonic() - self._started)
			except Exception:
				logger.exception("Heartbeat callback failed")
