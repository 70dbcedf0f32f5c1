"""Git-backed workspace checkpoints shared by concurrently running sub-pipelines.

Every checkpoint, rollback and commit against one workspace goes through a
single FIFO lock, so parallel agents never interleave version-control
mutations. Workspaces that are not git repositories turn every operation into
a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import os
import weakref
from pathlib import Path

from pipeline_control.config import CheckpointConfig
from pipeline_control.errors import CheckpointError
from pipeline_control.models import ErrorKind

logger = logging.getLogger(__name__)

_LOCK_ERROR_PATTERNS = (
	"index.lock",
	"unable to lock",
	"another git process",
	"fatal: unable to create",
	"fatal: index file",
)


def is_lock_conflict(output: str) -> bool:
	lowered = output.lower()
	return any(p in lowered for p in _LOCK_ERROR_PATTERNS)


class WorkspaceCheckpointer:
	"""Snapshot, rollback and commit operations on one shared workspace.

	asyncio.Lock wakes waiters in acquisition order, which gives the FIFO
	guarantee across sub-pipelines of one process. Use `for_workspace` so all
	controllers on one event loop share the instance (and the lock) for a path.
	"""

	_registry: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[Path, WorkspaceCheckpointer]] = (
		weakref.WeakKeyDictionary()
	)

	def __init__(self, workspace: str | Path, config: CheckpointConfig | None = None) -> None:
		self.workspace = Path(workspace)
		self.config = config or CheckpointConfig()
		self._lock = asyncio.Lock()
		self._is_repo: bool | None = None

	@classmethod
	def for_workspace(
		cls, workspace: str | Path, config: CheckpointConfig | None = None,
	) -> WorkspaceCheckpointer:
		"""Shared instance for `workspace` on the running event loop.

		Locks are bound to the loop they were first used on, so each loop gets
		its own instance.
		"""
		key = Path(workspace).resolve()
		instances = cls._registry.setdefault(asyncio.get_running_loop(), {})
		existing = instances.get(key)
		if existing is None:
			existing = cls(key, config)
			instances[key] = existing
		return existing

	@property
	def locked(self) -> bool:
		return self._lock.locked()

	async def is_repository(self) -> bool:
		if self._is_repo is None:
			if not self.workspace.is_dir():
				self._is_repo = False
			else:
				ok, _ = await self._run_git("rev-parse", "--git-dir")
				self._is_repo = ok
				if not ok:
					logger.warning("Workspace %s is not a git repository; checkpoints disabled", self.workspace)
		return self._is_repo

	async def checkpoint(self, tag: str, attempt: int = 1) -> str | None:
		"""Record a checkpoint before an attempt runs.

		Attempt 1 keeps whatever is already in the workspace. Later attempts
		first roll back to purge output of the failed previous attempt.
		Returns the checkpoint commit hash, or None when checkpoints are disabled.
		"""
		if not await self.is_repository():
			return None
		async with self._lock:
			if attempt > 1:
				await self._rollback_locked(f"retry of {tag}")
			await self._git("add", "-A")
			await self._git("commit", "--allow-empty", "-m", f"checkpoint: {tag} (attempt {attempt})")
			head = await self._head_locked()
		logger.info("Checkpoint %s attempt %d at %s", tag, attempt, head)
		return head

	async def rollback(self, reason: str = "") -> list[str]:
		"""Discard everything since the last commit.

		Two phases: reset tracked files to HEAD, then remove untracked files
		and directories. Returns the paths that were discarded.
		"""
		if not await self.is_repository():
			return []
		async with self._lock:
			return await self._rollback_locked(reason)

	async def commit(self, tag: str) -> str | None:
		"""Commit the workspace after a successful, validated attempt."""
		if not await self.is_repository():
			return None
		async with self._lock:
			await self._git("add", "-A")
			await self._git("commit", "--allow-empty", "-m", f"{tag}: completed")
			head = await self._head_locked()
		logger.info("Committed %s at %s", tag, head)
		return head

	async def head(self) -> str | None:
		if not await self.is_repository():
			return None
		async with self._lock:
			return await self._head_locked()

	async def _rollback_locked(self, reason: str) -> list[str]:
		status = await self._git("status", "--porcelain")
		contaminated = [line[3:] for line in status.splitlines() if len(line) > 3]
		if await self._head_locked() is not None:
			await self._git("reset", "--hard", "HEAD")
		await self._git("clean", "-fd")
		if contaminated:
			logger.info(
				"Rolled back %d path(s) in %s (%s)",
				len(contaminated), self.workspace, reason or "no reason given",
			)
		return contaminated

	async def _head_locked(self) -> str | None:
		ok, output = await self._run_git("rev-parse", "HEAD")
		return output.strip() if ok else None

	async def _git(self, *args: str) -> str:
		"""Run git, retrying lock conflicts with exponential backoff."""
		retries = max(self.config.lock_retries, 1)
		output = ""
		for attempt in range(1, retries + 1):
			ok, output = await self._run_git(*args)
			if ok:
				return output
			if not is_lock_conflict(output):
				raise CheckpointError(
					f"git {args[0]} failed in {self.workspace}: {output.strip()}",
					kind=ErrorKind.TRANSIENT_INFRA,
					context={"args": list(args)},
				)
			if attempt < retries:
				delay = 2 ** (attempt - 1) * self.config.lock_backoff_seconds
				logger.warning(
					"git lock conflict on %s (attempt %d/%d), retrying in %.1fs",
					args[0], attempt, retries, delay,
				)
				await asyncio.sleep(delay)
		raise CheckpointError(
			f"git {args[0]} still locked after {retries} attempts: {output.strip()}",
			kind=ErrorKind.TRANSIENT_INFRA,
			context={"args": list(args)},
		)

	async def _run_git(self, *args: str) -> tuple[bool, str]:
		"""Run a git command in self.workspace."""
		env = {
			**os.environ,
			"GIT_AUTHOR_NAME": self.config.author_name,
			"GIT_AUTHOR_EMAIL": self.config.author_email,
			"GIT_COMMITTER_NAME": self.config.author_name,
			"GIT_COMMITTER_EMAIL": self.config.author_email,
		}
		proc = await asyncio.create_subprocess_exec(
			"git", *args,
			cwd=self.workspace,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT,
			env=env,
		)
		stdout, _ = await proc.communicate()
		output = stdout.decode(errors="replace") if stdout else ""
		return (proc.returncode == 0, output)
