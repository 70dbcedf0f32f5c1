"""TOML configuration loader for pipeline-control."""

from __future__ import annotations

import os
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pipeline_control.constants import DEFAULT_LIMITS


@dataclass
class TargetConfig:
	"""What the pipeline runs against."""

	url: str = ""
	workspace: str = ""
	prompts_dir: str = ""

	@property
	def resolved_workspace(self) -> Path:
		return Path(os.path.expanduser(self.workspace))

	@property
	def resolved_prompts_dir(self) -> Path | None:
		if not self.prompts_dir:
			return None
		return Path(os.path.expanduser(self.prompts_dir))


@dataclass
class RetryConfig:
	"""Attempt budgets and backoff settings for the attempt controller."""

	max_attempts: int = DEFAULT_LIMITS["max_attempts"]
	max_output_validation_attempts: int = DEFAULT_LIMITS["max_output_validation_attempts"]
	base_seconds: float = 1.0
	max_seconds: float = 30.0
	jitter_seconds: float = 1.0
	billing_base_seconds: float = 300.0
	billing_max_seconds: float = 1800.0
	# Retry policy for errors that match no known pattern
	unknown_retryable: bool = True


def testing_retry_config() -> RetryConfig:
	"""Fast retry profile used with --pipeline-testing."""
	return RetryConfig(
		max_attempts=5,
		base_seconds=0.5,
		max_seconds=5.0,
		jitter_seconds=0.5,
		billing_base_seconds=10.0,
		billing_max_seconds=30.0,
	)


@dataclass
class CheckpointConfig:
	"""Workspace checkpoint (git) settings."""

	lock_retries: int = DEFAULT_LIMITS["checkpoint_lock_retries"]
	lock_backoff_seconds: float = 1.0
	author_name: str = "pipeline-control"
	author_email: str = "pipeline-control@localhost"


@dataclass
class RunnerConfig:
	"""Agent runner subprocess settings."""

	command: str = "claude"
	model: str = "sonnet"
	timeout: int = DEFAULT_LIMITS["runner_timeout"]
	testing_timeout: int = DEFAULT_LIMITS["testing_runner_timeout"]
	heartbeat_interval: float = DEFAULT_LIMITS["heartbeat_interval"]
	max_turns: int = 0
	extra_args: list[str] = field(default_factory=list)


@dataclass
class PipelineSettings:
	"""Fan-out and mode settings for the orchestrator."""

	max_concurrent_pipelines: int = DEFAULT_LIMITS["max_concurrent_pipelines"]
	testing: bool = False


@dataclass
class AuditConfig:
	"""Where session documents and logs are written."""

	root: str = "./audit-logs"

	@property
	def resolved_root(self) -> Path:
		return Path(os.path.expanduser(self.root))


@dataclass
class LoggingConfig:
	level: str = "INFO"
	json_format: bool = False


@dataclass
class TracingConfig:
	"""OpenTelemetry tracing settings."""

	enabled: bool = False
	service_name: str = "pipeline-control"
	exporter: str = "console"  # console/otlp
	otlp_endpoint: str = "http://localhost:4317"


@dataclass
class ApiConfig:
	"""Read-only HTTP progress API settings."""

	host: str = "127.0.0.1"
	port: int = 8090


@dataclass
class SecurityConfig:
	"""Extra environment variables passed through to runner subprocesses."""

	extra_env_keys: list[str] = field(default_factory=list)


@dataclass
class PipelineConfig:
	"""Top-level pipeline-control configuration."""

	target: TargetConfig = field(default_factory=TargetConfig)
	retry: RetryConfig = field(default_factory=RetryConfig)
	testing_retry: RetryConfig = field(default_factory=testing_retry_config)
	checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
	runner: RunnerConfig = field(default_factory=RunnerConfig)
	pipeline: PipelineSettings = field(default_factory=PipelineSettings)
	audit: AuditConfig = field(default_factory=AuditConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)
	tracing: TracingConfig = field(default_factory=TracingConfig)
	api: ApiConfig = field(default_factory=ApiConfig)
	security: SecurityConfig = field(default_factory=SecurityConfig)

	@property
	def active_retry(self) -> RetryConfig:
		"""Retry profile for the current mode."""
		return self.testing_retry if self.pipeline.testing else self.retry

	@property
	def active_runner_timeout(self) -> int:
		return self.runner.testing_timeout if self.pipeline.testing else self.runner.timeout


def _build_target(data: dict[str, Any]) -> TargetConfig:
	tc = TargetConfig()
	for key in ("url", "workspace", "prompts_dir"):
		if key in data:
			setattr(tc, key, str(data[key]))
	return tc


def _build_retry(data: dict[str, Any], base: RetryConfig | None = None) -> RetryConfig:
	rc = base or RetryConfig()
	for key in ("max_attempts", "max_output_validation_attempts"):
		if key in data:
			setattr(rc, key, int(data[key]))
	for key in ("base_seconds", "max_seconds", "jitter_seconds", "billing_base_seconds", "billing_max_seconds"):
		if key in data:
			setattr(rc, key, float(data[key]))
	if "unknown_retryable" in data:
		rc.unknown_retryable = bool(data["unknown_retryable"])
	return rc


def _build_checkpoint(data: dict[str, Any]) -> CheckpointConfig:
	cc = CheckpointConfig()
	if "lock_retries" in data:
		cc.lock_retries = int(data["lock_retries"])
	if "lock_backoff_seconds" in data:
		cc.lock_backoff_seconds = float(data["lock_backoff_seconds"])
	if "author_name" in data:
		cc.author_name = str(data["author_name"])
	if "author_email" in data:
		cc.author_email = str(data["author_email"])
	return cc


def _build_runner(data: dict[str, Any]) -> RunnerConfig:
	rc = RunnerConfig()
	if "command" in data:
		rc.command = str(data["command"])
	if "model" in data:
		rc.model = str(data["model"])
	for key in ("timeout", "testing_timeout", "max_turns"):
		if key in data:
			setattr(rc, key, int(data[key]))
	if "heartbeat_interval" in data:
		rc.heartbeat_interval = float(data["heartbeat_interval"])
	if "extra_args" in data:
		rc.extra_args = [str(a) for a in data["extra_args"]]
	return rc


def _build_pipeline(data: dict[str, Any]) -> PipelineSettings:
	ps = PipelineSettings()
	if "max_concurrent_pipelines" in data:
		ps.max_concurrent_pipelines = int(data["max_concurrent_pipelines"])
	if "testing" in data:
		ps.testing = bool(data["testing"])
	return ps


def _build_audit(data: dict[str, Any]) -> AuditConfig:
	ac = AuditConfig()
	if "root" in data:
		ac.root = str(data["root"])
	return ac


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	lc = LoggingConfig()
	if "level" in data:
		lc.level = str(data["level"])
	if "json_format" in data:
		lc.json_format = bool(data["json_format"])
	return lc


def _build_tracing(data: dict[str, Any]) -> TracingConfig:
	tc = TracingConfig()
	if "enabled" in data:
		tc.enabled = bool(data["enabled"])
	if "service_name" in data:
		tc.service_name = str(data["service_name"])
	if "exporter" in data:
		tc.exporter = str(data["exporter"])
	if "otlp_endpoint" in data:
		tc.otlp_endpoint = str(data["otlp_endpoint"])
	return tc


def _build_api(data: dict[str, Any]) -> ApiConfig:
	ac = ApiConfig()
	if "host" in data:
		ac.host = str(data["host"])
	if "port" in data:
		ac.port = int(data["port"])
	return ac


def _build_security(data: dict[str, Any]) -> SecurityConfig:
	sc = SecurityConfig()
	if "extra_env_keys" in data:
		sc.extra_env_keys = [str(k) for k in data["extra_env_keys"]]
	return sc


# Safe system variables passed through to runner subprocesses
_ENV_ALLOWLIST = {
	"HOME", "USER", "LOGNAME", "SHELL", "PATH", "TERM", "LANG", "LC_ALL",
	"TMPDIR", "XDG_CONFIG_HOME", "XDG_CACHE_HOME", "XDG_DATA_HOME",
	"ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "CLAUDE_CODE_OAUTH_TOKEN",
}

# Never passed through, even if listed in extra_env_keys
_ENV_DENYLIST = {
	"AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN",
	"GITHUB_TOKEN", "GH_TOKEN", "GITLAB_TOKEN",
	"NPM_TOKEN", "PYPI_TOKEN",
	"DATABASE_URL", "REDIS_URL",
}


def runner_subprocess_env(
	config: PipelineConfig | None = None,
	overrides: dict[str, str] | None = None,
) -> dict[str, str]:
	"""Build a restricted environment for runner subprocesses.

	Only allowlisted system variables and configured extras pass through.
	Denylisted secrets are stripped, including from overrides.
	"""
	allowed = set(_ENV_ALLOWLIST)
	if config is not None:
		allowed |= set(config.security.extra_env_keys)
	env = {
		k: v for k, v in os.environ.items()
		if k in allowed and k not in _ENV_DENYLIST
	}
	for k, v in (overrides or {}).items():
		if k not in _ENV_DENYLIST:
			env[k] = v
	return env


def load_config(path: str | Path) -> PipelineConfig:
	"""Load a pipeline-control.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed PipelineConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	pc = PipelineConfig()
	if "target" in data:
		pc.target = _build_target(data["target"])
	if "retry" in data:
		pc.retry = _build_retry(data["retry"])
	if "testing_retry" in data:
		pc.testing_retry = _build_retry(data["testing_retry"], testing_retry_config())
	if "checkpoint" in data:
		pc.checkpoint = _build_checkpoint(data["checkpoint"])
	if "runner" in data:
		pc.runner = _build_runner(data["runner"])
	if "pipeline" in data:
		pc.pipeline = _build_pipeline(data["pipeline"])
	if "audit" in data:
		pc.audit = _build_audit(data["audit"])
	if "logging" in data:
		pc.logging = _build_logging(data["logging"])
	if "tracing" in data:
		pc.tracing = _build_tracing(data["tracing"])
	if "api" in data:
		pc.api = _build_api(data["api"])
	if "security" in data:
		pc.security = _build_security(data["security"])
	pc.security.extra_env_keys = [k for k in pc.security.extra_env_keys if k not in _ENV_DENYLIST]
	return pc


def validate_config(config: PipelineConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded PipelineConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	# 1. workspace exists (a non-git workspace only disables checkpointing)
	if not config.target.workspace:
		issues.append(("error", "target.workspace is not set"))
	else:
		workspace = config.target.resolved_workspace
		if not workspace.exists():
			issues.append(("error", f"target.workspace does not exist: {workspace}"))
		elif not (workspace / ".git").exists():
			issues.append(("warning", f"target.workspace is not a git repository, checkpoints disabled: {workspace}"))

	if not config.target.url:
		issues.append(("error", "target.url is not set"))

	# 2. runner command is executable
	if config.runner.command and shutil.which(config.runner.command) is None:
		issues.append(("error", f"runner command not found on PATH: {config.runner.command}"))

	prompts_dir = config.target.resolved_prompts_dir
	if prompts_dir is not None and not prompts_dir.is_dir():
		issues.append(("error", f"target.prompts_dir does not exist: {prompts_dir}"))

	# 3. Budgets
	for name, rc in (("retry", config.retry), ("testing_retry", config.testing_retry)):
		if rc.max_attempts < 1:
			issues.append(("error", f"{name}.max_attempts must be >= 1: {rc.max_attempts}"))
		if rc.max_output_validation_attempts < 1:
			issues.append((
				"error",
				f"{name}.max_output_validation_attempts must be >= 1: {rc.max_output_validation_attempts}",
			))
		if rc.max_seconds < rc.base_seconds:
			issues.append(("warning", f"{name}.max_seconds is below base_seconds"))

	# 4. Suspicious values
	if config.pipeline.max_concurrent_pipelines < 1:
		issues.append(("error", "pipeline.max_concurrent_pipelines must be >= 1"))
	if config.runner.heartbeat_interval >= config.runner.timeout:
		issues.append(("warning", "runner.heartbeat_interval is not shorter than runner.timeout"))
	if config.runner.timeout < 60:
		issues.append(("warning", f"runner.timeout is very low: {config.runner.timeout}s"))
	if not config.retry.unknown_retryable:
		issues.append(("warning", "retry.unknown_retryable is off: unrecognised errors fail immediately"))

	return issues
