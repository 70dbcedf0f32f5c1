"""Error taxonomy, classification and retry backoff for agent attempts."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import Any

from pipeline_control.constants import MAX_ERROR_CHARS
from pipeline_control.models import ErrorKind

__all__ = [
	"AgentExecutionError",
	"AttemptsExhaustedError",
	"BackoffPolicy",
	"CheckpointError",
	"Classification",
	"ErrorKind",
	"FatalAgentError",
	"InvalidTransitionError",
	"NO_BACKOFF",
	"RETRYABLE_KINDS",
	"PipelineError",
	"QueueValidationError",
	"SessionStoreError",
	"classify",
	"looks_like_billing_notice",
	"truncate_error",
]

RETRYABLE_KINDS = frozenset({
	ErrorKind.BILLING_OR_QUOTA,
	ErrorKind.TRANSIENT_INFRA,
	ErrorKind.OUTPUT_VALIDATION,
})


class PipelineError(Exception):
	"""Base error carrying a classification and structured context."""

	def __init__(
		self,
		message: str,
		kind: ErrorKind = ErrorKind.TRANSIENT_INFRA,
		retryable: bool | None = None,
		context: dict[str, Any] | None = None,
	) -> None:
		super().__init__(truncate_error(message))
		self.kind = kind
		self.retryable = kind in RETRYABLE_KINDS if retryable is None else retryable
		self.context = context or {}

	@property
	def classification(self) -> Classification:
		return Classification(kind=self.kind, retryable=self.retryable, message=str(self))


class AgentExecutionError(PipelineError):
	"""A single agent attempt failed."""


class FatalAgentError(PipelineError):
	"""A non-retryable agent failure; no further attempts are made."""


class AttemptsExhaustedError(PipelineError):
	"""Every attempt of an agent failed with retryable errors."""


class CheckpointError(PipelineError):
	"""A workspace checkpoint operation failed after internal retries."""


class QueueValidationError(PipelineError):
	"""The deliverable/queue artifact pair of a vulnerability agent is unusable."""


class SessionStoreError(PipelineError):
	"""The session metrics document could not be read or written."""


class InvalidTransitionError(SessionStoreError):
	"""A session status change other than running -> completed|failed."""


@dataclass(frozen=True)
class Classification:
	kind: ErrorKind
	retryable: bool
	message: str = ""


# Ordered: the first matching group wins. Billing is checked first so quota
# notices are never mistaken for other errors, and output-validation is
# checked before the generic "validation" request pattern.
_PATTERNS: tuple[tuple[ErrorKind, bool, tuple[str, ...]], ...] = (
	(ErrorKind.BILLING_OR_QUOTA, True, (
		"billing_error",
		"credit balance is too low",
		"insufficient credits",
		"plans & billing",
		"plans and billing",
		"usage limit reached",
		"quota exceeded",
		"daily rate limit",
		"limit will reset",
		"spending cap",
		"spending limit",
		"cap reached",
		"budget exceeded",
		"billing limit reached",
	)),
	(ErrorKind.AUTHENTICATION, False, ("authentication", "api key", "401")),
	(ErrorKind.PERMISSION, False, ("permission", "forbidden", "403")),
	(ErrorKind.OUTPUT_VALIDATION, True, ("failed output validation", "output validation failed")),
	(ErrorKind.INVALID_REQUEST, False, ("invalid_request_error", "malformed", "validation")),
	(ErrorKind.REQUEST_TOO_LARGE, False, ("request_too_large", "too large", "413")),
	(ErrorKind.CONFIGURATION, False, ("enoent", "no such file", "cli not installed", "not found on path")),
	(ErrorKind.EXECUTION_LIMIT, False, (
		"max turns",
		"error_max_turns",
		"error_max_budget",
		"execution limit",
		"budget",
		"timed out after",
	)),
	(ErrorKind.INVALID_TARGET, False, ("invalid url", "invalid target", "invalid uri")),
)

_RATE_LIMIT_PATTERNS = ("rate limit", "rate_limit", "429")
_BILLING_NOTICE_RE = re.compile(r"\b(?:spending|caps?|limits?|budget|resets?)\b", re.IGNORECASE)


def _message_of(error: object) -> str:
	if isinstance(error, BaseException):
		text = str(error) or type(error).__name__
	else:
		text = str(error)
	return text


def classify(error: object, unknown_retryable: bool = True) -> Classification:
	"""Map a failure signal to a kind and retry disposition.

	Never raises. Errors that already carry a classification are returned as-is;
	anything else is matched case-insensitively against the ordered pattern table.

	Args:
		error: An exception, message string or any object.
		unknown_retryable: Disposition for errors matching no pattern.
	"""
	if isinstance(error, PipelineError):
		return error.classification
	try:
		message = _message_of(error)
	except Exception:
		message = repr(error)
	lowered = message.lower()
	for kind, retryable, patterns in _PATTERNS:
		if any(p in lowered for p in patterns):
			return Classification(kind=kind, retryable=retryable, message=truncate_error(message))
	return Classification(
		kind=ErrorKind.TRANSIENT_INFRA,
		retryable=unknown_retryable,
		message=truncate_error(message),
	)


def is_rate_limited(message: str) -> bool:
	lowered = message.lower()
	return any(p in lowered for p in _RATE_LIMIT_PATTERNS)


def looks_like_billing_notice(text: str | None) -> bool:
	"""True when a nominally successful result reads like a quota/spending notice."""
	return bool(text) and _BILLING_NOTICE_RE.search(text or "") is not None


def truncate_error(message: str, limit: int = MAX_ERROR_CHARS) -> str:
	if len(message) <= limit:
		return message
	suffix = "... [truncated]"
	return message[: limit - len(suffix)] + suffix


@dataclass
class BackoffPolicy:
	"""Delay in seconds before retrying after a classified failure.

	Billing and quota errors back off on a minutes scale; rate limits get a
	linear 30s+ wait; everything else is short exponential with jitter.
	"""

	base_seconds: float = 1.0
	max_seconds: float = 30.0
	jitter_seconds: float = 1.0
	billing_base_seconds: float = 300.0
	billing_max_seconds: float = 1800.0
	rate_limit_base_seconds: float = 30.0
	rate_limit_step_seconds: float = 10.0
	rate_limit_max_seconds: float = 120.0
	rng: random.Random = field(default_factory=random.Random, repr=False)

	@classmethod
	def from_retry_config(cls, retry: Any) -> BackoffPolicy:
		return cls(
			base_seconds=retry.base_seconds,
			max_seconds=retry.max_seconds,
			jitter_seconds=retry.jitter_seconds,
			billing_base_seconds=retry.billing_base_seconds,
			billing_max_seconds=retry.billing_max_seconds,
		)

	def __call__(self, classification: Classification, attempt: int) -> float:
		if classification.kind == ErrorKind.BILLING_OR_QUOTA:
			return min(self.billing_base_seconds * 2 ** (attempt - 1), self.billing_max_seconds)
		if is_rate_limited(classification.message):
			return min(
				self.rate_limit_base_seconds + attempt * self.rate_limit_step_seconds,
				self.rate_limit_max_seconds,
			)
		jitter = self.rng.random() * self.jitter_seconds if self.jitter_seconds > 0 else 0.0
		return min(2 ** attempt * self.base_seconds + jitter, self.max_seconds)


def _no_backoff(classification: Classification, attempt: int) -> float:
	return 0.0


NO_BACKOFF = _no_backoff
