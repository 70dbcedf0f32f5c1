"""Agent catalogue, phase mapping, deliverable filenames and default limits."""

from __future__ import annotations

VULN_TYPES: tuple[str, ...] = ("injection", "xss", "auth", "ssrf", "authz")

PHASES: tuple[str, ...] = (
	"pre-recon",
	"recon",
	"vulnerability-analysis",
	"exploitation",
	"reporting",
)

DELIVERABLES_DIR = "deliverables"
REPORT_FILENAME = "comprehensive_security_assessment_report.md"


def vuln_agent(vuln_type: str) -> str:
	return f"{vuln_type}-vuln"


def exploit_agent(vuln_type: str) -> str:
	return f"{vuln_type}-exploit"


def analysis_deliverable(vuln_type: str) -> str:
	return f"{vuln_type}_analysis_deliverable.md"


def exploitation_queue(vuln_type: str) -> str:
	return f"{vuln_type}_exploitation_queue.json"


def exploitation_evidence(vuln_type: str) -> str:
	return f"{vuln_type}_exploitation_evidence.md"


AGENT_PHASE_MAP: dict[str, str] = {
	"pre-recon": "pre-recon",
	"recon": "recon",
	**{vuln_agent(t): "vulnerability-analysis" for t in VULN_TYPES},
	**{exploit_agent(t): "exploitation" for t in VULN_TYPES},
	"report": "reporting",
}

ALL_AGENTS: tuple[str, ...] = tuple(AGENT_PHASE_MAP)

# Deliverables checked by the output validator for agents without a queue pair
AGENT_DELIVERABLES: dict[str, str] = {
	"pre-recon": "code_analysis_deliverable.md",
	"recon": "recon_deliverable.md",
	**{exploit_agent(t): exploitation_evidence(t) for t in VULN_TYPES},
	"report": REPORT_FILENAME,
}

# Deliverable types accepted by the save_deliverable tool, mapped to filenames
DELIVERABLE_TYPES: dict[str, str] = {
	"code_analysis": "code_analysis_deliverable.md",
	"recon": "recon_deliverable.md",
	**{f"{t}_analysis": analysis_deliverable(t) for t in VULN_TYPES},
	**{f"{t}_queue": exploitation_queue(t) for t in VULN_TYPES},
	**{f"{t}_evidence": exploitation_evidence(t) for t in VULN_TYPES},
}

MAX_ERROR_CHARS = 2000

DEFAULT_LIMITS: dict[str, int] = {
	"max_attempts": 3,
	"max_output_validation_attempts": 3,
	"checkpoint_lock_retries": 5,
	"runner_timeout": 7200,
	"testing_runner_timeout": 1800,
	"heartbeat_interval": 2,
	"max_concurrent_pipelines": 5,
}
