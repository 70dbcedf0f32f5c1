"""Tests for session data models and the agent catalogue."""

from __future__ import annotations

import pytest
from conftest import make_record

from pipeline_control.constants import AGENT_PHASE_MAP, ALL_AGENTS, DELIVERABLE_TYPES, PHASES, VULN_TYPES
from pipeline_control.models import (
	AgentMetrics,
	AttemptOutcome,
	AttemptRecord,
	QueueSchema,
	RunContext,
	Session,
	SubPipelineResult,
)


class TestCatalogue:
	def test_every_agent_has_a_known_phase(self) -> None:
		assert len(ALL_AGENTS) == 13
		assert set(AGENT_PHASE_MAP.values()) <= set(PHASES)

	def test_deliverable_types_cover_each_vuln_type(self) -> None:
		for t in VULN_TYPES:
			assert DELIVERABLE_TYPES[f"{t}_queue"] == f"{t}_exploitation_queue.json"


class TestSerialization:
	def test_session_keys(self) -> None:
		data = Session(id="s1", target="https://t").to_dict()
		assert set(data) == {"id", "target", "status", "createdAt"}
		assert Session.from_dict(data) == Session(id="s1", target="https://t", created_at=data["createdAt"])

	def test_attempt_record_optional_fields(self) -> None:
		record = make_record(model=None)
		assert "model" not in record.to_dict()
		assert "error" not in record.to_dict()
		failed = make_record(success=False, error="boom")
		assert AttemptRecord.from_dict("recon", failed.to_dict()) == failed

	def test_agent_metrics_round_trip(self) -> None:
		metrics = AgentMetrics(status="success", attempts=[make_record()], final_duration_ms=1000,
			total_cost_usd=0.5, model="sonnet", checkpoint="abc")
		assert AgentMetrics.from_dict("recon", metrics.to_dict()) == metrics
		assert metrics.next_attempt_number == 2


class TestRunContext:
	def test_summary_counts_all_costs(self) -> None:
		ctx = RunContext(session_id="s1")
		ctx.record(AttemptOutcome(agent_name="recon", success=True, attempts=2, cost_usd=0.4, turns=10))
		ctx.record(AttemptOutcome(agent_name="xss-vuln", success=False, attempts=3, cost_usd=0.3, turns=5))

		summary = ctx.summary()

		assert summary["totalCostUsd"] == pytest.approx(0.7)
		assert summary["totalTurns"] == 15
		assert summary["agentCount"] == 1
		assert summary["agents"]["xss-vuln"]["success"] is False
		assert ctx.completed_agents == ["recon"]


class TestSchemas:
	def test_queue_items_alias(self) -> None:
		assert QueueSchema.model_validate({"vulnerabilities": [1]}).items == [1]
		assert QueueSchema.model_validate({"items": [], "extra": True}).items == []

	def test_sub_pipeline_succeeded(self) -> None:
		assert SubPipelineResult(vuln_type="xss").succeeded
		assert not SubPipelineResult(vuln_type="xss", error="boom").succeeded
