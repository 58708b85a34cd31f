"""Pydantic request/response schemas for the Decision Mart API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class Initiative(BaseModel):
    """A funding candidate. All descriptive fields are opaque free text."""
    initiative_id: str = ""
    initiative_name: str = ""
    strategic_objective_alignment_description: str = ""
    expected_financial_benefit: str = ""
    expected_non_financial_benefit: str = ""
    delivery_risk_assessment: str = ""
    cross_program_dependencies: str = ""
    resource_capacity_impact: str = ""
    regulatory_or_compliance_impact: str = ""
    timeline_estimate: str = ""
    investment_size_estimate: str = ""


class EvaluateRequest(BaseModel):
    initiative: Initiative = Field(default_factory=Initiative)
    # Validated by the funding model so errors name the offending dimension.
    criterion_scores: dict[str, Any]
    weights: dict[str, Any] | None = None


class EvaluationOut(BaseModel):
    composite_score: float
    composite_score_exact: float
    outcome: str
    scores: dict[str, int]
    weights: dict[str, float]


class BoardDecisionCreate(BaseModel):
    decision_id: str | None = None
    initiative_id: str = ""
    composite_score: float
    decision_outcome: str
    board_rationale: str = ""


class BoardDecisionOut(BaseModel):
    decision_id: str
    initiative_id: str
    composite_score: float
    decision_outcome: str
    board_rationale: str
    timestamp: str | None = None


class PortfolioRow(BaseModel):
    project_id: int
    project_name: str
    planned_benefit_value: float | None = None
    risk_severity: str | None = None


class SimulationOut(BaseModel):
    initiative_name: str
    scoring_breakdown: dict[str, int]
    weighted_composite_score: float
    decision_outcome: str
    board_rationale_summary: str
    identified_conditions_or_risk_mitigations: list[str] = []
    executive_action_recommendation: str = ""
    decision_id: str | None = None


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    message: str
    history: list[ChatMessage] = []


class ChatResponse(BaseModel):
    reply: str
    tool_calls: list[str] = []


class ImportResult(BaseModel):
    programs: int
    projects_created: int
    projects_updated: int
    skipped_rows: int
