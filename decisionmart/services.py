"""Shared business logic for the Decision Mart API, assistant and MCP server."""
from __future__ import annotations

import logging
import math
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import literal_column, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from decisionmart.funding import (
    COMPOSITE_MAX,
    COMPOSITE_MIN,
    DEFAULT_WEIGHTS,
    OUTCOME_LABELS,
    SCALE_DESCRIPTION,
    ScoreProvider,
    ValidationError,
    classify,
    evaluate,
    threshold_table,
)
from decisionmart.models import BenefitProfile, BoardDecision, Project, RiskRegister
from decisionmart.schemas import Initiative
from decisionmart.scorer import LLMScoreProvider
from decisionmart.utils import load_governance

log = logging.getLogger(__name__)

PORTFOLIO_LIMIT = 100

DECISION_FIELDS = (
    "decision_id", "initiative_id", "composite_score", "decision_outcome", "board_rationale",
)


class DuplicateDecisionError(Exception):
    """A ledger entry with this decision_id already exists."""


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def decision_summary(d: BoardDecision) -> dict[str, Any]:
    result = {f: getattr(d, f) for f in DECISION_FIELDS}
    result["timestamp"] = d.timestamp.isoformat() if d.timestamp else None
    return result


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


def query_portfolio(session: Session, limit: int = PORTFOLIO_LIMIT) -> list[dict[str, Any]]:
    """Projects joined with their benefit profile and risk register."""
    rows = session.execute(
        select(
            Project.id, Project.name,
            BenefitProfile.planned_benefit_value, RiskRegister.risk_severity,
        )
        .join(BenefitProfile, BenefitProfile.project_id == Project.id)
        .join(RiskRegister, RiskRegister.project_id == Project.id)
        .order_by(Project.id)
        .limit(max(1, limit))
    ).all()
    return [
        {"project_id": pid, "project_name": name,
         "planned_benefit_value": benefit, "risk_severity": severity}
        for pid, name, benefit, severity in rows
    ]


# ---------------------------------------------------------------------------
# Board decision ledger
# ---------------------------------------------------------------------------


def _check_decision(composite: Any, outcome: str) -> float:
    if isinstance(composite, bool) or not isinstance(composite, (int, float)) or not math.isfinite(composite):
        raise ValidationError(f"composite_score must be a number, got {composite!r}")
    composite = float(composite)
    if not COMPOSITE_MIN <= composite <= COMPOSITE_MAX:
        raise ValidationError(
            f"composite_score must be between {COMPOSITE_MIN} and {COMPOSITE_MAX}, got {composite}"
        )
    if outcome not in OUTCOME_LABELS:
        raise ValidationError(f"decision_outcome must be one of {list(OUTCOME_LABELS)}, got {outcome!r}")
    expected = classify(composite).value
    if outcome != expected:
        raise ValidationError(
            f"decision_outcome {outcome!r} does not match composite {composite} (expected {expected!r})"
        )
    return composite


def _decision_exists(session: Session, decision_id: str) -> bool:
    return session.execute(
        select(BoardDecision.decision_id).where(BoardDecision.decision_id == decision_id)
    ).first() is not None


def record_board_decision(session: Session, data: dict[str, Any]) -> BoardDecision:
    """Append one decision to the ledger and commit. Existing rows are never touched."""
    decision_id = str(data.get("decision_id") or "").strip() or uuid.uuid4().hex
    composite = _check_decision(data.get("composite_score"), str(data.get("decision_outcome") or ""))
    if _decision_exists(session, decision_id):
        raise DuplicateDecisionError(f"Board decision '{decision_id}' already exists")

    decision = BoardDecision(
        decision_id=decision_id,
        initiative_id=str(data.get("initiative_id") or ""),
        composite_score=composite,
        decision_outcome=data["decision_outcome"],
        board_rationale=str(data.get("board_rationale") or ""),
        timestamp=datetime.now(UTC),
    )
    session.add(decision)
    try:
        session.commit()
    except IntegrityError as exc:
        # Another writer inserted the same id between the check and the commit.
        session.rollback()
        raise DuplicateDecisionError(f"Board decision '{decision_id}' already exists") from exc
    except Exception:
        session.rollback()
        raise
    log.info("Recorded board decision %s (%s, %.2f)", decision_id, decision.decision_outcome, composite)
    return decision


def list_board_decisions(session: Session) -> list[dict[str, Any]]:
    """All ledger entries, newest first."""
    rows = session.execute(
        select(BoardDecision).order_by(
            BoardDecision.timestamp.desc(), literal_column("Board_Decisions.rowid").desc(),
        )
    ).scalars().all()
    return [decision_summary(d) for d in rows]


# ---------------------------------------------------------------------------
# Evaluation & simulation
# ---------------------------------------------------------------------------


def _ensure_provider(provider: ScoreProvider | None) -> ScoreProvider:
    return provider if provider is not None else LLMScoreProvider()


async def run_board_simulation(
    session: Session | None,
    initiative: Initiative,
    provider: ScoreProvider | None = None,
    persist: bool = False,
) -> dict[str, Any]:
    """Rate an initiative with the provider, then evaluate it deterministically.

    When *persist* is set the result is appended to the ledger (needs *session*).
    """
    provider = _ensure_provider(provider)
    assessment = await provider.score(initiative)
    result = evaluate(initiative, assessment.scores)

    out: dict[str, Any] = {
        "initiative_name": initiative.initiative_name,
        "scoring_breakdown": assessment.scores.as_dict(),
        "weighted_composite_score": result.display_score,
        "decision_outcome": result.outcome.value,
        "board_rationale_summary": assessment.rationale,
        "identified_conditions_or_risk_mitigations": list(assessment.conditions),
        "executive_action_recommendation": assessment.recommendation,
        "decision_id": None,
    }
    if persist:
        if session is None:
            raise ValueError("persist=True requires a session")
        decision = record_board_decision(session, {
            "initiative_id": initiative.initiative_id or initiative.initiative_name,
            "composite_score": result.composite_score,
            "decision_outcome": result.outcome.value,
            "board_rationale": assessment.rationale,
        })
        out["decision_id"] = decision.decision_id
    return out


def funding_model() -> dict[str, Any]:
    """Weights, thresholds and monitoring triggers of the funding decision model."""
    monitoring = load_governance().get("simulation_framework", {}).get("monitoring", {})
    return {
        "scoring_method": "Weighted multi-criteria scoring",
        "weights": DEFAULT_WEIGHTS.as_dict(),
        "scale": SCALE_DESCRIPTION,
        "thresholds": threshold_table(),
        "outcomes": list(OUTCOME_LABELS),
        "monitoring": monitoring,
    }


def governance_pack() -> dict[str, Any]:
    return load_governance()
