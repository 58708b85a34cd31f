from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from decisionmart import services
from decisionmart.db import init_db, session_scope
from decisionmart.funding import ContractViolation, ValidationError, evaluate
from decisionmart.schemas import Initiative
from decisionmart.scorer import LLMCallError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def decisionmart_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Decision Mart",
    instructions=(
        "Decision Mart holds a sample transformation portfolio and an append-only ledger of "
        "investment board decisions. Start with get_funding_model() to see the weights and "
        "thresholds, query_portfolio() to browse projects, evaluate_initiative() to score an "
        "initiative deterministically, and record_board_decision() to persist the outcome."
    ),
    lifespan=decisionmart_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _llm_error(exc: LLMCallError) -> dict:
    return {"error": f"LLM call failed: {exc}", "retryable": exc.retryable}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("decisionmart://overview")
def decisionmart_overview() -> str:
    """Overview of Decision Mart: data model, workflow, and decision outcomes."""
    model = services.funding_model()
    return json.dumps({
        "system": "Decision Mart: Portfolio Decision Support",
        "data_model": {
            "program": "A group of related transformation projects.",
            "project": "A portfolio project with a planned benefit value and a risk severity.",
            "board_decision": "Immutable ledger entry: initiative, composite score, outcome, rationale.",
        },
        "workflow": [
            "1. get_funding_model(): criteria, weights and thresholds.",
            "2. query_portfolio(): projects with benefits and risk severity.",
            "3. evaluate_initiative(...): composite score and outcome from six 1-5 ratings.",
            "4. simulate_board_decision(...): let the LLM rate an initiative, then evaluate it.",
            "5. record_board_decision(...) / list_board_decisions(): the decision ledger.",
        ],
        "weights": model["weights"],
        "thresholds": model["thresholds"],
        "scale": model["scale"],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Portfolio & funding model
# ---------------------------------------------------------------------------


@mcp.tool()
def query_portfolio(limit: int = 100) -> list[dict]:
    """List portfolio projects with planned benefit value and risk severity."""
    with session_scope() as session:
        return services.query_portfolio(session, limit=max(1, min(limit, 500)))


@mcp.tool()
def get_funding_model() -> dict:
    """Criteria weights, decision thresholds, rating scale and monitoring triggers."""
    return services.funding_model()


@mcp.tool()
def evaluate_initiative(
    strategic_alignment: int, benefit_value: int, delivery_risk: int,
    dependency_complexity: int, capacity_availability: int, regulatory_impact: int,
    initiative_name: str = "",
) -> dict:
    """Compute the weighted composite score and decision outcome from six 1-5 ratings.

    Args:
        strategic_alignment: 1-5 rating (weight 0.30).
        benefit_value: 1-5 rating (weight 0.25).
        delivery_risk: 1-5 rating (weight 0.15).
        dependency_complexity: 1-5 rating (weight 0.10).
        capacity_availability: 1-5 rating (weight 0.10).
        regulatory_impact: 1-5 rating (weight 0.10).
        initiative_name: Optional label echoed in the result.
    """
    scores = {
        "strategic_alignment": strategic_alignment, "benefit_value": benefit_value,
        "delivery_risk": delivery_risk, "dependency_complexity": dependency_complexity,
        "capacity_availability": capacity_availability, "regulatory_impact": regulatory_impact,
    }
    try:
        result = evaluate(Initiative(initiative_name=initiative_name), scores)
    except ValidationError as exc:
        return {"error": str(exc), "dimension": exc.dimension}
    except ContractViolation as exc:
        return {"error": f"Internal consistency error: {exc}"}
    return {"initiative_name": initiative_name, **result.as_dict()}


@mcp.tool()
async def simulate_board_decision(
    initiative_name: str,
    strategic_objective_alignment_description: str = "",
    expected_financial_benefit: str = "",
    expected_non_financial_benefit: str = "",
    delivery_risk_assessment: str = "",
    cross_program_dependencies: str = "",
    resource_capacity_impact: str = "",
    regulatory_or_compliance_impact: str = "",
    timeline_estimate: str = "",
    investment_size_estimate: str = "",
    persist: bool = False,
) -> dict:
    """Have the LLM rate an initiative, then compute its composite score and outcome.

    Set persist=True to append the result to the board decision ledger.
    """
    initiative = Initiative(
        initiative_name=initiative_name,
        strategic_objective_alignment_description=strategic_objective_alignment_description,
        expected_financial_benefit=expected_financial_benefit,
        expected_non_financial_benefit=expected_non_financial_benefit,
        delivery_risk_assessment=delivery_risk_assessment,
        cross_program_dependencies=cross_program_dependencies,
        resource_capacity_impact=resource_capacity_impact,
        regulatory_or_compliance_impact=regulatory_or_compliance_impact,
        timeline_estimate=timeline_estimate,
        investment_size_estimate=investment_size_estimate,
    )
    with session_scope() as session:
        try:
            return await services.run_board_simulation(session, initiative, persist=persist)
        except LLMCallError as exc:
            return _llm_error(exc)
        except ValidationError as exc:
            return {"error": f"Simulation rejected: {exc}", "dimension": exc.dimension}


# ---------------------------------------------------------------------------
# Tools: Ledger
# ---------------------------------------------------------------------------


@mcp.tool()
def record_board_decision(
    composite_score: float, decision_outcome: str,
    initiative_id: str = "", board_rationale: str = "", decision_id: str = "",
) -> dict[str, Any]:
    """Append a board decision to the ledger. The outcome must match the composite score's band."""
    with session_scope() as session:
        try:
            decision = services.record_board_decision(session, {
                "decision_id": decision_id, "initiative_id": initiative_id,
                "composite_score": composite_score, "decision_outcome": decision_outcome,
                "board_rationale": board_rationale,
            })
        except (ValidationError, services.DuplicateDecisionError) as exc:
            return {"error": str(exc)}
        return {"status": "saved", **services.decision_summary(decision)}


@mcp.tool()
def list_board_decisions() -> list[dict]:
    """All recorded board decisions, newest first."""
    with session_scope() as session:
        return services.list_board_decisions(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Decision Mart MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
