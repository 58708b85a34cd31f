"""Tests for the LLM scoring oracle, the LLM client wrapper and the portfolio assistant."""
from __future__ import annotations

import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from decisionmart import assistant, services
from decisionmart.config import LLMSettings
from decisionmart.db import seed_sample_portfolio
from decisionmart.funding import Outcome, ValidationError, evaluate
from decisionmart.models import Base
from decisionmart.schemas import Initiative
from decisionmart.scorer import (
    LLMCallError,
    LLMClient,
    LLMScoreProvider,
    build_board_system_prompt,
    build_initiative_dossier,
    parse_assessment,
)


@pytest.fixture()
def session():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    seed_sample_portfolio(eng)
    sess = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)()
    try:
        yield sess
    finally:
        sess.close()


def _llm_response(**breakdown_overrides) -> dict:
    breakdown = {
        "strategic_alignment_score": 5,
        "expected_benefit_value_score": 4,
        "delivery_risk_score": 3,
        "dependency_complexity_score": 4,
        "capacity_availability_score": 3,
        "regulatory_impact_score": 5,
    }
    breakdown.update(breakdown_overrides)
    return {
        "initiative_name": "Claims Automation",
        "scoring_breakdown": breakdown,
        "weighted_composite_score": 1.7,
        "decision_outcome": "Reject",
        "board_rationale_summary": "Strong alignment with the claims strategy.",
        "identified_conditions_or_risk_mitigations": ["Stage-gate vendor selection", "Ring-fence SMEs"],
        "executive_action_recommendation": "Fund phase 1.",
    }


def _mock_client(*responses: dict) -> MagicMock:
    client = MagicMock()
    client.provider = "mock"
    client.model = "mock-model"
    client.call = AsyncMock(side_effect=list(responses))
    return client


# =========================================================================
# Prompt & dossier
# =========================================================================

class TestPrompts:
    def test_system_prompt_carries_weights_and_thresholds(self):
        prompt = build_board_system_prompt()
        assert "Enterprise Investment Board" in prompt
        assert '"strategic_alignment": 0.3' in prompt
        assert '"Approve": ">= 4.0"' in prompt
        assert "strategic_alignment_score" in prompt

    def test_dossier_lists_non_empty_fields(self):
        dossier = build_initiative_dossier(Initiative(
            initiative_name="Claims Automation",
            delivery_risk_assessment="Vendor lock-in",
            timeline_estimate="",
        ))
        lines = dossier.splitlines()
        assert lines[0].startswith("Evaluate this transformation initiative")
        assert "INITIATIVE: Claims Automation" in lines
        assert "DELIVERY RISK: Vendor lock-in" in lines
        assert not any(line.startswith("TIMELINE ESTIMATE") for line in lines)


# =========================================================================
# Response parsing
# =========================================================================

class TestParseAssessment:
    def test_valid_response(self):
        assessment = parse_assessment(_llm_response(), source="mock")
        assert assessment.scores.as_dict() == {
            "strategic_alignment": 5, "benefit_value": 4, "delivery_risk": 3,
            "dependency_complexity": 4, "capacity_availability": 3, "regulatory_impact": 5,
        }
        assert assessment.rationale.startswith("Strong alignment")
        assert assessment.conditions == ["Stage-gate vendor selection", "Ring-fence SMEs"]
        assert assessment.recommendation == "Fund phase 1."
        assert assessment.source == "mock"

    def test_digit_strings_and_whole_floats_accepted(self):
        assessment = parse_assessment(_llm_response(delivery_risk_score="2", regulatory_impact_score=4.0))
        assert assessment.scores["delivery_risk"] == 2
        assert assessment.scores["regulatory_impact"] == 4

    def test_out_of_range_rating_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_assessment(_llm_response(strategic_alignment_score=6))
        assert exc_info.value.dimension == "strategic_alignment"

    def test_missing_rating_rejected(self):
        raw = _llm_response()
        del raw["scoring_breakdown"]["capacity_availability_score"]
        with pytest.raises(ValidationError) as exc_info:
            parse_assessment(raw)
        assert exc_info.value.dimension == "capacity_availability"

    def test_missing_breakdown_rejected(self):
        with pytest.raises(ValidationError):
            parse_assessment({"decision_outcome": "Approve"})

    def test_conditions_not_a_list(self):
        raw = _llm_response()
        raw["identified_conditions_or_risk_mitigations"] = "none"
        assert parse_assessment(raw).conditions == []


class TestLLMScoreProvider:
    @pytest.mark.asyncio
    async def test_claimed_composite_is_ignored(self):
        client = _mock_client(_llm_response())
        provider = LLMScoreProvider(client=client, system_prompt="SYSTEM")
        assessment = await provider.score(Initiative(initiative_name="Claims Automation"))
        result = evaluate(None, assessment.scores)
        assert result.composite_score == pytest.approx(4.15)
        assert result.outcome is Outcome.APPROVE
        assert assessment.source == "mock:mock-model"
        system, user = client.call.call_args.args
        assert system == "SYSTEM"
        assert "INITIATIVE: Claims Automation" in user

    @pytest.mark.asyncio
    async def test_logs_claimed_and_recomputed_composite(self, caplog):
        provider = LLMScoreProvider(client=_mock_client(_llm_response()), system_prompt="SYSTEM")
        with caplog.at_level(logging.DEBUG, logger="decisionmart.scorer"):
            await provider.score(Initiative(initiative_name="Claims Automation"))
        message = next(r.getMessage() for r in caplog.records if "claimed composite" in r.getMessage())
        assert "1.7" in message
        assert "recomputed 4.1500" in message

    @pytest.mark.asyncio
    async def test_simulation_rejects_bad_rating(self, session: Session):
        client = _mock_client(_llm_response(delivery_risk_score=0))
        provider = LLMScoreProvider(client=client, system_prompt="SYSTEM")
        with pytest.raises(ValidationError):
            await services.run_board_simulation(
                session, Initiative(initiative_name="X"), provider, persist=True,
            )
        assert services.list_board_decisions(session) == []


# =========================================================================
# LLM client
# =========================================================================

def _openai_client(content: str | None = None, error: Exception | None = None) -> LLMClient:
    client = LLMClient(provider="openai", api_key="test-key", settings=LLMSettings())
    completion = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])
    create = AsyncMock(side_effect=error) if error else AsyncMock(return_value=completion)
    client._client = MagicMock()
    client._client.chat.completions.create = create
    return client


class TestLLMClient:
    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="bogus", settings=LLMSettings())

    def test_gemini_requires_key(self):
        with pytest.raises(LLMCallError) as exc_info:
            LLMClient(provider="gemini", settings=LLMSettings())
        assert exc_info.value.retryable is False

    def test_default_model_per_provider(self):
        client = LLMClient(provider="openai", api_key="test-key", settings=LLMSettings())
        assert client.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_call_parses_json(self):
        client = _openai_client(json.dumps({"reply": "hi"}))
        assert await client.call("system", "user") == {"reply": "hi"}
        kwargs = client._client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    @pytest.mark.asyncio
    async def test_invalid_json_not_retryable(self):
        client = _openai_client("not json at all")
        with pytest.raises(LLMCallError) as exc_info:
            await client.call("system", "user")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_api_failure_retryable(self):
        client = _openai_client(error=RuntimeError("connection reset"))
        with pytest.raises(LLMCallError) as exc_info:
            await client.call("system", "user")
        assert exc_info.value.retryable is True


# =========================================================================
# Portfolio assistant
# =========================================================================

class TestAssistant:
    @pytest.mark.asyncio
    async def test_direct_reply(self, session: Session):
        client = _mock_client({"reply": "Hello."})
        result = await assistant.chat(session, "Hi", client=client)
        assert result.reply == "Hello."
        assert result.tool_calls == []

    @pytest.mark.asyncio
    async def test_fetch_portfolio_tool(self, session: Session):
        client = _mock_client(
            {"tool": "fetch_portfolio_initiative_data", "args": {}},
            {"reply": "There are 9 projects."},
        )
        result = await assistant.chat(
            session, "How many projects?",
            history=[{"role": "user", "content": "Hello"}, {"role": "assistant", "content": "Hi"}],
            client=client,
        )
        assert result.reply == "There are 9 projects."
        assert result.tool_calls == ["fetch_portfolio_initiative_data"]
        second_prompt = client.call.call_args_list[1].args[1]
        assert "USER: Hello" in second_prompt
        assert "TOOL RESULT (fetch_portfolio_initiative_data)" in second_prompt
        assert "Omnichannel Claims Portal" in second_prompt

    @pytest.mark.asyncio
    async def test_persist_tool_writes_ledger(self, session: Session):
        client = _mock_client(
            {"tool": "persist_board_decision", "args": {
                "decision_id": "BD-42", "initiative_id": "202", "composite_score": 2.7,
                "decision_outcome": "Defer", "board_rationale": "Dependencies unresolved.",
            }},
            {"reply": "Recorded."},
        )
        result = await assistant.chat(session, "Record a defer for 202", client=client)
        assert result.reply == "Recorded."
        rows = services.list_board_decisions(session)
        assert [r["decision_id"] for r in rows] == ["BD-42"]

    @pytest.mark.asyncio
    async def test_rejected_tool_call_reported_to_model(self, session: Session):
        client = _mock_client(
            {"tool": "persist_board_decision", "args": {
                "composite_score": 4.5, "decision_outcome": "Reject",
            }},
            {"reply": "That outcome does not match the score."},
        )
        result = await assistant.chat(session, "Reject it", client=client)
        assert result.tool_calls == ["persist_board_decision"]
        assert services.list_board_decisions(session) == []
        second_prompt = client.call.call_args_list[1].args[1]
        assert "does not match" in second_prompt

    @pytest.mark.asyncio
    async def test_unknown_tool(self, session: Session):
        client = _mock_client({"tool": "drop_tables", "args": {}}, {"reply": "Done."})
        result = await assistant.chat(session, "Drop everything", client=client)
        assert result.reply == "Done."
        assert "Unknown tool: drop_tables" in client.call.call_args_list[1].args[1]

    @pytest.mark.asyncio
    async def test_tool_rounds_are_capped(self, session: Session):
        loop = {"tool": "fetch_board_decisions", "args": {}}
        client = _mock_client(loop, loop, loop, loop)
        result = await assistant.chat(session, "Loop forever", client=client)
        assert result.reply == assistant.FALLBACK_REPLY
        assert len(result.tool_calls) == assistant.MAX_TOOL_ROUNDS
        assert client.call.await_count == assistant.MAX_TOOL_ROUNDS + 1

    @pytest.mark.asyncio
    async def test_empty_reply_falls_back(self, session: Session):
        client = _mock_client({"reply": "   "})
        result = await assistant.chat(session, "Hi", client=client)
        assert result.reply == assistant.FALLBACK_REPLY
