"""LLM scoring oracle for board simulations.

The model reads an initiative dossier and returns six 1-5 criterion ratings plus
free-text rationale, conditions and an executive recommendation. It is asked for
a composite and an outcome too (so the prompt mirrors the board framework), but
those are ignored: the composite and outcome are always recomputed by
``decisionmart.funding.evaluate`` from the validated ratings.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from decisionmart.config import LLMSettings, Settings
from decisionmart.funding import (
    CRITERIA,
    DEFAULT_WEIGHTS,
    SCALE_DESCRIPTION,
    ScoredAssessment,
    ValidationError,
    compute_composite,
    threshold_table,
    validate_scores,
)
from decisionmart.schemas import Initiative
from decisionmart.utils import json_parse, load_governance

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


_DEFAULT_MODELS = {
    "gemini": "gemini-flash-latest",
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def _strip_fences(text: str) -> str:
    m = _FENCE_RE.search(text)
    return m.group(1) if m else text


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Gemini, Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        settings: LLMSettings | None = None,
    ):
        self._settings = settings or Settings.from_env().llm
        self.provider = provider or self._settings.provider
        self.model = model or self._settings.model
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider not in _DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = self.model or _DEFAULT_MODELS[self.provider]
        if self.provider == "gemini":
            from google import genai
            key = self._api_key or self._settings.gemini_api_key
            if not key:
                raise LLMCallError("GEMINI_API_KEY is not set", retryable=False)
            self._client = genai.Client(api_key=key)
        elif self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or self._settings.anthropic_api_key or None
            )
        else:
            import openai
            kwargs: dict[str, Any] = {}
            key = self._api_key or self._settings.openai_api_key
            if key:
                kwargs["api_key"] = key
            url = self._base_url or self._settings.openai_base_url
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "gemini":
                from google.genai import types
                response = await self._client.aio.models.generate_content(
                    model=self.model,
                    contents=user,
                    config=types.GenerateContentConfig(
                        system_instruction=system,
                        response_mime_type="application/json",
                        temperature=0.3,
                        max_output_tokens=4096,
                    ),
                )
                text = _strip_fences((response.text or "").strip())
            elif self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=2048,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = _strip_fences(response.content[0].text.strip())
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=2048,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        parsed = json_parse(text, None)
        if not isinstance(parsed, dict):
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False)
        return parsed


# ---------------------------------------------------------------------------
# Prompt & dossier
# ---------------------------------------------------------------------------


def _simulation_framework() -> dict[str, Any]:
    return load_governance().get("simulation_framework", {})


def build_board_system_prompt() -> str:
    role = _simulation_framework().get("system_role", {})
    return f"""\
ROLE: {role.get("role", "Enterprise Investment Board Simulation Engine")}
MANDATE: {role.get("mandate", "")}
EVALUATION STANDARD: {role.get("evaluation_standard", "")}

FUNDING ALGORITHM WEIGHTS:
{json.dumps(DEFAULT_WEIGHTS.as_dict())}

SCALE: {SCALE_DESCRIPTION}

DECISION THRESHOLDS:
{json.dumps(threshold_table())}

INSTRUCTIONS:
1. Analyze the initiative details objectively.
2. Score each of the 6 criteria with a whole number from 1 to 5.
3. Calculate the weighted composite score using the provided weights.
4. Determine the decision outcome based on the thresholds.
5. Provide a professional board rationale and executive recommendations.
6. Return ONLY a valid JSON object of this shape:
{{
  "initiative_name": "<name>",
  "scoring_breakdown": {{
    "strategic_alignment_score": <1-5>,
    "expected_benefit_value_score": <1-5>,
    "delivery_risk_score": <1-5>,
    "dependency_complexity_score": <1-5>,
    "capacity_availability_score": <1-5>,
    "regulatory_impact_score": <1-5>
  }},
  "weighted_composite_score": <number>,
  "decision_outcome": "<Approve|Approve with conditions|Defer|Reject>",
  "board_rationale_summary": "<2-4 sentences>",
  "identified_conditions_or_risk_mitigations": ["<condition>"],
  "executive_action_recommendation": "<one sentence>"
}}
"""


# (label, attribute_name)
_DOSSIER_FIELDS: list[tuple[str, str]] = [
    ("INITIATIVE", "initiative_name"),
    ("INITIATIVE ID", "initiative_id"),
    ("STRATEGIC OBJECTIVE ALIGNMENT", "strategic_objective_alignment_description"),
    ("EXPECTED FINANCIAL BENEFIT", "expected_financial_benefit"),
    ("EXPECTED NON-FINANCIAL BENEFIT", "expected_non_financial_benefit"),
    ("DELIVERY RISK", "delivery_risk_assessment"),
    ("CROSS-PROGRAM DEPENDENCIES", "cross_program_dependencies"),
    ("RESOURCE CAPACITY IMPACT", "resource_capacity_impact"),
    ("REGULATORY / COMPLIANCE IMPACT", "regulatory_or_compliance_impact"),
    ("TIMELINE ESTIMATE", "timeline_estimate"),
    ("INVESTMENT SIZE ESTIMATE", "investment_size_estimate"),
]


def build_initiative_dossier(initiative: Initiative) -> str:
    """Labelled dossier of the initiative's non-empty fields."""
    sections = ["Evaluate this transformation initiative based on the provided details."]
    for label, attr in _DOSSIER_FIELDS:
        val = getattr(initiative, attr, "")
        if val:
            sections.append(f"{label}: {val}")
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

# scoring_breakdown key -> criterion
BREAKDOWN_KEYS: dict[str, str] = {
    "strategic_alignment_score": "strategic_alignment",
    "expected_benefit_value_score": "benefit_value",
    "delivery_risk_score": "delivery_risk",
    "dependency_complexity_score": "dependency_complexity",
    "capacity_availability_score": "capacity_availability",
    "regulatory_impact_score": "regulatory_impact",
}


def _as_rating(value: Any) -> Any:
    """Accept digit strings ("4") as ints; everything else goes to validation as-is."""
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return value


def parse_assessment(raw: dict[str, Any], source: str = "") -> ScoredAssessment:
    """Validate the model's ratings and keep its text as opaque rationale."""
    breakdown = raw.get("scoring_breakdown")
    if not isinstance(breakdown, dict):
        raise ValidationError("LLM response has no scoring_breakdown object")
    ratings: dict[str, Any] = {}
    for key, criterion in BREAKDOWN_KEYS.items():
        if key in breakdown:
            ratings[criterion] = _as_rating(breakdown[key])
        elif criterion in breakdown:
            ratings[criterion] = _as_rating(breakdown[criterion])
    missing = [c for c in CRITERIA if c not in ratings]
    if missing:
        raise ValidationError(f"LLM response is missing a rating for {missing[0]}", dimension=missing[0])
    scores = validate_scores(ratings)

    conditions = raw.get("identified_conditions_or_risk_mitigations", [])
    if not isinstance(conditions, list):
        conditions = []
    return ScoredAssessment(
        scores=scores,
        rationale=str(raw.get("board_rationale_summary", "")),
        conditions=[str(c) for c in conditions[:10]],
        recommendation=str(raw.get("executive_action_recommendation", "")),
        source=source,
    )


class LLMScoreProvider:
    """ScoreProvider backed by an LLM; ratings are validated, never clamped."""

    def __init__(self, client: LLMClient | None = None, system_prompt: str | None = None):
        self.client = client or LLMClient()
        self.system_prompt = system_prompt or build_board_system_prompt()

    async def score(self, initiative: Initiative) -> ScoredAssessment:
        raw = await self.client.call(self.system_prompt, build_initiative_dossier(initiative))
        assessment = parse_assessment(raw, source=f"{self.client.provider}:{self.client.model}")
        log.debug("LLM claimed composite %r for %s, recomputed %.4f",
                  raw.get("weighted_composite_score"), initiative.initiative_name,
                  compute_composite(assessment.scores))
        return assessment
