# backend/callintel/services/call_analysis_service.py
"""
Insight extraction for call transcripts, through an OpenAI chat completion in
JSON mode. Model output is normalized against the configured taxonomies before
anything is persisted.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from callintel.core.config import Settings, settings as default_settings
from callintel.core.exceptions import UpstreamProviderError
from callintel.schemas.schemas import AnalysisResult

logger = logging.getLogger(__name__)

FRICTION_TYPES = [
    "menu_confusion", "tool_failure", "long_pause", "pricing_objection",
    "policy_issue", "handoff_needed", "other",
]
SUGGESTION_TYPES = ["script", "menu_data", "tooling", "training"]
ENTITY_KEYS = ["items_mentioned", "modifiers_mentioned", "prices_discussed", "names_captured"]

SYSTEM_PROMPT = "You are a restaurant call analysis expert. Always return valid JSON."


def build_analysis_prompt(transcript_text: str, turns: List[Dict[str, Any]], settings: Settings) -> str:
    turn_lines = "\n".join(
        f"[{turn.get('start')}s - {turn.get('end')}s] {turn.get('speaker', 'unknown')}: {turn.get('text', '')}"
        for turn in turns or []
    )
    structured = f"\n# Structured Turns\n{turn_lines}\n" if turn_lines else ""

    return f"""You are analyzing a restaurant phone call conversation.
Extract structured insights from the transcript.

# Transcript
{transcript_text}
{structured}
# Analysis Required

Respond with a JSON object with this structure:

{{
  "summary": "2-4 sentence summary of the call",
  "intent_primary": "{'|'.join(settings.ALLOWED_INTENTS)}",
  "intents_secondary": ["other intents from the same list"],
  "outcome": "{'|'.join(settings.ALLOWED_OUTCOMES)}",
  "sentiment": "{'|'.join(settings.ALLOWED_SENTIMENTS)}",
  "friction_points": [
    {{"type": "{'|'.join(FRICTION_TYPES)}", "detail": "what went wrong", "timestamp": 123.4}}
  ],
  "improvement_suggestions": [
    {{"type": "{'|'.join(SUGGESTION_TYPES)}", "title": "short title", "proposed_change": "what to change"}}
  ],
  "extracted_entities": {{
    "items_mentioned": [],
    "modifiers_mentioned": [],
    "prices_discussed": [],
    "names_captured": []
  }},
  "quality_score": 0
}}

# Quality Score Guidelines
- 90-100: smooth conversation, clear outcome, no issues
- 70-89: minor issues, successful outcome
- 50-69: some friction, resolved or partially resolved
- 0-49: significant issues, abandoned, or escalated

Return ONLY valid JSON."""


def _pick(value: Any, allowed: List[str], fallback: str) -> str:
    if isinstance(value, str):
        candidate = value.strip().lower()
        if candidate in allowed:
            return candidate
    return fallback


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def normalize_analysis(data: Dict[str, Any], settings: Settings, raw: Optional[str] = None) -> AnalysisResult:
    """Coerce model output into an AnalysisResult.

    Unknown taxonomy values fall back to other/unresolved/neutral, the quality
    score is clamped to 0..100, and list/dict fields default to empty.
    """
    intent_fallback = "other" if "other" in settings.ALLOWED_INTENTS else settings.ALLOWED_INTENTS[-1]
    outcome_fallback = "unresolved" if "unresolved" in settings.ALLOWED_OUTCOMES else settings.ALLOWED_OUTCOMES[-1]
    sentiment_fallback = "neutral" if "neutral" in settings.ALLOWED_SENTIMENTS else settings.ALLOWED_SENTIMENTS[0]

    intent_primary = _pick(data.get("intent_primary"), settings.ALLOWED_INTENTS, intent_fallback)
    intents_secondary = []
    for intent in _string_list(data.get("intents_secondary")):
        intent = intent.lower()
        if intent in settings.ALLOWED_INTENTS and intent != intent_primary and intent not in intents_secondary:
            intents_secondary.append(intent)

    friction_points = []
    for item in data.get("friction_points") or []:
        if not isinstance(item, dict):
            continue
        timestamp = item.get("timestamp")
        friction_points.append({
            "type": _pick(item.get("type"), FRICTION_TYPES, "other"),
            "detail": str(item.get("detail") or ""),
            "timestamp": timestamp if isinstance(timestamp, (int, float)) else 0,
        })

    suggestions = []
    for item in data.get("improvement_suggestions") or []:
        if not isinstance(item, dict):
            continue
        suggestion = {
            "type": _pick(item.get("type"), SUGGESTION_TYPES, "script"),
            "title": str(item.get("title") or ""),
            "proposed_change": str(item.get("proposed_change") or ""),
        }
        if item.get("item"):
            suggestion["item"] = str(item["item"])
        suggestions.append(suggestion)

    entities_in = data.get("extracted_entities") if isinstance(data.get("extracted_entities"), dict) else {}
    extracted_entities = {key: _string_list(entities_in.get(key)) for key in ENTITY_KEYS}

    score = data.get("quality_score")
    try:
        quality_score = max(0, min(100, int(round(float(score))))) if score is not None else None
    except (TypeError, ValueError):
        quality_score = None

    summary = data.get("summary")
    return AnalysisResult(
        summary=str(summary).strip() if summary else None,
        intent_primary=intent_primary,
        intents_secondary=intents_secondary,
        outcome=_pick(data.get("outcome"), settings.ALLOWED_OUTCOMES, outcome_fallback),
        sentiment=_pick(data.get("sentiment"), settings.ALLOWED_SENTIMENTS, sentiment_fallback),
        friction_points=friction_points,
        improvement_suggestions=suggestions,
        extracted_entities=extracted_entities,
        quality_score=quality_score,
        raw=raw
    )


class CallAnalysisService:
    """Extracts Insights from a transcript with an LLM."""

    provider_name = "openai"

    def __init__(self, settings: Settings = default_settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self._client = client

    def get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.OPENAI_API_KEY)
        return self._client

    async def analyze(self, transcript_text: str, turns: Optional[List[Dict[str, Any]]] = None) -> AnalysisResult:
        """Run insight extraction.

        Raises:
            UpstreamProviderError: the request failed or the reply was empty or
                not a JSON object. Never returns a placeholder result.
        """
        if not transcript_text or not transcript_text.strip():
            raise UpstreamProviderError("Transcript is empty", provider=self.provider_name, retryable=False)

        prompt = build_analysis_prompt(transcript_text, turns or [], self.settings)

        try:
            response = await self.get_client().chat.completions.create(
                model=self.settings.ANALYSIS_MODEL,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt}
                ],
                temperature=self.settings.ANALYSIS_TEMPERATURE,
                response_format={"type": "json_object"}
            )
        except Exception as e:
            logger.error(f"OpenAI analysis request failed: {e}")
            raise UpstreamProviderError(f"Analysis request failed: {e}", provider=self.provider_name)

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamProviderError("No response from analysis model", provider=self.provider_name)

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Analysis model returned invalid JSON: {e}")
            raise UpstreamProviderError("Analysis model returned invalid JSON", provider=self.provider_name)

        if not isinstance(data, dict):
            raise UpstreamProviderError("Analysis model returned a non-object reply", provider=self.provider_name)

        result = normalize_analysis(data, self.settings, raw=content)
        logger.info(
            f"Analysis complete: intent={result.intent_primary} outcome={result.outcome} "
            f"sentiment={result.sentiment} score={result.quality_score}"
        )
        return result
