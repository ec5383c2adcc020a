"""Review analysis provider chain.

Providers are tried in order (Gemini -> OpenAI -> heuristic); the first one that
returns a result wins. An analyzer returns None to be skipped (no API key,
empty or unparsable response) and raises when the call itself failed; either
way the chain moves on. The heuristic evaluator never fails, so the chain
always produces an analysis.

LLM payloads are validated with pydantic, clamped to [0, 1], and
`undisclosed_ad_risk` is forced to 0 for external reviews (disclosure status
cannot be confirmed for text we did not collect ourselves).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict
from typing import Any, Protocol

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from storetrust.models.review import ReviewSource
from storetrust.services.heuristic import (
    AnalysisInput,
    AnalysisResult,
    clamp01,
    heuristic_analyze_review,
    round4,
)
from storetrust.services.http_retry import request_with_retry
from storetrust.settings import get_settings

logger = logging.getLogger("uvicorn.error")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

PROMPT_HEADER = (
    "Analyze the review below and answer with a single JSON object only.\n"
    "Fields: adRisk, undisclosedAdRisk, lowQualityRisk, trustScore, confidence, "
    "signals (string[]), reasonSummary\n"
    "Every score is a decimal between 0 and 1.\n"
    "Criteria (reviews are mostly Korean):\n"
    "- adRisk: likelihood the review is advertising or sponsored\n"
    "- undisclosedAdRisk: always return 0\n"
    "- lowQualityRisk: little evidence, spam, or thoughtless rating\n"
    "- trustScore: factual, first-hand experience\n"
    "Review data:"
)

ANALYSIS_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "adRisk": {"type": "number", "minimum": 0, "maximum": 1},
        "undisclosedAdRisk": {"type": "number", "minimum": 0, "maximum": 1},
        "lowQualityRisk": {"type": "number", "minimum": 0, "maximum": 1},
        "trustScore": {"type": "number", "minimum": 0, "maximum": 1},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "signals": {"type": "array", "items": {"type": "string"}},
        "reasonSummary": {"type": "string"},
    },
    "required": [
        "adRisk",
        "undisclosedAdRisk",
        "lowQualityRisk",
        "trustScore",
        "confidence",
        "signals",
        "reasonSummary",
    ],
}


class LlmAnalysisPayload(BaseModel):
    """Shape we accept from an LLM. Missing scores fall back to neutral values."""

    ad_risk: float = Field(0.0, validation_alias=AliasChoices("adRisk", "ad_risk"))
    undisclosed_ad_risk: float = Field(
        0.0, validation_alias=AliasChoices("undisclosedAdRisk", "undisclosed_ad_risk")
    )
    low_quality_risk: float = Field(0.0, validation_alias=AliasChoices("lowQualityRisk", "low_quality_risk"))
    trust_score: float = Field(0.5, validation_alias=AliasChoices("trustScore", "trust_score"))
    confidence: float = 0.5
    signals: list[str] = Field(default_factory=list)
    reason_summary: str = Field(
        "Could not read a reason from the model output.",
        validation_alias=AliasChoices("reasonSummary", "reason_summary"),
    )


def _extract_first_json_object(text: str) -> dict[str, Any] | None:
    """Best-effort extraction of the first JSON object from a string."""
    text = text.strip()
    if not text:
        return None
    if text.startswith("{") and text.endswith("}"):
        try:
            parsed = json.loads(text)
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            pass
    m = re.search(r"\{[\s\S]*\}", text)
    if not m:
        return None
    try:
        parsed = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def normalize_payload(
    payload: dict[str, Any],
    data: AnalysisInput,
    *,
    provider: str,
    model: str,
    version: str,
) -> AnalysisResult | None:
    """Validate and clamp an LLM payload. Returns None when it does not validate."""
    try:
        parsed = LlmAnalysisPayload.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"[analysis] {provider} payload rejected: {e.error_count()} errors")
        return None

    undisclosed = clamp01(parsed.undisclosed_ad_risk)
    if data.source == ReviewSource.EXTERNAL:
        undisclosed = 0.0

    return AnalysisResult(
        ad_risk=round4(clamp01(parsed.ad_risk)),
        undisclosed_ad_risk=round4(undisclosed),
        low_quality_risk=round4(clamp01(parsed.low_quality_risk)),
        trust_score=round4(clamp01(parsed.trust_score)),
        confidence=round4(clamp01(parsed.confidence)),
        signals=[s for s in parsed.signals if s],
        reason_summary=parsed.reason_summary,
        provider=provider,
        model=model,
        version=version,
    )


def build_prompt(data: AnalysisInput) -> str:
    review = {
        "rating": data.rating,
        "content": data.content,
        "isDisclosedAd": data.is_disclosed_ad,
    }
    return PROMPT_HEADER + "\n" + json.dumps(review, ensure_ascii=False)


class Analyzer(Protocol):
    name: str

    async def analyze(self, data: AnalysisInput) -> AnalysisResult | None: ...


class GeminiAnalyzer:
    """Gemini generateContent with a JSON response mime type."""

    name = "gemini"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str | None = None,
        model: str | None = None,
        version: str | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_review_model
        self.version = version or settings.analysis_version

    async def analyze(self, data: AnalysisInput) -> AnalysisResult | None:
        if not self.api_key:
            return None

        url = f"{GEMINI_BASE_URL}/models/{self.model}:generateContent"
        body = {
            "contents": [{"parts": [{"text": build_prompt(data)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "temperature": 0,
                "topP": 0,
            },
        }
        response = await request_with_retry(
            self.client,
            "POST",
            url,
            params={"key": self.api_key},
            json=body,
        )
        payload = response.json()

        text = ""
        candidates = payload.get("candidates") if isinstance(payload, dict) else None
        if isinstance(candidates, list) and candidates:
            parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
            if parts and isinstance(parts[0], dict) and isinstance(parts[0].get("text"), str):
                text = parts[0]["text"]
        if not text:
            return None

        parsed = _extract_first_json_object(text)
        if parsed is None:
            return None
        return normalize_payload(parsed, data, provider=self.name, model=self.model, version=self.version)


class OpenAIAnalyzer:
    """OpenAI Responses API with a strict JSON schema."""

    name = "openai"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        version: str | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_review_model
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.version = version or settings.analysis_version

    @staticmethod
    def _output_text(payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        if isinstance(payload.get("output_text"), str):
            return payload["output_text"]
        # Raw Responses API shape: output[].content[].text
        for item in payload.get("output") or []:
            if not isinstance(item, dict):
                continue
            for content in item.get("content") or []:
                if isinstance(content, dict) and isinstance(content.get("text"), str):
                    return content["text"]
        return ""

    async def analyze(self, data: AnalysisInput) -> AnalysisResult | None:
        if not self.api_key:
            return None

        body = {
            "model": self.model,
            "input": build_prompt(data),
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "review_analysis",
                    "schema": ANALYSIS_JSON_SCHEMA,
                    "strict": True,
                }
            },
        }
        response = await request_with_retry(
            self.client,
            "POST",
            f"{self.base_url}/responses",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=body,
        )
        text = self._output_text(response.json())
        if not text:
            return None

        parsed = _extract_first_json_object(text)
        if parsed is None:
            return None
        return normalize_payload(parsed, data, provider=self.name, model=self.model, version=self.version)


class HeuristicAnalyzer:
    name = "heuristic"

    def __init__(self, version: str | None = None):
        self.version = version or get_settings().analysis_version

    async def analyze(self, data: AnalysisInput) -> AnalysisResult:
        return heuristic_analyze_review(data, version=self.version)


class AnalyzerChain:
    """Ordered list of analyzers; the first non-None result wins."""

    def __init__(self, analyzers: list[Analyzer]):
        if not analyzers:
            raise ValueError("AnalyzerChain needs at least one analyzer")
        self.analyzers = list(analyzers)
        self._fallback = HeuristicAnalyzer()

    async def analyze(self, data: AnalysisInput) -> AnalysisResult:
        for analyzer in self.analyzers:
            try:
                result = await analyzer.analyze(data)
            except Exception as e:
                logger.warning(f"[analysis] {analyzer.name} failed: {e}")
                continue
            if result is not None:
                return result
        # Chains without a heuristic tail still always answer.
        return await self._fallback.analyze(data)


def build_default_chain(client: httpx.AsyncClient) -> AnalyzerChain:
    """Gemini -> OpenAI -> heuristic, configured from Settings."""
    return AnalyzerChain([GeminiAnalyzer(client), OpenAIAnalyzer(client), HeuristicAnalyzer()])


def analysis_to_dict(result: AnalysisResult) -> dict[str, Any]:
    """Plain-dict form used in snapshots and API payloads."""
    data = asdict(result)
    return {
        "adRisk": data["ad_risk"],
        "undisclosedAdRisk": data["undisclosed_ad_risk"],
        "lowQualityRisk": data["low_quality_risk"],
        "trustScore": data["trust_score"],
        "confidence": data["confidence"],
        "signals": data["signals"],
        "reasonSummary": data["reason_summary"],
        "provider": data["provider"],
        "model": data["model"],
        "version": data["version"],
    }
