"""OpenAI-backed candidate ranker for staged license records."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from app.models.records import LicenseRecord
from app.services.errors import UpstreamError
from app.services.sourcing.selector import RankedChoice, SelectionCriteria

try:  # pragma: no cover - import guard for optional dependency
    from openai import APIConnectionError, APIStatusError, AsyncOpenAI
except Exception:  # pragma: no cover - openai not installed in some environments
    AsyncOpenAI = None  # type: ignore[assignment]
    APIConnectionError = APIStatusError = None  # type: ignore[assignment,misc]

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are a contractor selection assistant. Your task is to rank contractors by suitability for a job.

RANKING CRITERIA (in order of importance):
1. Geographic proximity - Same city is best, nearby cities are good
2. Trade match - Exact trade match is best (e.g., HVAC for HVAC job)
3. License status - Active licenses preferred over unknown
4. Classification - More specific classifications indicate specialization

OUTPUT FORMAT (JSON only):
{{
  "selected": [
    {{"idx": 0, "score": 95, "reason": "Same city, exact trade match, active license"}},
    {{"idx": 5, "score": 82, "reason": "Nearby city, trade match"}}
  ]
}}

Select up to {limit} contractors. Score from 0-100. Higher is better."""

DEFAULT_SCORE = 50
DEFAULT_REASON = "AI selected"


class ChatCompletionClient(Protocol):
    """Minimal contract for an async chat completion call."""

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
    ) -> str:
        ...


class AsyncOpenAIChatClient(ChatCompletionClient):
    """Thin wrapper around the official async OpenAI client.

    SDK retries are disabled; retry policy belongs to the caller's backoff executor.
    """

    def __init__(self, api_key: str, *, timeout: float = 30.0) -> None:
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required to rank candidates with AI.")
        if AsyncOpenAI is None:  # pragma: no cover - import guard
            raise ImportError("openai package is not installed.")
        self._client = AsyncOpenAI(api_key=api_key, max_retries=0, timeout=timeout)

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
    ) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except APIStatusError as exc:
            raise UpstreamError(
                f"OpenAI returned HTTP {exc.status_code}",
                status_code=exc.status_code,
                code="502_OPENAI_UPSTREAM",
            ) from exc
        except APIConnectionError as exc:
            raise UpstreamError("OpenAI connection failed", code="502_OPENAI_UPSTREAM") from exc
        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            raise ValueError("OpenAI response did not include message content.")
        return content.strip()


def summarize_candidates(candidates: Sequence[LicenseRecord]) -> list[dict[str, Any]]:
    return [
        {
            "idx": idx,
            "id": record.id,
            "name": record.full_name or record.business_name or "Unknown",
            "trade": record.trade_type or "Unknown",
            "city": record.city or "Unknown",
            "state": record.state or "Unknown",
            "license_status": record.license_status or "unknown",
            "classification": record.license_classification or "Unknown",
        }
        for idx, record in enumerate(candidates)
    ]


def render_user_prompt(summaries: list[dict[str, Any]], criteria: SelectionCriteria, limit: int) -> str:
    return (
        "Select the best contractors for this job:\n\n"
        "JOB DETAILS:\n"
        f"- Location: {criteria.job_city}, {criteria.job_state}\n"
        f"- Trade Needed: {criteria.trade_needed}\n\n"
        "AVAILABLE CONTRACTORS:\n"
        f"{json.dumps(summaries, indent=2)}\n\n"
        f"Return the top {limit} contractors ranked by suitability."
    )


def parse_json_payload(raw_text: str) -> dict[str, Any]:
    """Best-effort JSON decoding that tolerates code fences or prose."""
    candidate = raw_text.strip()
    if candidate.startswith("```"):
        candidate = "\n".join(line for line in candidate.splitlines() if not line.strip().startswith("```")).strip()
    if candidate.startswith("{") and candidate.endswith("}"):
        return json.loads(candidate)
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end != -1 and end > start:
        return json.loads(candidate[start : end + 1])
    raise ValueError("Response did not contain JSON object.")


def parse_ranking(raw_text: str, candidates: Sequence[LicenseRecord], limit: int) -> list[RankedChoice]:
    """Map ``{"selected": [{"idx", "score", "reason"}]}`` back onto candidate ids."""
    payload = parse_json_payload(raw_text)
    picks = payload.get("selected")
    if not isinstance(picks, list):
        raise ValueError("Invalid AI response format")
    choices: list[RankedChoice] = []
    for item in picks:
        if not isinstance(item, dict):
            continue
        idx = item.get("idx")
        if not isinstance(idx, int) or isinstance(idx, bool) or not 0 <= idx < len(candidates):
            continue
        score = item.get("score") or DEFAULT_SCORE
        choices.append(
            RankedChoice(
                id=candidates[idx].id,
                score=int(score) if isinstance(score, (int, float)) else DEFAULT_SCORE,
                reason=str(item.get("reason") or DEFAULT_REASON),
            )
        )
    return choices[:limit]


class OpenAICandidateRanker:
    """Ranks candidates with a chat model against a fixed suitability rubric."""

    def __init__(
        self,
        client: ChatCompletionClient,
        *,
        model: str = "gpt-4o-mini",
        temperature: float = 0.0,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature

    async def rank(
        self,
        candidates: Sequence[LicenseRecord],
        criteria: SelectionCriteria,
        limit: int,
    ) -> list[RankedChoice]:
        summaries = summarize_candidates(candidates)
        raw = await self._client.complete(
            system_prompt=SYSTEM_PROMPT_TEMPLATE.format(limit=limit),
            user_prompt=render_user_prompt(summaries, criteria, limit),
            model=self._model,
            temperature=self._temperature,
        )
        choices = parse_ranking(raw, candidates, limit)
        logger.info(
            "ranker.completed",
            extra={"model": self._model, "candidates": len(candidates), "selected": len(choices)},
        )
        return choices
