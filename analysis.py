# analysis.py
# =============================================================================
# Progress Analyzer: recent history -> text-completion call -> ProgressInsight.
# Upstream failures degrade to a canned insight; they never reach the caller.
# =============================================================================

from __future__ import annotations

import json
import logging
import os
from typing import Optional, Sequence

import httpx

from insights import determine_trend, extract_macro_adjustments, extract_recommendations
from schemas import MacroOut, ProgressInsight, WeightOut, WorkoutOut

log = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.deepseek.com/v1/chat/completions"
MODEL = "deepseek-chat"
TEMPERATURE = 0.7

UNCONFIGURED_INSIGHT = ProgressInsight(
    trend="stagnating",
    analysis="AI analysis is not available at the moment.",
    recommendations=["Configure DeepSeek API for personalized insights"],
)

DEGRADED_INSIGHT = ProgressInsight(
    trend="stagnating",
    analysis="Unable to generate insights at the moment.",
    recommendations=["Try again later", "Continue tracking your progress"],
)

_PROMPT = """
Analyze this fitness data and provide insights:

Workout History: {workouts}
Weight History: {weights}
Macro History: {macros}

Please analyze:
1. Progress trends in workouts and weight
2. Nutrition patterns and macro distribution
3. Specific recommendations for:
   - Macro adjustments (including carb cycling if applicable)
   - Caloric intake based on activity level
   - Protein requirements for muscle recovery
   - Optimal nutrient timing
4. Recovery strategies based on workout intensity

Provide a concise, actionable analysis with specific macro adjustments if needed.
"""


class UpstreamError(Exception):
    """The completion service answered, but not with something usable."""


def build_prompt(workouts: Sequence[dict], weights: Sequence[dict], macros: Sequence[dict]) -> str:
    return _PROMPT.format(
        workouts=json.dumps(list(workouts), default=str),
        weights=json.dumps(list(weights), default=str),
        macros=json.dumps(list(macros), default=str),
    )


def _content_of(data) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise UpstreamError("Invalid API response format")
    if not isinstance(content, str) or not content:
        raise UpstreamError("Invalid API response format")
    return content


class ProgressAnalyzer:
    """Builds a ProgressInsight from Workout/Weight/Macro history.

    ``api_key`` falls back to ``DEEPSEEK_API_KEY`` at call time. ``transport``
    is handed to httpx so tests can intercept (and count) outbound calls.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self.api_url = api_url or os.getenv("DEEPSEEK_API_URL", DEFAULT_API_URL)
        self.timeout = timeout if timeout is not None else float(os.getenv("DEEPSEEK_TIMEOUT", "60"))
        self.transport = transport

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key or os.getenv("DEEPSEEK_API_KEY") or None

    async def analyze(
        self,
        workouts: Sequence[WorkoutOut],
        weights: Sequence[WeightOut],
        macros: Sequence[MacroOut],
        exercise: Optional[str] = None,
    ) -> ProgressInsight:
        api_key = self.api_key
        if not api_key:
            return UNCONFIGURED_INSIGHT.model_copy(deep=True)

        workout_data = [w for w in workouts if w.exercise == exercise] if exercise else list(workouts)
        weight_data = [{"weight": w.weight, "date": w.date} for w in weights]
        macro_data = [
            {"calories": m.calories, "protein": m.protein, "carbs": m.carbs, "fats": m.fats, "date": m.date}
            for m in macros
        ]
        prompt = build_prompt(
            [w.model_dump(mode="json") for w in workout_data], weight_data, macro_data
        )

        try:
            analysis = await self._complete(api_key, prompt)
        except (httpx.HTTPError, UpstreamError, ValueError) as e:
            log.error(f"AI analysis failed: {e}")
            return DEGRADED_INSIGHT.model_copy(deep=True)

        return ProgressInsight(
            trend=determine_trend(workout_data, weights),
            analysis=analysis,
            recommendations=extract_recommendations(analysis),
            macro_adjustments=extract_macro_adjustments(analysis),
        )

    async def _complete(self, api_key: str, prompt: str) -> str:
        body = {
            "model": MODEL,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": TEMPERATURE,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            resp = await client.post(self.api_url, json=body, headers=headers)
        if resp.is_error:
            raise UpstreamError(f"API request failed: {resp.status_code} {resp.reason_phrase}")
        return _content_of(resp.json())
