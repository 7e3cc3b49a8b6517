from __future__ import annotations

import json
import logging
import re
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from pydantic import TypeAdapter, ValidationError

from config import get_settings
from schemas import MonthlyStats


logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

GEMINI_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)

_CODE_FENCE = re.compile(r"```(?:json)?\n?")
_INSIGHT_LIST = TypeAdapter(list[str])


class InsightGeneratorFailure(RuntimeError):
    pass


class InsightGenerator(Protocol):
    def generate(self, stats: MonthlyStats, period_label: str) -> list[str]: ...


def build_prompt(stats: MonthlyStats, period_label: str) -> str:
    categories = ", ".join(
        f"{category}: ${amount}" for category, amount in stats.by_category.items()
    )
    return (
        "Analyze this financial data and provide 3 concise, actionable insights.\n"
        "Focus on spending patterns and practical advice.\n"
        "Keep it friendly and conversational.\n\n"
        f"Financial Data for {period_label}:\n"
        f"- Total Income: ${stats.total_income}\n"
        f"- Total Expenses: ${stats.total_expenses}\n"
        f"- Net Income: ${stats.net}\n"
        f"- Expense Categories: {categories}\n\n"
        "Format the response as a JSON array of strings, like this:\n"
        '["insight 1", "insight 2", "insight 3"]'
    )


def parse_insights(text: str) -> list[str]:
    cleaned = _CODE_FENCE.sub("", text).strip()
    try:
        insights = _INSIGHT_LIST.validate_json(cleaned)
    except ValidationError as exc:
        raise InsightGeneratorFailure("Insight response is not a JSON list of strings") from exc
    insights = [item.strip() for item in insights if item.strip()]
    if not insights:
        raise InsightGeneratorFailure("Insight response is empty")
    return insights


class GeminiInsightGenerator:
    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key
        self.model = model or settings.gemini_model
        self.timeout = timeout if timeout is not None else settings.http_timeout_secs

    def generate(self, stats: MonthlyStats, period_label: str) -> list[str]:
        if not self.api_key:
            raise InsightGeneratorFailure("FINTRACK_GEMINI_API_KEY is not set")
        text = self._generate_content(build_prompt(stats, period_label))
        insights = parse_insights(text)
        logger.info(f"insights_generated: period={period_label} count={len(insights)}")
        return insights

    def _generate_content(self, prompt: str) -> str:
        url = GEMINI_URL.format(model=quote(self.model, safe="-._"))
        payload = json.dumps(
            {"contents": [{"parts": [{"text": prompt}]}]}
        ).encode("utf-8")
        req = Request(
            url,
            data=payload,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self.api_key,
            },
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                body = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise InsightGeneratorFailure("Failed to reach the insight model") from exc

        try:
            return body["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise InsightGeneratorFailure("Unexpected insight model response") from exc


def generate_insights(
    generator: InsightGenerator, stats: MonthlyStats, period_label: str
) -> list[str]:
    try:
        return generator.generate(stats, period_label)
    except Exception:
        logger.exception(f"insights_fallback: period={period_label}")
        return list(FALLBACK_INSIGHTS)


def get_insight_generator() -> InsightGenerator:
    settings = get_settings()
    return GeminiInsightGenerator(settings.gemini_api_key)
