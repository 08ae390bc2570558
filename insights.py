"""Category suggestion and spending insights backed by a text-generation model.

Model output is treated as untrusted data: it is parsed as JSON, validated and
matched against the user's own categories. Nothing the model returns is ever
executed or written to the store.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Awaitable, Hashable, Optional, Protocol, Sequence

import google.generativeai as genai
from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein

from categories import CategoryRegistry
from config import get_settings
from schemas import Category, SpendingInsights, Transaction


logger = logging.getLogger(__name__)

MIN_TRANSACTIONS_FOR_INSIGHTS = 3


class InsightError(ValueError):
    pass


class NoSuggestion(InsightError):
    pass


class CategoryAmbiguous(InsightError):
    pass


class MalformedResponse(InsightError):
    pass


class UpstreamUnavailable(InsightError):
    pass


class InsufficientData(InsightError):
    pass


class StaleResponse(InsightError):
    pass


class TextGenerator(Protocol):
    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        ...


class GeminiTextGenerator:
    def __init__(self, api_key: Optional[str], model_name: str) -> None:
        self.model_name = model_name
        self._api_key = api_key
        if api_key:
            genai.configure(api_key=api_key)

    def _model(self, json_output: bool):
        generation_config = {"temperature": 0.2, "max_output_tokens": 1024}
        if json_output:
            generation_config["response_mime_type"] = "application/json"
        return genai.GenerativeModel(
            model_name=self.model_name, generation_config=generation_config
        )

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        if not self._api_key:
            raise UpstreamUnavailable("Text generation is not configured")
        try:
            response = await self._model(json_output).generate_content_async(prompt)
            return response.text.strip()
        except Exception as exc:
            logger.warning(f"gemini_failed: model={self.model_name} error={exc}")
            raise UpstreamUnavailable(
                "Text generation failed, please try again"
            ) from exc


def build_text_generator() -> GeminiTextGenerator:
    settings = get_settings()
    return GeminiTextGenerator(settings.gemini_api_key, settings.gemini_model)


class RequestGate:
    """Tracks the latest request parameters per channel.

    A response is current only while no newer request with different
    parameters has been started on the same channel. Entries are dropped once
    the latest request on a channel has finished.
    """

    def __init__(self) -> None:
        self._latest: dict[str, Hashable] = {}
        self._lock = threading.Lock()

    def begin(self, channel: str, key: Hashable) -> None:
        with self._lock:
            self._latest[channel] = key

    def __len__(self) -> int:
        return len(self._latest)

    def discard(self, channel: str, key: Hashable) -> None:
        with self._lock:
            if self._latest.get(channel) == key:
                del self._latest[channel]

    def check(self, channel: str, key: Hashable) -> None:
        with self._lock:
            latest = self._latest.get(channel, key)
            if latest == key:
                self._latest.pop(channel, None)
                return
        raise StaleResponse("A newer request superseded this one")

    async def run(self, channel: str, key: Hashable, call: Awaitable[str]) -> str:
        """Await ``call`` as the latest request on ``channel``."""
        self.begin(channel, key)
        try:
            result = await call
        except Exception:
            self.discard(channel, key)
            raise
        self.check(channel, key)
        return result


def _first_json_object(text: str) -> dict:
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise MalformedResponse("Model response contained no JSON object")
    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError as exc:
        raise MalformedResponse("Model response was not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedResponse("Model response was not a JSON object")
    return data


def resolve_category(candidate: str, categories: Sequence[Category]) -> str:
    """Map a model answer onto a known category id.

    Accepts an exact id, an exact name (case-insensitive) or a name within one
    edit. Several equally close names are ambiguous.
    """
    value = candidate.strip()
    if not value:
        raise NoSuggestion("No category suggested")
    for category in categories:
        if category.id == value:
            return category.id

    value_lower = value.lower()
    for category in categories:
        if category.name.strip().lower() == value_lower:
            return category.id

    best_distance: Optional[int] = None
    best: list[Category] = []
    for category in categories:
        dist = int(Levenshtein.distance(value_lower, category.name.strip().lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [category]
        elif dist == best_distance:
            best.append(category)

    if best_distance is not None and best_distance <= 1:
        if len(best) > 1:
            raise CategoryAmbiguous(
                f"Suggestion matches several categories: "
                f"{', '.join(c.name for c in best)}"
            )
        return best[0].id
    raise NoSuggestion("Suggested category is not in the category list")


class InsightAdapter:
    def __init__(
        self, generator: TextGenerator, gate: Optional[RequestGate] = None
    ) -> None:
        self.generator = generator
        self.gate = gate if gate is not None else RequestGate()

    async def suggest_category(
        self,
        description: str,
        categories: Sequence[Category],
        *,
        channel: str = "suggest",
    ) -> str:
        description = description.strip()
        if not description:
            raise ValueError("Description cannot be empty")
        if not categories:
            raise NoSuggestion("No categories to choose from")

        key = (description, tuple(c.id for c in categories))
        listing = json.dumps(
            [{"id": c.id, "name": c.name} for c in categories], ensure_ascii=False
        )
        prompt = (
            f'Transaction description: "{description}".\n'
            "Pick the single most appropriate expense category from this list "
            f"(name and id):\n{listing}\n\n"
            "Only use one of the listed ids. Reply with JSON only, in the form "
            '{"categoryId": "ID"}.'
        )
        text = await self.gate.run(
            channel, key, self.generator.generate(prompt, json_output=True)
        )

        data = _first_json_object(text)
        candidate = data.get("categoryId")
        if not isinstance(candidate, str):
            raise NoSuggestion("No category suggested")
        category_id = resolve_category(candidate, categories)
        logger.info(f"category_suggested: category_id={category_id}")
        return category_id

    async def summarize(
        self,
        transactions: Sequence[Transaction],
        budget_total: int,
        registry: CategoryRegistry,
        *,
        channel: str = "insights",
    ) -> SpendingInsights:
        if len(transactions) < MIN_TRANSACTIONS_FOR_INSIGHTS:
            raise InsufficientData(
                f"At least {MIN_TRANSACTIONS_FOR_INSIGHTS} transactions are needed "
                "to generate insights"
            )

        key = (tuple(t.id for t in transactions), budget_total)
        rows = [
            {
                "date": t.date.isoformat(),
                "type": t.type.value,
                "category": registry.name_for(t.category_id),
                "amount": t.amount,
                "description": t.description,
            }
            for t in transactions
        ]
        prompt = (
            "You are an experienced financial planner reviewing a Japanese "
            "household budget book. Amounts are in yen.\n\n"
            f"# Transactions\n{json.dumps(rows, ensure_ascii=False)}\n\n"
            f"# Budget for the period\n{budget_total} yen\n\n"
            "# Instructions\n"
            "1. Start with one positive observation.\n"
            "2. Point out categories or periods where spending ran over budget.\n"
            "3. Give three concrete, actionable ideas to save more.\n"
            "Reply with JSON only in this structure:\n"
            '{"summary": "...", "budgetOverruns": ["..."], '
            '"recommendations": ["...", "...", "..."]}'
        )
        text = await self.gate.run(
            channel, key, self.generator.generate(prompt, json_output=True)
        )

        data = _first_json_object(text)
        try:
            insights = SpendingInsights.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"insights_malformed: errors={exc.error_count()}")
            raise MalformedResponse("Model response had an unexpected shape") from exc
        logger.info(
            f"insights_generated: transactions={len(transactions)} "
            f"overruns={len(insights.overruns)}"
        )
        return insights
