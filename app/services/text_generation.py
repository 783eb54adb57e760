import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

from app.core.config import Settings, settings
from app.core.errors import InvalidRule
from app.services.campaign_store import CampaignStats
from app.services.rule_compiler import parse_rule

logger = logging.getLogger("campaigns.engine")

SUMMARY_FALLBACK = "Could not generate AI summary."

_SUMMARY_SYSTEM_PROMPT = (
    "You are a marketing analyst. Write a short, human-readable summary of a "
    "campaign's delivery results in two sentences or fewer. Use only the numbers provided."
)
_RULES_SYSTEM_PROMPT = (
    "You convert audience descriptions into segment rules. Respond with a single JSON object "
    "and nothing else. A rule is either {\"field\", \"operator\", \"value\"} or "
    "{\"operator\": \"AND\"|\"OR\", \"children\": [rules]}. Fields: totalSpend (number), "
    "visitCount (number), lastPurchase (timestamp). Operators: >, >=, <, <=, ==, !=, and "
    "since (value is a duration such as \"90d\", meaning no purchase within that window)."
)


@dataclass
class AIProviderResult:
    text: str
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None


class AIProvider(Protocol):
    provider: str
    model: str

    def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        ...


class StubAIProvider:
    """Deterministic provider for local runs and tests."""

    provider = "stub"

    _COMPARATORS = (
        ("at least", ">="),
        ("no less than", ">="),
        ("at most", "<="),
        ("no more than", "<="),
        ("more than", ">"),
        ("greater than", ">"),
        ("over", ">"),
        ("above", ">"),
        ("less than", "<"),
        ("fewer than", "<"),
        ("under", "<"),
        ("below", "<"),
        ("exactly", "=="),
    )
    _DURATION_UNITS = {"day": "d", "week": "w", "month": "mo", "year": "y"}

    def __init__(self, model: str):
        self.model = model

    def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        task = self._extract_value(user_prompt, "TASK")
        if task == "rules_from_text":
            text = self._rules_from_text(self._extract_value(user_prompt, "QUERY"))
        else:
            text = self._summarize(self._extract_json(user_prompt, "STATS_JSON"))
        prompt_tokens = self._estimate_tokens(system_prompt + "\n" + user_prompt)
        completion_tokens = self._estimate_tokens(text)
        return AIProviderResult(
            text=text,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        return max(1, len(text) // 4)

    @staticmethod
    def _extract_value(prompt: str, key: str) -> str:
        match = re.search(rf"{key}:\s*(.+)", prompt)
        if not match:
            return ""
        return match.group(1).strip()

    @staticmethod
    def _extract_json(prompt: str, key: str) -> dict[str, Any]:
        match = re.search(rf"{key}:\s*(\{{.*?\}})", prompt, re.DOTALL)
        if not match:
            return {}
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            return {}

    @staticmethod
    def _summarize(context: dict[str, Any]) -> str:
        name = context.get("campaign_name") or "The campaign"
        total = int(context.get("total_audience", 0))
        sent = int(context.get("sent", 0))
        failed = int(context.get("failed", 0))
        rate = float(context.get("success_rate", 0.0))
        summary = f"{name} reached {sent} of {total} recipients ({rate:.2f}% delivered)."
        if failed:
            summary += f" {failed} deliveries failed and may need a retry."
        else:
            summary += " Every delivery was accepted."
        return summary

    def _rules_from_text(self, query: str) -> str:
        text = query.lower()
        group_operator = "OR" if re.search(r"\bor\b", text) else "AND"
        children = []
        for clause in re.split(r"\b(?:and|or)\b", text):
            leaf = self._clause_to_rule(clause.strip())
            if leaf:
                children.append(leaf)
        if not children:
            return "No matching audience attributes found."
        if len(children) == 1:
            return json.dumps(children[0])
        return json.dumps({"operator": group_operator, "children": children})

    def _clause_to_rule(self, clause: str) -> dict[str, Any] | None:
        number_match = re.search(r"(\d[\d,]*(?:\.\d+)?)\s*(k\b)?", clause)
        if not clause or not number_match:
            return None
        amount = float(number_match.group(1).replace(",", ""))
        if number_match.group(2):
            amount *= 1000
        value: int | float = int(amount) if amount.is_integer() else amount

        if re.search(r"inactive|not purchased|haven't|have not|no purchase|last purchase|since", clause):
            unit_match = re.search(r"(day|week|month|year)s?", clause)
            unit = self._DURATION_UNITS[unit_match.group(1)] if unit_match else "d"
            return {"field": "lastPurchase", "operator": "since", "value": f"{value}{unit}"}

        comparator = next((op for phrase, op in self._COMPARATORS if phrase in clause), ">")
        if "visit" in clause:
            return {"field": "visitCount", "operator": comparator, "value": value}
        if "spen" in clause or "purchase" in clause or "worth" in clause:
            return {"field": "totalSpend", "operator": comparator, "value": value}
        return None


class OpenAIProvider:
    provider = "openai"

    def __init__(self, *, api_key: str, model: str, base_url: str | None = None, temperature: float = 0.2):
        try:
            from openai import OpenAI
        except ImportError as exc:
            raise ValueError("openai dependency is not installed") from exc

        client_kwargs: dict[str, str] = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = OpenAI(**client_kwargs)
        self.model = model
        self.temperature = temperature

    def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        completion = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
        )

        text = ""
        if completion.choices and completion.choices[0].message:
            text = completion.choices[0].message.content or ""

        usage = completion.usage
        return AIProviderResult(
            text=text.strip(),
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
            total_tokens=usage.total_tokens if usage else None,
        )


class TextGenerator(Protocol):
    def summarize(self, stats: CampaignStats, *, campaign_name: str | None = None) -> str:
        ...

    def rules_from_text(self, query: str) -> dict[str, Any] | None:
        ...


class ProviderTextGenerator:
    """Campaign summaries and natural-language segment rules on top of an AI provider."""

    def __init__(self, provider: AIProvider, *, max_query_chars: int = 500):
        self.provider = provider
        self.max_query_chars = max_query_chars

    def summarize(self, stats: CampaignStats, *, campaign_name: str | None = None) -> str:
        context = {"campaign_name": campaign_name, **stats.to_dict()}
        user_prompt = "\n".join(
            [
                "TASK: campaign_summary",
                f"STATS_JSON: {json.dumps(context, sort_keys=True)}",
            ]
        )
        completion = self.provider.complete(system_prompt=_SUMMARY_SYSTEM_PROMPT, user_prompt=user_prompt)
        text = completion.text.strip()
        if not text:
            raise ValueError("Provider returned an empty summary")
        return text

    def rules_from_text(self, query: str) -> dict[str, Any] | None:
        clean_query = " ".join((query or "").split())[: self.max_query_chars]
        if not clean_query:
            return None
        user_prompt = "\n".join(["TASK: rules_from_text", f"QUERY: {clean_query}"])
        completion = self.provider.complete(system_prompt=_RULES_SYSTEM_PROMPT, user_prompt=user_prompt)
        document = extract_json_object(completion.text)
        if document is None:
            return None
        try:
            parse_rule(document)
        except InvalidRule as exc:
            logger.info(json.dumps({"event": "rules_from_text_rejected", "reason": exc.message}))
            return None
        return document


def extract_json_object(text: str) -> dict[str, Any] | None:
    # Models often wrap JSON in prose or code fences.
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def get_text_generator(config: Settings | None = None) -> ProviderTextGenerator:
    config = config or settings
    provider_name = config.ai_provider
    if provider_name == "stub":
        provider: AIProvider = StubAIProvider(model=config.ai_model)
    elif provider_name == "openai":
        if not config.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when AI_PROVIDER=openai")
        provider = OpenAIProvider(
            api_key=config.openai_api_key,
            model=config.ai_model,
            base_url=config.openai_base_url,
            temperature=config.ai_temperature,
        )
    else:
        raise ValueError(f"Unsupported ai_provider: {config.ai_provider}")
    return ProviderTextGenerator(provider, max_query_chars=config.ai_max_query_chars)
