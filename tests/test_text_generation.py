import pytest

from app.core.config import Settings
from app.services.campaign_store import CampaignStats
from app.services.text_generation import (
    AIProviderResult,
    ProviderTextGenerator,
    StubAIProvider,
    extract_json_object,
    get_text_generator,
)


class _ScriptedProvider:
    provider = "scripted"
    model = "scripted-1"

    def __init__(self, text: str):
        self.text = text
        self.prompts: list[str] = []

    def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        self.prompts.append(user_prompt)
        return AIProviderResult(text=self.text, prompt_tokens=None, completion_tokens=None, total_tokens=None)


def _generator() -> ProviderTextGenerator:
    return ProviderTextGenerator(StubAIProvider(model="test"))


def test_stub_summary_mentions_counts():
    stats = CampaignStats(total_audience=120, sent=108, failed=12, success_rate=90.0)

    summary = _generator().summarize(stats, campaign_name="Weekend sale")

    assert summary == (
        "Weekend sale reached 108 of 120 recipients (90.00% delivered). "
        "12 deliveries failed and may need a retry."
    )


def test_empty_provider_output_is_an_error():
    generator = ProviderTextGenerator(_ScriptedProvider("   "))

    with pytest.raises(ValueError):
        generator.summarize(CampaignStats(total_audience=1, sent=1, failed=0, success_rate=100.0))


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        (
            "customers who spent over 5,000 and visited at least 3 times",
            {
                "operator": "AND",
                "children": [
                    {"field": "totalSpend", "operator": ">", "value": 5000},
                    {"field": "visitCount", "operator": ">=", "value": 3},
                ],
            },
        ),
        (
            "people inactive for 3 months or who spent less than 200",
            {
                "operator": "OR",
                "children": [
                    {"field": "lastPurchase", "operator": "since", "value": "3mo"},
                    {"field": "totalSpend", "operator": "<", "value": 200},
                ],
            },
        ),
        ("haven't purchased in 60 days", {"field": "lastPurchase", "operator": "since", "value": "60d"}),
    ],
)
def test_stub_rules_from_text(query, expected):
    assert _generator().rules_from_text(query) == expected


def test_rules_from_text_rejects_unusable_output():
    assert _generator().rules_from_text("   ") is None
    assert ProviderTextGenerator(_ScriptedProvider("I am not sure.")).rules_from_text("anyone") is None
    invalid = _ScriptedProvider('{"field": "shoeSize", "operator": ">", "value": 9}')
    assert ProviderTextGenerator(invalid).rules_from_text("big feet") is None


def test_rules_from_text_accepts_fenced_json_and_trims_query():
    provider = _ScriptedProvider('```json\n{"field": "visitCount", "operator": ">", "value": 2}\n```')
    generator = ProviderTextGenerator(provider, max_query_chars=10)

    rules = generator.rules_from_text("frequent   visitors who come back a lot")

    assert rules == {"field": "visitCount", "operator": ">", "value": 2}
    assert provider.prompts[0].endswith("QUERY: frequent v")


def test_extract_json_object():
    assert extract_json_object('Sure! {"a": 1} hope that helps') == {"a": 1}
    assert extract_json_object("[1, 2]") is None
    assert extract_json_object("{broken") is None


def test_get_text_generator_selects_provider():
    assert isinstance(get_text_generator(Settings(ai_provider="stub")).provider, StubAIProvider)
    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        get_text_generator(Settings(ai_provider="openai", openai_api_key=None))
    with pytest.raises(ValueError, match="Unsupported ai_provider"):
        get_text_generator(Settings(ai_provider="crystal-ball"))
