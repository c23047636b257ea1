import openai
import pytest

from bonsai.schemas.branching import MatchResult, OptionPayload
from bonsai.schemas.story import Option
from bonsai.services.errors import GenerationError
from bonsai.services.llm import extract_json_from_string
from bonsai.services.matcher import build_match_prompt, match_option, parse_match_content

OPTIONS = [Option(id="north", texts=["Go north", "climb"]), Option(id="south", texts=["Go south"])]
PAYLOADS = [OptionPayload(id="north", texts=["Go north", "climb"]), OptionPayload(id="south", texts=["Go south"])]


def test_extract_json_from_string():
    assert extract_json_from_string('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json_from_string('noise {"a": {"b": 2}} noise') == '{"a": {"b": 2}}'
    assert extract_json_from_string("no json here") is None
    assert extract_json_from_string("") is None


def test_build_match_prompt_lists_variants():
    prompt = build_match_prompt("head uphill", PAYLOADS)
    assert 'Player input: "head uphill"' in prompt
    assert "- north: Go north | climb" in prompt


def test_parse_match_content():
    result = parse_match_content('{"optionId": "north", "confidence": 0.7}', PAYLOADS)
    assert result == MatchResult(option_id="north", confidence=0.7)


def test_parse_match_content_clamps_confidence_and_drops_unknown_ids():
    assert parse_match_content('{"optionId": "east", "confidence": 3}', PAYLOADS) == MatchResult(confidence=1.0)
    assert parse_match_content('{"optionId": null, "confidence": -1}', PAYLOADS) == MatchResult()


@pytest.mark.parametrize("content", ["I think north", '{"optionId": "north", "confidence": "high"}', "{broken}"])
def test_parse_match_content_errors(content):
    with pytest.raises(GenerationError):
        parse_match_content(content, PAYLOADS)


async def test_match_option_calls_model(fake_client):
    client = fake_client('{"optionId": "south", "confidence": 0.9}')
    result = await match_option("down the hill", OPTIONS, client=client)
    assert result == MatchResult(option_id="south", confidence=0.9)
    call = client.completions.calls[0]
    assert call["temperature"] == 0
    assert "down the hill" in call["messages"][1]["content"]


async def test_match_option_skips_call_without_input_or_options(fake_client):
    client = fake_client('{"optionId": "south", "confidence": 0.9}')
    assert await match_option("  ", OPTIONS, client=client) == MatchResult()
    assert await match_option("south", [], client=client) == MatchResult()
    assert client.completions.calls == []


async def test_match_option_wraps_api_errors(fake_client):
    client = fake_client(error=openai.OpenAIError("rate limited"))
    with pytest.raises(GenerationError):
        await match_option("down", OPTIONS, client=client)
