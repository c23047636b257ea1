import json
import logging
from typing import List, Optional

import openai

from bonsai.core.config import settings
from bonsai.schemas.branching import MatchResult, OptionPayload
from bonsai.schemas.story import Option
from bonsai.services.errors import GenerationError
from bonsai.services.llm import extract_json_from_string, get_client

SYSTEM_PROMPT = """
Given a player input and a list of existing options, decide if any option is a valid match. Respond with ONLY JSON in this shape:
{"optionId": "<id or null>", "confidence": <0-1 number>}
- optionId must be one of the provided ids or null when no good fit exists.
- confidence closer to 1 means very strong match.
Do not add extra text.
""".strip()


def to_option_payloads(options: List[Option]) -> List[OptionPayload]:
    return [OptionPayload(id=option.id, texts=list(option.texts)) for option in options]


def build_match_prompt(player_input: str, options: List[OptionPayload]) -> str:
    option_list = "\n".join(f"- {o.id}: {' | '.join(o.texts)}" for o in options)
    return (
        f'Player input: "{player_input}"\n'
        f"Options (id: variants):\n"
        f"{option_list}\n"
        f"Return only JSON in the requested shape."
    )


def parse_match_content(content: str, options: List[OptionPayload]) -> MatchResult:
    json_str = extract_json_from_string(content)
    if not json_str:
        raise GenerationError("Matcher returned no JSON.")
    try:
        data = json.loads(json_str)
        confidence = float(data.get("confidence") or 0)
    except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
        raise GenerationError(f"Failed to parse matcher response: {e}") from e

    option_id = data.get("optionId")
    if option_id is not None and str(option_id) not in {o.id for o in options}:
        logging.warning(f"Matcher picked unknown option id '{option_id}', ignoring it.")
        option_id = None
    return MatchResult(
        option_id=str(option_id) if option_id is not None else None,
        confidence=max(0.0, min(1.0, confidence)),
    )


async def match_option(
    player_input: str,
    options: List[Option],
    client: Optional[openai.AsyncOpenAI] = None,
) -> MatchResult:
    """
    Asks the remote model which existing option the free-text input means.

    Returns a result with no option id when nothing fits; raises GenerationError
    when the call itself fails or the reply cannot be read.
    """
    payloads = to_option_payloads(options)
    if not player_input.strip() or not payloads:
        return MatchResult()

    client = client or get_client()
    logging.info(f"Matching '{player_input}' against {len(payloads)} options")
    try:
        response = await client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_match_prompt(player_input, payloads)},
            ],
            temperature=0,
        )
        content = response.choices[0].message.content or ""
    except openai.OpenAIError as e:
        logging.error(f"Matcher request failed: {e}")
        raise GenerationError(f"Matcher request failed: {e}") from e

    return parse_match_content(content, payloads)
