import json
import logging
import re
from typing import Dict, Iterable, List, Optional

import openai
from pydantic import ValidationError

from bonsai.core.config import settings
from bonsai.schemas.branching import (
    BranchRequest,
    BranchResult,
    ExistingSceneBranch,
    NewSceneBranch,
    ParagraphBranch,
)
from bonsai.schemas.story import END_TARGET, LineType
from bonsai.services.errors import BranchParseError, GenerationError
from bonsai.services.llm import clamp_length, extract_json_from_string, get_client
from bonsai.services.notation import detect_prefix

DEFAULT_SYSTEM_PROMPT = """
You continue a branching story. Reply with JSON only.
Return exactly one:
- paragraph: { "type":"paragraph","text":"...", "question":"..." } (stay in scene, MUST include question)
- new_scene: { "type":"new_scene","sceneLabel":"SCENE","paragraphs":["..."], "question":"..." } (MUST include question)
- existing_scene: { "type":"existing_scene","sceneLabel":"SCENE","paragraphs":["..."] } (no question for existing scenes)

Rules: keep under 320 characters total; 1-2 sentences per paragraph. Always end with a question to continue the story unless jumping to existing_scene. Use AVAILABLE SCENES only when linking with existing_scene. Prefer reusing scenes; keep narration brief.
""".strip()

FALLBACK_SCENE_LABEL = "AUTO_SCENE"

_BRANCH_TYPES = {
    "paragraph": ParagraphBranch,
    "new_scene": NewSceneBranch,
    "existing_scene": ExistingSceneBranch,
}


def make_new_scene_label(player_input: str, existing_scenes: Iterable[str]) -> str:
    """
    Derives an upper-snake scene label from the player's words, unique among existing scenes.
    """
    base = re.sub(r"[^A-Za-z0-9]+", "_", player_input).strip("_").upper()[:24].strip("_")
    if not base or base == END_TARGET:
        base = FALLBACK_SCENE_LABEL
    taken = set(existing_scenes)
    label, suffix = base, 2
    while label in taken:
        label = f"{base}_{suffix}"
        suffix += 1
    return label


def build_branch_messages(request: BranchRequest) -> List[Dict[str, str]]:
    custom_prompt = clamp_length((request.custom_prompt or "").strip(), settings.MAX_CUSTOM_PROMPT_CHARS)
    system_prompt = (
        f"{DEFAULT_SYSTEM_PROMPT}\n\nIMPORTANT:\n{custom_prompt}" if custom_prompt else DEFAULT_SYSTEM_PROMPT
    )

    scene_list = (
        "\n".join(f"- {label}" for label in request.existing_scenes)
        if request.existing_scenes else "- None provided"
    )
    recent_history = request.history[-settings.HISTORY_CONTEXT_SIZE:]
    history_list = (
        "\n".join(f"{i}. {entry}" for i, entry in enumerate(recent_history, start=1))
        if recent_history else "None provided"
    )

    user_prompt = f"""
CURRENT CONTEXT:
Scene: {request.scene_label or "START"}
Decision: "{request.decision_prompt}"
Player: "{request.input}"

STORY SO FAR:
{history_list}

AVAILABLE SCENES:
{scene_list}

Respond with one JSON object only. If creating a new scene, use: {request.new_scene_label or FALLBACK_SCENE_LABEL}. Include a short paragraph only if needed."""
    if custom_prompt:
        user_prompt = f"{user_prompt}\n\nIMPORTANT: {custom_prompt}"

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": clamp_length(user_prompt, settings.MAX_USER_PROMPT_CHARS)},
    ]


def _branch_from_dict(data: dict) -> Optional[BranchResult]:
    model = _BRANCH_TYPES.get(str(data.get("type", "")))
    if model is None:
        return None
    try:
        result = model.model_validate(data)
    except ValidationError as e:
        logging.warning(f"Generator returned an invalid '{data.get('type')}' payload: {e}")
        return None
    if isinstance(result, ParagraphBranch) and not result.text.strip():
        return None
    if isinstance(result, ExistingSceneBranch) and not result.scene_label.strip():
        return None
    return result


def parse_legacy_branch(content: str, existing_scenes: Iterable[str] = ()) -> BranchResult:
    """
    Recovers a branch from plain marker text such as:

        # CAVE
        - You crawl into the dark.
        ? Do you light a torch?

    A jump line pointing at a known scene links to it instead of creating one.
    """
    existing = set(existing_scenes)
    scene_label: Optional[str] = None
    jump_target: Optional[str] = None
    question: Optional[str] = None
    paragraphs: List[str] = []

    for raw_line in content.splitlines():
        line_type, text = detect_prefix(raw_line)
        text = text.strip()
        if not text:
            continue
        if line_type == LineType.SCENE:
            scene_label = scene_label or text
        elif line_type in (LineType.JUMP, LineType.OPTION):
            jump_target = text
        elif line_type == LineType.DECISION:
            question = text
        elif line_type == LineType.NARRATIVE:
            paragraphs.append(text)

    if jump_target and jump_target in existing:
        return ExistingSceneBranch(scene_label=jump_target, paragraphs=paragraphs)
    if scene_label:
        if scene_label in existing and not question:
            return ExistingSceneBranch(scene_label=scene_label, paragraphs=paragraphs)
        return NewSceneBranch(scene_label=scene_label, paragraphs=paragraphs, question=question)
    if paragraphs:
        return ParagraphBranch(text=" ".join(paragraphs), question=question)
    raise BranchParseError("Generator output holds no usable story lines.", raw=content)


def parse_branch_content(content: str, existing_scenes: Iterable[str] = ()) -> BranchResult:
    """
    Reads generator output: structured JSON first, then legacy marker text.
    """
    json_str = extract_json_from_string(content)
    if json_str:
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            result = _branch_from_dict(data)
            if result is not None:
                return result

    stripped = content.strip()
    if stripped.startswith("{") or stripped.startswith("```"):
        raise BranchParseError("Generator returned malformed JSON.", raw=content)
    return parse_legacy_branch(content, existing_scenes)


async def generate_branch(request: BranchRequest, client: Optional[openai.AsyncOpenAI] = None) -> BranchResult:
    """
    Asks the remote model to continue the story from an input no option covered.
    """
    if not request.input.strip() or not request.decision_prompt.strip():
        raise GenerationError("input and decision_prompt are required")

    client = client or get_client()
    logging.info(f"--- Generating branch for '{request.input}' in scene {request.scene_label} ---")
    try:
        response = await client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=build_branch_messages(request),
            temperature=settings.BRANCH_TEMPERATURE,
        )
        content = response.choices[0].message.content or ""
    except openai.OpenAIError as e:
        logging.error(f"Branch generation request failed: {e}")
        raise GenerationError(f"Branch generation failed: {e}") from e

    logging.info(f"Generator replied: {content[:200]}{'...' if len(content) > 200 else ''}")
    return parse_branch_content(content, request.existing_scenes)
