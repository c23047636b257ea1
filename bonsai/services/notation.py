import functools
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from bonsai.schemas.story import (
    DEFAULT_SCENE_LABEL,
    END_TARGET,
    DecisionLine,
    FlatLine,
    GameStructure,
    JumpLine,
    Line,
    LineType,
    NarrativeLine,
    Option,
    PromptLine,
    Scene,
)
from bonsai.services.options import format_option_texts, parse_option_texts

SCENE_MARKER = "# "
DECISION_MARKER = "? "
OPTION_MARKER = "* "
JUMP_MARKER = "↗ "
PROMPT_MARKER = "! "
NARRATIVE_MARKER = "- "

PREFIXES: List[Tuple[str, LineType]] = [
    (SCENE_MARKER, LineType.SCENE),
    (DECISION_MARKER, LineType.DECISION),
    (OPTION_MARKER, LineType.OPTION),
    (JUMP_MARKER, LineType.JUMP),
    (PROMPT_MARKER, LineType.PROMPT),
    (NARRATIVE_MARKER, LineType.NARRATIVE),
]


def generate_id() -> str:
    return uuid.uuid4().hex[:10]


def scene_line_id(label: str) -> str:
    return f"scene-{label}"


def detect_prefix(text: str) -> Tuple[LineType, str]:
    """
    Classifies one editor line by its leading marker.

    Unknown markers degrade to narrative text, so every string has a kind.
    """
    trimmed = text.lstrip()
    for marker, line_type in sorted(PREFIXES, key=lambda p: len(p[0]), reverse=True):
        if trimmed.startswith(marker):
            return line_type, trimmed[len(marker):]
    return LineType.NARRATIVE, trimmed.strip()


# --- Graph -> Flat Lines ---

def line_to_flat_lines(line: Line, indent: int) -> List[FlatLine]:
    """
    Renders a single graph node (and everything nested below it) as editor lines.
    """
    if line.type == LineType.NARRATIVE:
        return [FlatLine(id=line.id, text=f"{NARRATIVE_MARKER}{line.text}", indent=indent)]
    if line.type == LineType.JUMP:
        return [FlatLine(id=line.id, text=f"{JUMP_MARKER}{line.target}", indent=indent)]
    if line.type == LineType.PROMPT:
        return [FlatLine(id=line.id, text=f"{PROMPT_MARKER}{line.text}", indent=indent)]

    flat = [FlatLine(id=line.id, text=f"{DECISION_MARKER}{line.prompt}", indent=indent)]
    for option in line.options:
        flat.extend(option_to_flat_lines(option, indent + 1))
    return flat


def option_to_flat_lines(option: Option, indent: int) -> List[FlatLine]:
    flat = [FlatLine(id=option.id, text=f"{OPTION_MARKER}{format_option_texts(option.texts)}", indent=indent)]
    for nested in option.lines:
        flat.extend(line_to_flat_lines(nested, indent + 1))
    return flat


def structure_to_lines(structure: GameStructure) -> List[FlatLine]:
    lines: List[FlatLine] = []
    for scene in structure.scenes:
        lines.append(FlatLine(id=scene_line_id(scene.label), text=f"{SCENE_MARKER}{scene.label}", indent=0))
        for line in scene.lines:
            lines.extend(line_to_flat_lines(line, 0))
    return lines


# --- Flat Lines -> Graph ---

@dataclass
class _OpenDecision:
    decision: DecisionLine
    indent: int
    container: List[Line]
    option: Optional[Option] = None


@dataclass
class _ParseState:
    scenes: List[Scene] = field(default_factory=list)
    scene: Optional[Scene] = None
    # Innermost open decision last
    open_decisions: List[_OpenDecision] = field(default_factory=list)
    preamble_prompts: List[PromptLine] = field(default_factory=list)


def _close_top(state: _ParseState) -> None:
    frame = state.open_decisions.pop()
    if frame.option is not None:
        frame.decision.options.append(frame.option)
    frame.container.append(frame.decision)


def _close_all(state: _ParseState) -> None:
    while state.open_decisions:
        _close_top(state)


def _close_from_indent(state: _ParseState, indent: int) -> None:
    """
    Closes every open decision whose indent is at or below the incoming line's.
    """
    while state.open_decisions and indent <= state.open_decisions[-1].indent:
        _close_top(state)


def _place(state: _ParseState, line: Line, indent: int) -> None:
    _close_from_indent(state, indent)
    # A decision without any option cannot hold content
    while state.open_decisions and state.open_decisions[-1].option is None:
        _close_top(state)
    if state.open_decisions:
        state.open_decisions[-1].option.lines.append(line)
    else:
        state.scene.lines.append(line)


def _start_scene(state: _ParseState, label: str) -> _ParseState:
    _close_all(state)
    scene = state.scene
    if scene is not None:
        state.scenes.append(scene)
    state.scene = Scene(label=label, lines=[])
    return state


def _open_decision(state: _ParseState, flat: FlatLine, prompt: str) -> _ParseState:
    _close_from_indent(state, flat.indent)
    top = state.open_decisions[-1] if state.open_decisions else None
    if top is not None and (top.option is None or flat.indent < top.indent + 2):
        _close_top(state)
        top = state.open_decisions[-1] if state.open_decisions else None
        if top is not None and top.option is None:
            _close_all(state)
            top = None
    container = top.option.lines if top is not None else state.scene.lines
    state.open_decisions.append(
        _OpenDecision(
            decision=DecisionLine(id=flat.id, prompt=prompt, options=[]),
            indent=flat.indent,
            container=container,
        )
    )
    return state


def _step(state: _ParseState, flat: FlatLine) -> _ParseState:
    line_type, content = detect_prefix(flat.text)
    indent = flat.indent

    if line_type == LineType.SCENE:
        return _start_scene(state, content.strip())

    if state.scene is None:
        # Only story-wide prompts survive outside a scene
        if line_type == LineType.PROMPT:
            state.preamble_prompts.append(PromptLine(id=flat.id, text=content))
        return state

    if line_type == LineType.DECISION:
        return _open_decision(state, flat, content)

    if line_type == LineType.OPTION:
        _close_from_indent(state, indent)
        top = state.open_decisions[-1] if state.open_decisions else None
        if top is not None and indent == top.indent + 1:
            if top.option is not None:
                top.decision.options.append(top.option)
            top.option = Option(id=flat.id, texts=parse_option_texts(content) or [content.strip()], lines=[])
            return state
        # Option marker at the wrong indent is a jump
        _place(state, JumpLine(id=flat.id, target=content.strip()), indent)
        return state

    if line_type == LineType.JUMP:
        _place(state, JumpLine(id=flat.id, target=content.strip()), indent)
    elif line_type == LineType.PROMPT:
        _place(state, PromptLine(id=flat.id, text=content), indent)
    else:
        _place(state, NarrativeLine(id=flat.id, text=content), indent)
    return state


def lines_to_structure(flat_lines: List[FlatLine]) -> GameStructure:
    """
    Parses flat editor lines into a story graph.

    Indentation decides nesting: a decision at indent X owns options at X + 1,
    whose content sits at X + 2 or deeper. Any line at or left of an open
    decision's indent closes it before being placed.
    """
    state = functools.reduce(_step, flat_lines, _ParseState())
    _close_all(state)
    if state.scene is not None:
        state.scenes.append(state.scene)

    scenes = state.scenes
    if scenes and state.preamble_prompts:
        scenes[0].lines[:0] = state.preamble_prompts

    return GameStructure(
        scenes=scenes,
        start_scene=scenes[0].label if scenes else DEFAULT_SCENE_LABEL,
    )


def find_dangling_jumps(structure: GameStructure) -> List[JumpLine]:
    """
    Lists jumps whose target is neither END nor a known scene.
    """
    labels = set(structure.scene_labels())
    dangling: List[JumpLine] = []

    def visit(lines: List[Line]) -> None:
        for line in lines:
            if line.type == LineType.JUMP and line.target != END_TARGET and line.target not in labels:
                dangling.append(line)
            elif line.type == LineType.DECISION:
                for option in line.options:
                    visit(option.lines)

    for scene in structure.scenes:
        visit(scene.lines)
    return dangling
