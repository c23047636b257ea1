import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Set

from bonsai.core.config import settings
from bonsai.schemas.branching import (
    BranchRequest,
    BranchResult,
    ExistingSceneBranch,
    MatchResult,
    ParagraphBranch,
)
from bonsai.schemas.session import (
    EngineSnapshot,
    EngineStatus,
    GamePosition,
    HistoryEntry,
    OptionPath,
    RetryState,
    SelectionMeta,
)
from bonsai.schemas.story import (
    END_TARGET,
    DecisionLine,
    GameStructure,
    JumpLine,
    Line,
    LineType,
    NarrativeLine,
    Option,
    PromptLine,
    Scene,
)
from bonsai.services.branch_generator import generate_branch, make_new_scene_label
from bonsai.services.document import StoryDocument
from bonsai.services.errors import BranchParseError, EngineBusyError
from bonsai.services.matcher import match_option, to_option_payloads
from bonsai.services.notation import DECISION_MARKER, NARRATIVE_MARKER, generate_id
from bonsai.services.options import clean_option_variant, find_matching_option, get_option_primary_text

NO_MATCH_TEXT = "No similar option."
END_TEXT = "END"

Matcher = Callable[[str, List[Option]], Awaitable[MatchResult]]
Generator = Callable[[BranchRequest], Awaitable[BranchResult]]


@dataclass
class OptionLocation:
    option: Option
    decision: DecisionLine
    # Index of the decision inside the list that holds it
    decision_index: int
    # Option whose lines hold the decision; None at scene level
    parent_option: Optional[Option] = None


def find_option(lines: List[Line], option_id: str, parent: Optional[Option] = None) -> Optional[OptionLocation]:
    for index, line in enumerate(lines):
        if line.type != LineType.DECISION:
            continue
        for option in line.options:
            if option.id == option_id:
                return OptionLocation(option=option, decision=line, decision_index=index, parent_option=parent)
            nested = find_option(option.lines, option_id, option)
            if nested is not None:
                return nested
    return None


def find_decision(structure: GameStructure, decision_id: str) -> Optional[DecisionLine]:
    def visit(lines: List[Line]) -> Optional[DecisionLine]:
        for line in lines:
            if line.type != LineType.DECISION:
                continue
            if line.id == decision_id:
                return line
            for option in line.options:
                found = visit(option.lines)
                if found is not None:
                    return found
        return None

    for scene in structure.scenes:
        found = visit(scene.lines)
        if found is not None:
            return found
    return None


def default_collaborators() -> Dict[str, Callable]:
    """
    Remote matcher and generator, when an API key is configured.
    """
    if not settings.remote_enabled:
        return {}
    return {"matcher": match_option, "generator": generate_branch}


class SingleFlight:
    """
    Rejects a second step for a session while the first one is still running.
    """

    def __init__(self):
        self._in_flight: Set[Hashable] = set()

    def is_busy(self, key: Hashable) -> bool:
        return key in self._in_flight

    @asynccontextmanager
    async def hold(self, key: Hashable):
        if key in self._in_flight:
            raise EngineBusyError(f"Session {key} is already advancing")
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)


class StoryEngine:
    """
    Plays a story document one step per `advance()` call.

    The story graph is re-derived from the document before every step, so edits
    (including the ones this engine makes when it splices generated branches)
    are seen at the next step boundary. All session state lives on the instance
    and round-trips through `snapshot()` / `from_snapshot()`.
    """

    def __init__(
        self,
        document: StoryDocument,
        matcher: Optional[Matcher] = None,
        generator: Optional[Generator] = None,
        confidence_threshold: Optional[float] = None,
        history_context_size: Optional[int] = None,
        return_stack_limit: Optional[int] = None,
    ):
        self.document = document
        self.matcher = matcher
        self.generator = generator
        self.confidence_threshold = (
            settings.MATCH_CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold
        )
        self.history_context_size = history_context_size or settings.HISTORY_CONTEXT_SIZE
        self.return_stack_limit = return_stack_limit or settings.RETURN_STACK_LIMIT
        self._busy = False
        self._resolving: Optional[EngineStatus] = None
        self.restart()

    # --- Lifecycle ---

    def _reset(self):
        self.history: List[HistoryEntry] = []
        self.return_stack: List[GamePosition] = []
        self.seen_line_ids: Set[str] = set()
        self.pending_decision_id: Optional[str] = None
        self.ended = False
        self.retry_state: Optional[RetryState] = None

    def restart(self):
        self._reset()
        structure = self.document.structure()
        self.prompts = self._global_prompts(structure)
        self.position = GamePosition(scene_label=structure.start_scene, line_index=0)
        scene = structure.scene(structure.start_scene)
        if scene is not None:
            # Leading prompts are instructions, not something to play
            index = 0
            while index < len(scene.lines) and scene.lines[index].type == LineType.PROMPT:
                self.prompts[scene.lines[index].id] = scene.lines[index].text
                index += 1
            self.position = GamePosition(scene_label=scene.label, line_index=index)

    def jump_to_scene(self, scene_label: str) -> bool:
        """
        Restarts play scoped to one scene, as when the author previews it.
        """
        structure = self.document.structure()
        if structure.scene(scene_label) is None:
            logging.warning(f"Cannot jump to unknown scene '{scene_label}'")
            return False
        self._reset()
        self.prompts = self._global_prompts(structure)
        self.position = GamePosition(scene_label=scene_label, line_index=0)
        return True

    @staticmethod
    def _global_prompts(structure: GameStructure) -> Dict[str, str]:
        prompts: Dict[str, str] = {}
        if not structure.scenes:
            return prompts
        for line in structure.scenes[0].lines:
            if line.type != LineType.PROMPT:
                break
            prompts[line.id] = line.text
        return prompts

    # --- Serialization ---

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            position=self.position,
            return_stack=list(self.return_stack),
            history=list(self.history),
            seen_line_ids=sorted(self.seen_line_ids),
            prompts=[PromptLine(id=line_id, text=text) for line_id, text in self.prompts.items()],
            pending_decision_id=self.pending_decision_id,
            ended=self.ended,
            retry=self.retry_state,
        )

    @classmethod
    def from_snapshot(cls, document: StoryDocument, snapshot: EngineSnapshot, **kwargs) -> "StoryEngine":
        engine = cls(document, **kwargs)
        engine.position = snapshot.position
        engine.return_stack = list(snapshot.return_stack)
        engine.history = list(snapshot.history)
        engine.seen_line_ids = set(snapshot.seen_line_ids)
        engine.prompts = {prompt.id: prompt.text for prompt in snapshot.prompts}
        engine.pending_decision_id = snapshot.pending_decision_id
        engine.ended = snapshot.ended
        engine.retry_state = snapshot.retry
        return engine

    # --- Read-only views ---

    @property
    def accumulated_prompt(self) -> str:
        return "\n".join(self.prompts.values())

    @property
    def status(self) -> EngineStatus:
        if self.ended:
            return EngineStatus.ENDED
        if self._resolving is not None:
            return self._resolving
        if self.retry_state is not None:
            return EngineStatus.AWAITING_RETRY
        if self.current_decision() is not None:
            return EngineStatus.AWAITING_INPUT
        return EngineStatus.PLAYING

    def current_scene(self, structure: Optional[GameStructure] = None) -> Optional[Scene]:
        structure = structure or self.document.structure()
        return structure.scene(self.position.scene_label)

    def current_line(self, structure: Optional[GameStructure] = None) -> Optional[Line]:
        if self.ended:
            return None
        scene = self.current_scene(structure)
        if scene is None:
            return None
        return self._line_at(scene, self.position)

    def current_decision(self, structure: Optional[GameStructure] = None) -> Optional[DecisionLine]:
        """
        The decision awaiting input. A pending decision is looked up by id so
        its options stay live while the prompt shown to the player stays put.
        """
        if self.ended:
            return None
        structure = structure or self.document.structure()
        if self.pending_decision_id:
            decision = find_decision(structure, self.pending_decision_id)
            if decision is not None:
                return decision
        line = self.current_line(structure)
        return line if line is not None and line.type == LineType.DECISION else None

    # --- Cursor movement ---

    @staticmethod
    def _line_at(scene: Scene, position: GamePosition) -> Optional[Line]:
        if position.option_path:
            location = find_option(scene.lines, position.option_path.option_id)
            if location is None:
                return None
            lines = location.option.lines
            index = position.option_path.line_index
        else:
            lines = scene.lines
            index = position.line_index
        return lines[index] if 0 <= index < len(lines) else None

    @staticmethod
    def _exit_option(scene: Scene, position: GamePosition) -> GamePosition:
        """
        Position right after the decision that owns the option the cursor is in.
        """
        location = find_option(scene.lines, position.option_path.option_id)
        if location is None:
            return GamePosition(scene_label=scene.label, line_index=position.line_index + 1)
        if location.parent_option is None:
            return GamePosition(scene_label=scene.label, line_index=location.decision_index + 1)
        return GamePosition(
            scene_label=scene.label,
            line_index=position.line_index,
            option_path=OptionPath(option_id=location.parent_option.id, line_index=location.decision_index + 1),
        )

    def _position_after(self, scene: Scene, position: GamePosition) -> GamePosition:
        if position.option_path is None:
            return GamePosition(scene_label=scene.label, line_index=position.line_index + 1)
        location = find_option(scene.lines, position.option_path.option_id)
        next_index = position.option_path.line_index + 1
        if location is not None and next_index < len(location.option.lines):
            return GamePosition(
                scene_label=scene.label,
                line_index=position.line_index,
                option_path=OptionPath(option_id=position.option_path.option_id, line_index=next_index),
            )
        return self._exit_option(scene, position)

    def _pop_return_or_end(self):
        if self.return_stack:
            self.position = self.return_stack.pop()
        else:
            self._end_game(END_TEXT)

    def _end_game(self, text: str, meta: bool = False):
        if self.ended:
            return
        self.ended = True
        self.pending_decision_id = None
        self.history.append(HistoryEntry(line_id=END_TARGET, type=LineType.NARRATIVE, text=text, meta=meta))
        logging.info(f"Story ended in scene {self.position.scene_label}")

    # --- Stepping ---

    async def advance(self, player_input: Optional[str] = None) -> EngineStatus:
        """
        Takes one step. Narrative, prompt and jump lines need no input; a
        decision waits until `player_input` resolves it.
        """
        if self._busy:
            raise EngineBusyError("advance() called while a step is in flight")
        self._busy = True
        try:
            await self._step(player_input)
        finally:
            self._busy = False
            self._resolving = None
        return self.status

    async def _step(self, player_input: Optional[str]):
        if self.ended:
            return
        structure = self.document.structure()
        scene = structure.scene(self.position.scene_label)
        if scene is None:
            logging.warning(f"Scene '{self.position.scene_label}' no longer exists")
            return

        if self.retry_state is not None:
            if not player_input:
                return
            # A fresh input replaces the failed one
            self.retry_state = None

        if self.pending_decision_id and find_decision(structure, self.pending_decision_id) is None:
            logging.warning(f"Pending decision '{self.pending_decision_id}' was removed from the document")
            self.pending_decision_id = None

        decision = self.current_decision(structure)
        if decision is not None:
            self._record_decision(decision)
            if player_input and player_input.strip():
                await self._resolve_decision(decision, player_input.strip())
            return

        line = self._line_at(scene, self.position)
        if line is None:
            if self.position.option_path is not None:
                self.position = self._exit_option(scene, self.position)
            else:
                self._pop_return_or_end()
            return

        if line.type == LineType.NARRATIVE:
            if line.id not in self.seen_line_ids:
                self.seen_line_ids.add(line.id)
                self.history.append(HistoryEntry(line_id=line.id, type=LineType.NARRATIVE, text=line.text))
            self.position = self._position_after(scene, self.position)
        elif line.type == LineType.PROMPT:
            self.prompts[line.id] = line.text
            self.position = self._position_after(scene, self.position)
        elif line.type == LineType.JUMP:
            self._follow_jump(structure, scene, line)

    def _follow_jump(self, structure: GameStructure, scene: Scene, line: JumpLine):
        if line.target == END_TARGET:
            self._pop_return_or_end()
            return
        if structure.scene(line.target) is None:
            logging.warning(f"Jump '{line.id}' targets unknown scene '{line.target}', treating it as END")
            self._pop_return_or_end()
            return
        self.return_stack.append(self._position_after(scene, self.position))
        if len(self.return_stack) > self.return_stack_limit:
            del self.return_stack[0]
            logging.warning(f"Return stack over {self.return_stack_limit} entries, dropped the oldest")
        self.position = GamePosition(scene_label=line.target, line_index=0)
        # A scene visited again plays again
        self.seen_line_ids.clear()

    def _record_decision(self, decision: DecisionLine):
        if decision.id not in self.seen_line_ids:
            self.seen_line_ids.add(decision.id)
            self.history.append(HistoryEntry(line_id=decision.id, type=LineType.DECISION, text=decision.prompt))
        self.pending_decision_id = decision.id

    # --- Decision resolution ---

    async def _resolve_decision(self, decision: DecisionLine, player_input: str):
        option = find_matching_option(decision.options, player_input)
        if option is not None:
            self.document.append_option_variant(option.id, player_input)
            self._select(decision.id, option.id, SelectionMeta(option=get_option_primary_text(option), cached=True))
            return

        if self.matcher is not None and decision.options:
            self._resolving = EngineStatus.MATCHING
            try:
                match = await self.matcher(player_input, decision.options)
            except Exception as e:
                logging.warning(f"Remote match failed, falling back to generation: {e}")
                match = None
            if match is not None and match.option_id and match.confidence >= self.confidence_threshold:
                option = next((o for o in decision.options if o.id == match.option_id), None)
                if option is not None:
                    self.document.append_option_variant(option.id, player_input)
                    self._select(
                        decision.id,
                        option.id,
                        SelectionMeta(option=get_option_primary_text(option), confidence=match.confidence),
                    )
                    return
            logging.info(f"No remote match for '{player_input}' (confidence {match.confidence if match else 0})")

        if self.generator is None:
            logging.info(f"No generator configured, decision '{decision.id}' stays open")
            return
        self.retry_state = None
        await self._generate(decision, player_input)

    async def retry(self) -> EngineStatus:
        """
        Repeats the failed generation with the same input. A second failure ends the story.
        """
        if self._busy:
            raise EngineBusyError("retry() called while a step is in flight")
        if self.retry_state is None or self.ended or self.generator is None:
            return self.status
        self._busy = True
        try:
            decision = self.current_decision()
            if decision is None:
                self.retry_state = None
            else:
                self.retry_state.attempted = True
                await self._generate(decision, self.retry_state.input)
        finally:
            self._busy = False
            self._resolving = None
        return self.status

    def decline_retry(self) -> EngineStatus:
        if self.retry_state is not None:
            self.retry_state = None
            self._end_game(NO_MATCH_TEXT, meta=True)
        return self.status

    def _history_context(self) -> List[str]:
        context = []
        for entry in self.history:
            if entry.meta:
                continue
            if entry.type == LineType.DECISION and entry.chosen_option:
                context.append(f"{entry.text} -> {entry.chosen_option}")
            else:
                context.append(entry.text)
        return context[-self.history_context_size:]

    async def _generate(self, decision: DecisionLine, player_input: str):
        scene_labels = self.document.structure().scene_labels()
        request = BranchRequest(
            input=player_input,
            decision_prompt=decision.prompt,
            options=to_option_payloads(decision.options),
            scene_label=self.position.scene_label,
            existing_scenes=scene_labels,
            history=self._history_context(),
            new_scene_label=make_new_scene_label(player_input, scene_labels),
            custom_prompt=self.accumulated_prompt or None,
        )

        self._resolving = EngineStatus.GENERATING
        try:
            result = await self.generator(request)
        except BranchParseError as e:
            logging.error(f"Generator output could not be parsed: {e}")
            self._generation_failed(player_input, "parse_error", e.raw)
            return
        except Exception as e:
            logging.error(f"Branch generation failed: {e}")
            self._generation_failed(player_input, "error", str(e))
            return

        self.retry_state = None
        self._apply_branch(decision, player_input, result, request)

    def _generation_failed(self, player_input: str, reason: str, raw: str):
        if self.retry_state is not None and self.retry_state.attempted:
            self.retry_state = None
            self._end_game(NO_MATCH_TEXT, meta=True)
            return
        self.retry_state = RetryState(input=player_input, reason=reason, raw=raw)

    def _apply_branch(self, decision: DecisionLine, player_input: str, result: BranchResult, request: BranchRequest):
        """
        Writes a generated branch into the document as a new option and selects it.
        """
        existing = set(request.existing_scenes)
        # Option lines split on commas
        option_text = clean_option_variant(player_input)
        scene_label = self.position.scene_label

        if isinstance(result, ParagraphBranch):
            option = Option(
                id=generate_id(),
                texts=[option_text],
                lines=[NarrativeLine(id=generate_id(), text=result.text.strip())],
            )
            self.document.apply_generated_branch(decision.id, option)
            if result.question and result.question.strip():
                self.document.append_line_to_scene(scene_label, f"{DECISION_MARKER}{result.question.strip()}", 0)

        elif isinstance(result, ExistingSceneBranch) and result.scene_label.strip() in existing:
            target = result.scene_label.strip()
            option = Option(
                id=generate_id(),
                texts=[option_text],
                lines=[
                    *[NarrativeLine(id=generate_id(), text=p.strip()) for p in result.paragraphs if p.strip()],
                    JumpLine(id=generate_id(), target=target),
                ],
            )
            self.document.apply_generated_branch(decision.id, option)

        else:
            target = (result.scene_label or "").strip() or request.new_scene_label
            if target in existing or target == END_TARGET:
                target = make_new_scene_label(target, existing)
            option = Option(id=generate_id(), texts=[option_text], lines=[JumpLine(id=generate_id(), target=target)])
            self.document.apply_generated_branch(decision.id, option, new_scene_label=target)
            for paragraph in result.paragraphs:
                if paragraph.strip():
                    self.document.append_line_to_scene(target, f"{NARRATIVE_MARKER}{paragraph.strip()}", 0)
            question = getattr(result, "question", None)
            if question and question.strip():
                self.document.append_line_to_scene(target, f"{DECISION_MARKER}{question.strip()}", 0)

        logging.info(f"Spliced generated option '{player_input}' under decision '{decision.id}'")
        self._select(decision.id, option.id, SelectionMeta(option=option_text, generated=True))

    def _select(self, decision_id: str, option_id: str, selection_meta: SelectionMeta):
        """
        Commits a choice: fills the decision's history entry and descends into the option.
        """
        structure = self.document.structure()
        scene = structure.scene(self.position.scene_label)
        decision = find_decision(structure, decision_id)
        option = next((o for o in decision.options if o.id == option_id), None) if decision else None
        if scene is None or option is None:
            logging.error(f"Option '{option_id}' vanished before it could be selected")
            return

        chosen = get_option_primary_text(option)
        entry = next(
            (e for e in reversed(self.history) if e.line_id == decision_id and e.type == LineType.DECISION),
            None,
        )
        if entry is not None:
            entry.chosen_option = chosen
            entry.selection_meta = selection_meta
        else:
            self.history.append(
                HistoryEntry(
                    line_id=decision_id,
                    type=LineType.DECISION,
                    text=decision.prompt,
                    chosen_option=chosen,
                    selection_meta=selection_meta,
                )
            )

        self.pending_decision_id = None
        if option.lines:
            self.position = GamePosition(
                scene_label=self.position.scene_label,
                line_index=self.position.line_index,
                option_path=OptionPath(option_id=option.id, line_index=0),
            )
        else:
            self.position = self._position_after(scene, self.position)
