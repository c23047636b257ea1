from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

END_TARGET = "END"
DEFAULT_SCENE_LABEL = "START"


class LineType(str, Enum):
    NARRATIVE = "narrative"
    JUMP = "jump"
    DECISION = "decision"
    OPTION = "option"
    SCENE = "scene"
    PROMPT = "prompt"


# --- Editor Representation ---

class FlatLine(BaseModel):
    id: str
    text: str
    indent: int = Field(default=0, ge=0)


# --- Story Graph ---

class NarrativeLine(BaseModel):
    type: Literal["narrative"] = "narrative"
    id: str
    text: str


class JumpLine(BaseModel):
    type: Literal["jump"] = "jump"
    id: str
    target: str  # Scene label or END


class PromptLine(BaseModel):
    """
    Author instruction collected for the branch generator. Never shown to the player.
    """
    type: Literal["prompt"] = "prompt"
    id: str
    text: str


class Option(BaseModel):
    id: str
    # Primary text first, followed by confirmed variants
    texts: List[str]
    lines: List["Line"] = []


class DecisionLine(BaseModel):
    type: Literal["decision"] = "decision"
    id: str
    prompt: str
    options: List[Option] = []


Line = Annotated[
    Union[NarrativeLine, JumpLine, PromptLine, DecisionLine],
    Field(discriminator="type"),
]

Option.model_rebuild()
DecisionLine.model_rebuild()


class Scene(BaseModel):
    label: str
    lines: List[Line] = []


class GameStructure(BaseModel):
    scenes: List[Scene] = []
    start_scene: str = DEFAULT_SCENE_LABEL

    def scene(self, label: str) -> Optional[Scene]:
        return next((s for s in self.scenes if s.label == label), None)

    def scene_labels(self) -> List[str]:
        return [s.label for s in self.scenes]
