from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class OptionPayload(BaseModel):
    id: str
    texts: List[str]


# --- Matcher ---

class MatchRequest(BaseModel):
    input: str
    options: List[OptionPayload]


class MatchResult(BaseModel):
    option_id: Optional[str] = None
    confidence: float = 0.0


# --- Branch Generator ---

class BranchRequest(BaseModel):
    input: str
    decision_prompt: str
    options: List[OptionPayload] = []
    scene_label: str = ""
    existing_scenes: List[str] = []
    history: List[str] = []
    new_scene_label: str = ""
    custom_prompt: Optional[str] = None


class ParagraphBranch(BaseModel):
    type: Literal["paragraph"] = "paragraph"
    text: str
    question: Optional[str] = None


class NewSceneBranch(BaseModel):
    # The model answers in camelCase
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["new_scene"] = "new_scene"
    scene_label: Optional[str] = Field(default=None, alias="sceneLabel")
    paragraphs: List[str] = []
    question: Optional[str] = None


class ExistingSceneBranch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["existing_scene"] = "existing_scene"
    scene_label: str = Field(alias="sceneLabel")
    paragraphs: List[str] = []


BranchResult = Union[ParagraphBranch, NewSceneBranch, ExistingSceneBranch]
