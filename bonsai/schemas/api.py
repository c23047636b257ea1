from pydantic import BaseModel
from typing import List, Optional
import datetime

from bonsai.schemas.session import EngineStatus, GamePosition, HistoryEntry
from bonsai.schemas.story import DecisionLine, FlatLine, GameStructure, JumpLine

# --- Request Models ---

class StoryCreate(BaseModel):
    title: Optional[str] = None
    lines: Optional[List[FlatLine]] = None  # Seeded with the sample story when omitted

class LinesUpdate(BaseModel):
    lines: List[FlatLine]

class LineEdit(BaseModel):
    text: Optional[str] = None
    indent: Optional[int] = None

class LineInsert(BaseModel):
    text: str
    indent: int = 0
    # Anchor line; without either the line is appended at the end
    after_id: Optional[str] = None
    before_id: Optional[str] = None

class VersionCreate(BaseModel):
    label: Optional[str] = None

class NotationParse(BaseModel):
    lines: List[FlatLine]

class NotationRender(BaseModel):
    structure: GameStructure

class AdvanceRequest(BaseModel):
    input: Optional[str] = None

class SceneJump(BaseModel):
    scene_label: str

# --- Response Models ---

class StructureResponse(BaseModel):
    structure: GameStructure
    dangling_jumps: List[JumpLine]

class StoryResponse(BaseModel):
    story_id: int
    title: str
    lines: List[FlatLine]
    structure: GameStructure
    dangling_jumps: List[JumpLine]

class VersionResponse(BaseModel):
    id: int
    label: str
    created_at: Optional[datetime.datetime] = None
    lines: List[FlatLine]

class SessionStateResponse(BaseModel):
    session_id: int
    story_id: int
    status: EngineStatus
    position: GamePosition
    history: List[HistoryEntry]
    current_decision: Optional[DecisionLine] = None
    retry_reason: Optional[str] = None
    story_revised: bool = False
