from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel

from bonsai.schemas.story import LineType, PromptLine


class EngineStatus(str, Enum):
    PLAYING = "playing"
    AWAITING_INPUT = "awaiting_input"
    MATCHING = "matching"
    GENERATING = "generating"
    AWAITING_RETRY = "awaiting_retry"
    ENDED = "ended"


class OptionPath(BaseModel):
    option_id: str
    line_index: int = 0


class GamePosition(BaseModel):
    scene_label: str
    line_index: int = 0
    # Set while the cursor walks the lines nested under an option
    option_path: Optional[OptionPath] = None


class SelectionMeta(BaseModel):
    option: str
    confidence: Optional[float] = None
    cached: Optional[bool] = None
    generated: Optional[bool] = None


class HistoryEntry(BaseModel):
    line_id: str
    type: LineType
    text: str
    chosen_option: Optional[str] = None
    # System notes such as the terminal "No similar option."
    meta: bool = False
    selection_meta: Optional[SelectionMeta] = None


class RetryState(BaseModel):
    input: str
    reason: Literal["error", "parse_error"]
    raw: str = ""
    attempted: bool = False


class EngineSnapshot(BaseModel):
    position: GamePosition
    return_stack: List[GamePosition] = []
    history: List[HistoryEntry] = []
    seen_line_ids: List[str] = []
    prompts: List[PromptLine] = []
    pending_decision_id: Optional[str] = None
    ended: bool = False
    retry: Optional[RetryState] = None
