import logging
from fastapi import APIRouter, HTTPException

from bonsai.core.config import settings
from bonsai.schemas.branching import (
    BranchRequest,
    BranchResult,
    MatchRequest,
    MatchResult,
)
from bonsai.schemas.story import Option
from bonsai.services import branch_generator, matcher
from bonsai.services.errors import BranchParseError, GenerationError

router = APIRouter()


def _require_remote():
    if not settings.remote_enabled:
        raise HTTPException(status_code=503, detail="OPENAI_API_KEY is not configured")


@router.post("/match", response_model=MatchResult)
async def match(match_in: MatchRequest):
    """
    Maps free text onto one of the given options, or onto none.
    """
    _require_remote()
    if not match_in.input.strip() or not match_in.options:
        raise HTTPException(status_code=400, detail="Both input and options are required")
    options = [Option(id=o.id, texts=o.texts, lines=[]) for o in match_in.options]
    try:
        return await matcher.match_option(match_in.input, options)
    except GenerationError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/branch", response_model=BranchResult)
async def branch(branch_in: BranchRequest):
    """
    Generates a new story branch for an input no option covered.
    """
    _require_remote()
    if not branch_in.input.strip() or not branch_in.decision_prompt.strip():
        raise HTTPException(status_code=400, detail="input and decision_prompt are required")
    try:
        return await branch_generator.generate_branch(branch_in)
    except BranchParseError as e:
        logging.error(f"Unparseable branch: {e.raw[:200]}")
        raise HTTPException(status_code=502, detail={"error": str(e), "raw": e.raw})
    except GenerationError as e:
        raise HTTPException(status_code=502, detail=str(e))
