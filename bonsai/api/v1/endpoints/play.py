import json
import logging
from typing import Awaitable, Callable
from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai.schemas import api as api_schema
from bonsai.schemas.session import EngineSnapshot
from bonsai.crud import crud_story
from bonsai.database import get_session
from bonsai.services.document import StoryDocument
from bonsai.services.engine import SingleFlight, StoryEngine, default_collaborators
from bonsai.services.errors import EngineBusyError
from bonsai.services.sse_service import redis_client, story_channel

router = APIRouter()

session_guard = SingleFlight()


def _session_response(session_id: int, story_id: int, engine: StoryEngine, story_revised: bool = False):
    structure = engine.document.structure()
    return api_schema.SessionStateResponse(
        session_id=session_id,
        story_id=story_id,
        status=engine.status,
        position=engine.position,
        history=engine.history,
        current_decision=engine.current_decision(structure),
        retry_reason=engine.retry_state.reason if engine.retry_state else None,
        story_revised=story_revised,
    )


async def _load_story_document(db: AsyncSession, story_id: int) -> StoryDocument:
    story = await crud_story.get_story(db, story_id)
    if not story:
        raise HTTPException(status_code=404, detail="Story not found")
    try:
        return StoryDocument(crud_story.load_lines(story.lines_json))
    except (json.JSONDecodeError, ValidationError):
        raise HTTPException(status_code=500, detail="Failed to parse stored story lines.")


async def _run_session(
    db: AsyncSession,
    session_id: int,
    action: Callable[[StoryEngine], Awaitable[object]],
    version_label: str = "",
) -> api_schema.SessionStateResponse:
    """
    Loads a session, applies one engine action and stores the session and any
    document changes the action made.
    """
    session = await crud_story.get_session(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    document = await _load_story_document(db, session.story_id)
    try:
        snapshot = EngineSnapshot.model_validate_json(session.state_json)
    except ValidationError:
        raise HTTPException(status_code=500, detail="Failed to parse stored session state.")

    engine = StoryEngine.from_snapshot(document, snapshot, **default_collaborators())
    revision, line_count = document.revision, len(document.lines)
    try:
        async with session_guard.hold(session_id):
            await action(engine)
    except EngineBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    story_revised = document.revision != revision
    if story_revised:
        await crud_story.update_story_lines(db, session.story_id, document.lines)
        if len(document.lines) > line_count:
            await crud_story.save_version(db, session.story_id, version_label or "Auto branch", document.lines)
        await redis_client.publish(
            story_channel(session.story_id), {"event": "document_updated", "story_id": session.story_id}
        )

    await crud_story.update_session_state(db, session_id, engine.snapshot())
    await redis_client.publish(
        story_channel(session.story_id),
        {"event": "session_updated", "session_id": session_id, "status": engine.status.value},
    )
    return _session_response(session_id, session.story_id, engine, story_revised)


@router.post("/stories/{story_id}/sessions", response_model=api_schema.SessionStateResponse, status_code=201)
async def create_session(story_id: int, db: AsyncSession = Depends(get_session)):
    """
    Starts a new play session at the story's start scene.
    """
    document = await _load_story_document(db, story_id)
    engine = StoryEngine(document)
    session = await crud_story.create_session(db, story_id, engine.snapshot())
    logging.info(f"Started session {session.id} for story {story_id}")
    return _session_response(session.id, story_id, engine)


@router.get("/sessions/{session_id}", response_model=api_schema.SessionStateResponse)
async def get_session_state(session_id: int, db: AsyncSession = Depends(get_session)):
    async def noop(engine: StoryEngine):
        return engine.status

    return await _run_session(db, session_id, noop)


@router.post("/sessions/{session_id}/advance", response_model=api_schema.SessionStateResponse)
async def advance_session(
    session_id: int,
    advance_in: api_schema.AdvanceRequest,
    db: AsyncSession = Depends(get_session),
):
    """
    Takes one step. At a decision, `input` is matched against the options and,
    failing that, a new branch is generated and spliced into the story.
    """
    async def step(engine: StoryEngine):
        return await engine.advance(advance_in.input)

    return await _run_session(db, session_id, step, version_label=f"Auto branch: {advance_in.input or ''}".strip())


@router.post("/sessions/{session_id}/retry", response_model=api_schema.SessionStateResponse)
async def retry_generation(session_id: int, db: AsyncSession = Depends(get_session)):
    async def retry(engine: StoryEngine):
        return await engine.retry()

    return await _run_session(db, session_id, retry, version_label="Auto branch (retry)")


@router.post("/sessions/{session_id}/decline-retry", response_model=api_schema.SessionStateResponse)
async def decline_retry(session_id: int, db: AsyncSession = Depends(get_session)):
    async def decline(engine: StoryEngine):
        return engine.decline_retry()

    return await _run_session(db, session_id, decline)


@router.post("/sessions/{session_id}/restart", response_model=api_schema.SessionStateResponse)
async def restart_session(session_id: int, db: AsyncSession = Depends(get_session)):
    async def restart(engine: StoryEngine):
        engine.restart()

    return await _run_session(db, session_id, restart)


@router.post("/sessions/{session_id}/jump", response_model=api_schema.SessionStateResponse)
async def jump_to_scene(
    session_id: int,
    jump_in: api_schema.SceneJump,
    db: AsyncSession = Depends(get_session),
):
    """
    Restarts the session inside one scene, as when the author previews it.
    """
    async def jump(engine: StoryEngine):
        if not engine.jump_to_scene(jump_in.scene_label):
            raise HTTPException(status_code=404, detail="Scene not found")

    return await _run_session(db, session_id, jump)


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: int, db: AsyncSession = Depends(get_session)):
    session = await crud_story.get_session(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    await crud_story.delete_session(db, session_id=session_id)
    logging.info(f"Deleted session {session_id}")
    return
