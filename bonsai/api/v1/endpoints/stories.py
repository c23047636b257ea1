import json
import logging
from typing import Callable, List
from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai.schemas import api as api_schema
from bonsai.crud import crud_story
from bonsai.database import get_session
from bonsai.data.initial_story import INITIAL_TITLE, initial_lines
from bonsai.services.document import StoryDocument
from bonsai.services.errors import DocumentError
from bonsai.services.notation import find_dangling_jumps, lines_to_structure, structure_to_lines
from bonsai.services.sse_service import redis_client, story_channel

router = APIRouter()


def _story_response(story) -> api_schema.StoryResponse:
    try:
        lines = crud_story.load_lines(story.lines_json)
    except (json.JSONDecodeError, ValidationError):
        raise HTTPException(status_code=500, detail="Failed to parse stored story lines.")
    structure = lines_to_structure(lines)
    return api_schema.StoryResponse(
        story_id=story.id,
        title=story.title,
        lines=lines,
        structure=structure,
        dangling_jumps=find_dangling_jumps(structure),
    )


async def _get_story_or_404(db: AsyncSession, story_id: int):
    story = await crud_story.get_story(db, story_id)
    if not story:
        raise HTTPException(status_code=404, detail="Story not found")
    return story


@router.post("/stories", response_model=api_schema.StoryResponse, status_code=201)
async def create_story(
    story_in: api_schema.StoryCreate,
    db: AsyncSession = Depends(get_session),
):
    """
    Creates a story from flat lines, or from the sample story when none are given.
    """
    lines = story_in.lines if story_in.lines is not None else initial_lines()
    title = story_in.title or INITIAL_TITLE
    story = await crud_story.create_story(db, title=title, lines=lines)
    logging.info(f"Created story {story.id} with {len(lines)} lines")
    return _story_response(story)


@router.get("/stories/{story_id}", response_model=api_schema.StoryResponse)
async def get_story(story_id: int, db: AsyncSession = Depends(get_session)):
    """
    Retrieves a story's lines along with the graph derived from them.
    """
    story = await _get_story_or_404(db, story_id)
    return _story_response(story)


@router.put("/stories/{story_id}/lines", response_model=api_schema.StoryResponse)
async def replace_lines(
    story_id: int,
    lines_in: api_schema.LinesUpdate,
    db: AsyncSession = Depends(get_session),
):
    """
    Replaces the whole document, as when pasting, and keeps a version of the result.
    """
    await _get_story_or_404(db, story_id)
    document = StoryDocument()
    document.replace_all_lines(lines_in.lines)
    story = await crud_story.update_story_lines(db, story_id, document.lines)
    await crud_story.save_version(db, story_id, "Pasted document", document.lines)
    await redis_client.publish(story_channel(story_id), {"event": "document_updated", "story_id": story_id})
    return _story_response(story)


async def _edit_lines(db: AsyncSession, story_id: int, edit: Callable[[StoryDocument], object]):
    """
    Applies one line edit to a stored story and saves it when anything changed.
    """
    story = await _get_story_or_404(db, story_id)
    try:
        document = StoryDocument(crud_story.load_lines(story.lines_json))
    except (json.JSONDecodeError, ValidationError):
        raise HTTPException(status_code=500, detail="Failed to parse stored story lines.")
    try:
        edit(document)
    except DocumentError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if document.revision:
        story = await crud_story.update_story_lines(db, story_id, document.lines)
        await redis_client.publish(story_channel(story_id), {"event": "document_updated", "story_id": story_id})
    return _story_response(story)


@router.post("/stories/{story_id}/lines", response_model=api_schema.StoryResponse, status_code=201)
async def insert_line(
    story_id: int,
    line_in: api_schema.LineInsert,
    db: AsyncSession = Depends(get_session),
):
    """
    Inserts one line before or after an anchor line, or at the end of the document.
    """
    def insert(document: StoryDocument):
        if line_in.before_id is not None:
            return document.insert_line_before(line_in.before_id, line_in.text, line_in.indent)
        return document.insert_line_after(line_in.after_id, line_in.text, line_in.indent)

    return await _edit_lines(db, story_id, insert)


@router.patch("/stories/{story_id}/lines/{line_id}", response_model=api_schema.StoryResponse)
async def edit_line(
    story_id: int,
    line_id: str,
    line_in: api_schema.LineEdit,
    db: AsyncSession = Depends(get_session),
):
    def edit(document: StoryDocument):
        if line_in.text is not None:
            document.update_line(line_id, line_in.text)
        if line_in.indent is not None:
            document.update_line_indent(line_id, line_in.indent)

    return await _edit_lines(db, story_id, edit)


@router.delete("/stories/{story_id}/lines/{line_id}", response_model=api_schema.StoryResponse)
async def delete_line(story_id: int, line_id: str, db: AsyncSession = Depends(get_session)):
    return await _edit_lines(db, story_id, lambda document: document.delete_line(line_id))


@router.delete("/stories/{story_id}", status_code=204)
async def delete_story(story_id: int, db: AsyncSession = Depends(get_session)):
    await _get_story_or_404(db, story_id)
    await crud_story.delete_story(db, story_id=story_id)
    logging.info(f"Deleted story {story_id}")
    return


# --- Versions ---

def _version_response(version) -> api_schema.VersionResponse:
    return api_schema.VersionResponse(
        id=version.id,
        label=version.label,
        created_at=version.created_at,
        lines=crud_story.load_lines(version.snapshot_json),
    )


@router.get("/stories/{story_id}/versions", response_model=List[api_schema.VersionResponse])
async def list_versions(story_id: int, db: AsyncSession = Depends(get_session)):
    await _get_story_or_404(db, story_id)
    versions = await crud_story.list_versions(db, story_id)
    return [_version_response(v) for v in versions]


@router.post("/stories/{story_id}/versions", response_model=api_schema.VersionResponse, status_code=201)
async def save_version(
    story_id: int,
    version_in: api_schema.VersionCreate,
    db: AsyncSession = Depends(get_session),
):
    """
    Snapshots the story's current lines under a label.
    """
    story = await _get_story_or_404(db, story_id)
    label = (version_in.label or "").strip() or "Snapshot"
    version = await crud_story.save_version(db, story_id, label, crud_story.load_lines(story.lines_json))
    return _version_response(version)


@router.post("/stories/{story_id}/versions/{version_id}/revert", response_model=api_schema.StoryResponse)
async def revert_version(story_id: int, version_id: int, db: AsyncSession = Depends(get_session)):
    await _get_story_or_404(db, story_id)
    story = await crud_story.revert_version(db, story_id, version_id)
    if not story:
        raise HTTPException(status_code=404, detail="Version not found")
    await redis_client.publish(story_channel(story_id), {"event": "document_updated", "story_id": story_id})
    return _story_response(story)


@router.delete("/stories/{story_id}/versions/{version_id}", status_code=204)
async def delete_version(story_id: int, version_id: int, db: AsyncSession = Depends(get_session)):
    version = await crud_story.get_version(db, story_id, version_id)
    if not version:
        raise HTTPException(status_code=404, detail="Version not found")
    await crud_story.delete_version(db, story_id, version_id)
    return


# --- Notation ---

@router.post("/notation/parse", response_model=api_schema.StructureResponse)
async def parse_notation(notation_in: api_schema.NotationParse):
    """
    Compiles flat lines into a story graph without storing anything.
    """
    structure = lines_to_structure(notation_in.lines)
    return api_schema.StructureResponse(structure=structure, dangling_jumps=find_dangling_jumps(structure))


@router.post("/notation/render", response_model=api_schema.NotationParse)
async def render_notation(notation_in: api_schema.NotationRender):
    return api_schema.NotationParse(lines=structure_to_lines(notation_in.structure))
