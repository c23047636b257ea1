import json
from typing import List, Optional
from sqlalchemy.future import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonsai.models import story as story_model
from bonsai.schemas.session import EngineSnapshot
from bonsai.schemas.story import FlatLine
from datetime import datetime, timedelta, timezone


def dump_lines(lines: List[FlatLine]) -> str:
    return json.dumps([line.model_dump() for line in lines], ensure_ascii=False)


def load_lines(raw: str) -> List[FlatLine]:
    return [FlatLine.model_validate(item) for item in json.loads(raw or "[]")]


# --- Stories ---

async def create_story(db: AsyncSession, title: str, lines: List[FlatLine]) -> story_model.Story:
    """
    Creates a new story together with its initial version.
    """
    new_story = story_model.Story(title=title, lines_json=dump_lines(lines))
    db.add(new_story)
    await db.commit()
    await db.refresh(new_story)
    await save_version(db, new_story.id, "Initial", lines)
    return new_story

async def get_story(db: AsyncSession, story_id: int) -> Optional[story_model.Story]:
    result = await db.execute(select(story_model.Story).where(story_model.Story.id == story_id))
    return result.scalars().first()

async def update_story_lines(db: AsyncSession, story_id: int, lines: List[FlatLine]) -> Optional[story_model.Story]:
    """
    Replaces the flat lines of a story.
    """
    story = await get_story(db, story_id)
    if story:
        story.lines_json = dump_lines(lines)
        await db.commit()
        await db.refresh(story)
    return story

async def delete_story(db: AsyncSession, story_id: int):
    """
    Deletes a story along with its versions and play sessions.
    """
    story = await get_story(db, story_id)
    if not story:
        return
    for model in (story_model.StoryVersion, story_model.PlaySession):
        result = await db.execute(select(model).where(model.story_id == story_id))
        for row in result.scalars().all():
            await db.delete(row)
    await db.delete(story)
    await db.commit()


# --- Versions ---

async def save_version(db: AsyncSession, story_id: int, label: str, lines: List[FlatLine]) -> story_model.StoryVersion:
    version = story_model.StoryVersion(story_id=story_id, label=label, snapshot_json=dump_lines(lines))
    db.add(version)
    await db.commit()
    await db.refresh(version)
    return version

async def list_versions(db: AsyncSession, story_id: int) -> List[story_model.StoryVersion]:
    """
    Lists the versions of a story, newest first.
    """
    result = await db.execute(
        select(story_model.StoryVersion)
        .where(story_model.StoryVersion.story_id == story_id)
        .order_by(story_model.StoryVersion.id.desc())
    )
    return list(result.scalars().all())

async def get_version(db: AsyncSession, story_id: int, version_id: int) -> Optional[story_model.StoryVersion]:
    result = await db.execute(
        select(story_model.StoryVersion)
        .where(story_model.StoryVersion.id == version_id)
        .where(story_model.StoryVersion.story_id == story_id)
    )
    return result.scalars().first()

async def revert_version(db: AsyncSession, story_id: int, version_id: int) -> Optional[story_model.Story]:
    """
    Copies a version's snapshot back into the story.
    """
    version = await get_version(db, story_id, version_id)
    if not version:
        return None
    return await update_story_lines(db, story_id, load_lines(version.snapshot_json))

async def delete_version(db: AsyncSession, story_id: int, version_id: int):
    version = await get_version(db, story_id, version_id)
    if version:
        await db.delete(version)
        await db.commit()


# --- Play Sessions ---

async def create_session(db: AsyncSession, story_id: int, snapshot: EngineSnapshot) -> story_model.PlaySession:
    session = story_model.PlaySession(story_id=story_id, state_json=snapshot.model_dump_json())
    db.add(session)
    await db.commit()
    await db.refresh(session)
    return session

async def get_session(db: AsyncSession, session_id: int) -> Optional[story_model.PlaySession]:
    result = await db.execute(select(story_model.PlaySession).where(story_model.PlaySession.id == session_id))
    return result.scalars().first()

async def update_session_state(db: AsyncSession, session_id: int, snapshot: EngineSnapshot) -> Optional[story_model.PlaySession]:
    session = await get_session(db, session_id)
    if session:
        session.state_json = snapshot.model_dump_json()
        await db.commit()
        await db.refresh(session)
    return session

async def delete_session(db: AsyncSession, session_id: int):
    session = await get_session(db, session_id)
    if session:
        await db.delete(session)
        await db.commit()

async def remove_inactive_sessions(db: AsyncSession, inactive_hours: int) -> int:
    """
    Deletes play sessions that have not been updated for a specified number of hours.

    :param db: The async database session.
    :param inactive_hours: The threshold in hours for a session to be considered inactive.
    :return: The number of sessions deleted.
    """
    threshold = datetime.now(timezone.utc) - timedelta(hours=inactive_hours)

    result = await db.execute(
        select(story_model.PlaySession)
        .where(story_model.PlaySession.updated_at < threshold)
    )
    inactive_sessions = result.scalars().all()

    count = len(inactive_sessions)

    if count > 0:
        for session in inactive_sessions:
            await db.delete(session)
        await db.commit()

    return count
