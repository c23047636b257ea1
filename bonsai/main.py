import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import StreamingResponse
from bonsai.database import async_engine, init_db
from bonsai.services.sse_service import redis_client, sse_generator
from bonsai.api.v1.endpoints import generation, play, stories
from bonsai.scheduler import scheduler, setup_scheduler

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles application startup and shutdown events.
    """
    # Startup
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    await init_db()
    await redis_client.connect()
    setup_scheduler()
    scheduler.start()

    yield

    # Shutdown
    await redis_client.close()
    scheduler.shutdown()
    await async_engine.dispose()

app = FastAPI(title="Bonsai Branching Stories", lifespan=lifespan)

@app.get("/events/{story_id}")
async def sse_events(story_id: int):
    """
    Endpoint for Server-Sent Events (SSE) to stream document and session updates.
    """
    return StreamingResponse(sse_generator(story_id), media_type="text/event-stream")

# Include API routers
app.include_router(stories.router, prefix="/api/v1", tags=["stories"])
app.include_router(play.router, prefix="/api/v1", tags=["play"])
app.include_router(generation.router, prefix="/api/v1", tags=["generation"])
