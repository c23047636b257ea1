import asyncio
import json
import logging
import redis.asyncio as redis
from bonsai.core.config import settings

class RedisClient:
    def __init__(self, url):
        self.redis_url = url
        self.redis_pool = None

    async def connect(self):
        self.redis_pool = redis.ConnectionPool.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        if self.redis_pool:
            await self.redis_pool.disconnect()
            self.redis_pool = None

    async def publish(self, channel: str, message: dict):
        """
        Publishes a message to a Redis channel. Does nothing until connected.
        """
        if not self.redis_pool:
            return
        try:
            async with redis.Redis(connection_pool=self.redis_pool) as r:
                await r.publish(channel, json.dumps(message, ensure_ascii=False))
        except redis.RedisError as e:
            logging.warning(f"Failed to publish to {channel}: {e}")

    async def listen(self, channel: str):
        """
        Listens to a Redis channel and yields messages until the consumer goes away.
        """
        if not self.redis_pool:
            raise RuntimeError("Redis is not connected")
        async with redis.Redis(connection_pool=self.redis_pool) as r:
            pubsub = r.pubsub()
            await pubsub.subscribe(channel)
            try:
                while True:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=20)
                    if message:
                        yield message["data"]
                    await asyncio.sleep(0.01)
            finally:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()

redis_client = RedisClient(settings.REDIS_URL)


def story_channel(story_id: int) -> str:
    return f"story:{story_id}"


async def sse_generator(story_id: int):
    """
    An async generator that listens to a story's Redis channel and yields SSE-formatted messages.
    It dynamically sets the event name based on the received message.
    """
    async for message in redis_client.listen(story_channel(story_id)):
        try:
            data = json.loads(message)
            event_name = data.get("event", "message")  # Default to 'message' if event key is missing
            event_data = json.dumps(data, ensure_ascii=False)
            yield f"event: {event_name}\ndata: {event_data}\n\n"
        except json.JSONDecodeError:
            # If the message is not a valid JSON, send it as a generic message.
            yield f"event: message\ndata: {message}\n\n"
