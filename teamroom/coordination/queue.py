"""
Queue position allocator.

Positions are strictly increasing per chatroom. The read-and-increment is a
single UPDATE ... RETURNING against ``chatrooms.next_queue_position``; a NULL
counter (chatrooms created before the counter column existed) is seeded from
``MAX(tasks.queue_position) + 1`` inside the same statement and persisted.
Callers that also insert the task hold ``chatroom_lock(chatroom_id)``.
"""
import logging

import aiosqlite

from teamroom.errors import NotFound

logger = logging.getLogger(__name__)


async def next_position(db: aiosqlite.Connection, chatroom_id: str) -> int:
    """Atomically allocate and return the next queue position for a chatroom."""
    async with db.execute(
        """
        UPDATE chatrooms
           SET next_queue_position = COALESCE(
                   next_queue_position,
                   (SELECT COALESCE(MAX(queue_position), 0) + 1 FROM tasks WHERE chatroom_id = ?)
               ) + 1
         WHERE id = ?
        RETURNING next_queue_position - 1 AS position
        """,
        (chatroom_id, chatroom_id),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        raise NotFound(f"Chatroom {chatroom_id} not found", chatroom_id=chatroom_id)
    await db.commit()
    logger.debug(f"Queue position allocated: chatroom={chatroom_id} position={row['position']}")
    return row["position"]


async def peek_position(db: aiosqlite.Connection, chatroom_id: str) -> int:
    """The position the next allocation would return, without allocating it."""
    async with db.execute(
        """
        SELECT COALESCE(
                   c.next_queue_position,
                   (SELECT COALESCE(MAX(queue_position), 0) + 1 FROM tasks WHERE chatroom_id = c.id)
               ) AS position
          FROM chatrooms c
         WHERE c.id = ?
        """,
        (chatroom_id,),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        raise NotFound(f"Chatroom {chatroom_id} not found", chatroom_id=chatroom_id)
    return row["position"]
