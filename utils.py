import asyncio
from typing import Optional


async def cancel_and_wait(task: Optional[asyncio.Task]) -> None:
    """Cancel a background task and wait until it has finished unwinding."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
