import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Await long-running service tasks; on exit cancel stragglers, then run ``cleanup``."""
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def wait_or_stop(stop_event: asyncio.Event, timeout_s: float) -> bool:
    """Sleep up to ``timeout_s``; return True as soon as ``stop_event`` is set."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(timeout_s, 0.0))
    except asyncio.TimeoutError:
        return False
    return True
