import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Await long-running tasks; on exit cancel whatever is left and run cleanup once."""
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


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel a task and wait for it to unwind. Safe on None, finished tasks and the current task."""
    if task is None or task.done():
        return
    if task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Task %s failed while being cancelled", task.get_name())


def spawn(coro: Awaitable, registry: set, name: Optional[str] = None) -> asyncio.Task:
    """Start a background task and keep a strong reference until it finishes."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    registry.add(task)
    task.add_done_callback(registry.discard)
    return task
