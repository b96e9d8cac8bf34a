import asyncio
import logging
from typing import Dict, Set, Optional, List

logger = logging.getLogger(__name__)


class TaskRegistry:
    """
    Tracks the background tasks of each session or connection so that
    every exit path can cancel them together and none is left orphaned.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        # Store tasks by context (e.g., session id, connection id)
        self._task_registry: Dict[str, Set[asyncio.Task]] = {}

    def register_task(self, task: asyncio.Task, context: str) -> asyncio.Task:
        """
        Register a task with a specific context identifier.
        Returns the task for convenience in chaining.
        """
        self._task_registry.setdefault(context, set()).add(task)

        # Create a callback to remove the task when it's done
        def _remove_task_when_done(fut: asyncio.Task):
            tasks = self._task_registry.get(context)
            if tasks is None:
                return
            tasks.discard(fut)
            # Clean up empty sets
            if not tasks:
                del self._task_registry[context]
            if not fut.cancelled() and fut.exception() is not None:
                logger.debug(f"Task {fut.get_name()} in context {context} ended with {fut.exception()!r}")

        task.add_done_callback(_remove_task_when_done)
        logger.debug(f"Registered task: {task.get_name()} in context {context}")
        return task

    def create_task(self, coro, name: Optional[str] = None, context: str = "global") -> asyncio.Task:
        """
        Create and register a task in one operation.
        """
        task = asyncio.create_task(coro, name=name)
        return self.register_task(task, context)

    async def cancel_context_tasks(self, context: str, timeout: float = 5.0,
                                   exclude: Optional[asyncio.Task] = None) -> int:
        """
        Cancel all tasks for a specific context with a timeout.

        ``exclude`` lets a task of the context cancel its siblings without
        cancelling itself.

        Returns the number of tasks that were canceled.
        """
        tasks = [t for t in self._task_registry.get(context, ()) if t is not exclude]
        if not tasks:
            return 0

        logger.debug(f"Canceling {len(tasks)} task(s) for context: {context}")

        for task in tasks:
            if not task.done():
                task.cancel()

        # Wait for all tasks to complete cancellation with timeout
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        if still_running:
            logger.warning(f"{len(still_running)} task(s) in context {context} failed to cancel within timeout")

        return len(tasks)

    def get_context_task_count(self, context: str) -> int:
        """Get the number of tasks currently registered for a context."""
        return len(self._task_registry.get(context, ()))

    def get_all_contexts(self) -> List[str]:
        """Get a list of all active contexts."""
        return list(self._task_registry.keys())


# Singleton instance
task_registry = TaskRegistry()
