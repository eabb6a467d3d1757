"""
Post-commit hook pipeline.

Hooks (audit, change notification, ...) run only after the triggering
operation committed successfully, outside any transaction. Each hook runs
independently: a failing hook is logged and reported, and never changes the
outcome already returned to the caller.

Delivery is at-most-once. In fire-and-forget mode the hooks run in a
background task; a crash between commit and hook execution loses the call
and nothing replays it.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, List, Set, Tuple, Union

from tenantdb.logger import StructuredLogger
from tenantdb.models import HookReport, ScopeResult

logger = StructuredLogger("tenantdb.hooks")


class PostCommitHook(ABC):
    """Base class for post-commit hooks."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def __call__(self, result: ScopeResult) -> None:
        """Run the hook for a committed scope."""
        pass


HookCallable = Union[PostCommitHook, Callable[[ScopeResult], Awaitable[Any]]]


def _hook_name(hook: HookCallable) -> str:
    name = getattr(hook, "name", None)
    if isinstance(name, str):
        return name
    return getattr(hook, "__name__", type(hook).__name__)


class PostCommitPipeline:
    """Runs registered hooks after a successful commit.

    Args:
        hooks: Initial hooks, run in order
        fire_and_forget: Schedule hooks in the background and return at once

    Example:
        >>> pipeline = PostCommitPipeline([AuditHook(sink), NotifyHook(channel)])
        >>> reports = await pipeline.after_commit(scope_result)
        >>> [report.succeeded for report in reports]
        [True, True]
    """

    def __init__(self, hooks: Iterable[HookCallable] = (), fire_and_forget: bool = False):
        self._hooks: List[HookCallable] = list(hooks)
        self.fire_and_forget = fire_and_forget
        self._pending: Set[asyncio.Task] = set()

    @property
    def hooks(self) -> Tuple[HookCallable, ...]:
        return tuple(self._hooks)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register(self, hook: HookCallable) -> HookCallable:
        """Append a hook; usable as a decorator on async functions."""
        if not callable(hook):
            raise TypeError(f"Hook must be callable, got {type(hook).__name__}")
        self._hooks.append(hook)
        return hook

    async def after_commit(self, result: ScopeResult) -> List[HookReport]:
        """Run the hooks for ``result``.

        Does nothing when the outcome did not succeed. In fire-and-forget
        mode the hooks are scheduled and an empty report list is returned.

        Args:
            result: Finished scope and its outcome

        Returns:
            One HookReport per hook, in registration order
        """
        if not result.outcome.succeeded or not self._hooks:
            return []

        hooks = list(self._hooks)
        if self.fire_and_forget:
            task = asyncio.create_task(self._run_hooks(result, hooks))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return []

        return await self._run_hooks(result, hooks)

    async def _run_hooks(self, result: ScopeResult, hooks: List[HookCallable]) -> List[HookReport]:
        reports = []
        for hook in hooks:
            name = _hook_name(hook)
            try:
                await hook(result)
            except Exception as e:
                logger.warning(
                    "Post-commit hook failed",
                    hook=name,
                    scope_id=result.scope_id,
                    tenants=list(result.tenants),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                reports.append(HookReport(hook=name, succeeded=False, error=f"{type(e).__name__}: {e}"))
                continue

            reports.append(HookReport(hook=name, succeeded=True))
        return reports

    async def drain(self) -> None:
        """Wait for background hook runs scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
