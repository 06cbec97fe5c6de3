"""Forward steps paired with compensations, undone in reverse order.

There is no transaction spanning the identity provider and the profile
store, so multi-system writes record how to undo each completed step.
Compensations are best-effort: a failing compensation is logged and
reported, never retried, and never masks the error that triggered it.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

from tollgate.logging import get_logger

logger = get_logger(__name__)

Action = Callable[[], Union[Any, Awaitable[Any]]]
Compensation = Callable[[Any], Union[Any, Awaitable[Any]]]
Reporter = Callable[..., None]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class _Completed:
    name: str
    result: Any
    compensation: Compensation


@dataclass
class Saga:
    name: str
    reporter: Optional[Reporter] = None
    _completed: List[_Completed] = field(default_factory=list)

    async def step(
        self, name: str, action: Action, *, compensation: Optional[Compensation] = None
    ) -> Any:
        """Run ``action``; on success remember how to undo it."""
        result = await _resolve(action())
        if compensation is not None:
            self._completed.append(_Completed(name, result, compensation))
        return result

    async def compensate(self) -> List[str]:
        """Undo completed steps newest first. Returns the names that failed to undo."""
        failed: List[str] = []
        while self._completed:
            done = self._completed.pop()
            try:
                await _resolve(done.compensation(done.result))
                logger.info("saga_step_compensated", saga=self.name, step=done.name)
            except Exception as exc:
                failed.append(done.name)
                logger.error(
                    "saga_compensation_failed",
                    saga=self.name,
                    step=done.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if self.reporter is not None:
                    self.reporter(exc, saga=self.name, step=done.name)
        return failed
