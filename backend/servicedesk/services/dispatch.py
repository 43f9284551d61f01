from __future__ import annotations
"""Post-commit side effects.

Services collect ``Effect`` intents while the transaction is open and hand them to
``PostCommitDispatcher.dispatch`` only after ``session.commit()`` succeeded. Each
effect runs in isolation: a failure is logged and never reaches the caller.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

MODE_THREAD = 'thread'
MODE_INLINE = 'inline'


@dataclass
class Effect:
    name: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


class PostCommitDispatcher:
    def __init__(self, mode: str = MODE_THREAD, max_workers: int = 4):
        if mode not in (MODE_THREAD, MODE_INLINE):
            raise ValueError(f'unknown dispatch mode {mode!r}')
        self.mode = mode
        self._executor: Optional[ThreadPoolExecutor] = None
        if mode == MODE_THREAD:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='post-commit')

    def dispatch(self, effects: Iterable[Effect]) -> List[Future]:
        futures = []
        for effect in effects:
            if self._executor is None:
                _run(effect)
            else:
                futures.append(self._executor.submit(_run, effect))
        return futures

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def _run(effect: Effect) -> bool:
    try:
        effect.fn(*effect.args, **effect.kwargs)
        return True
    except Exception:
        logger.exception('post-commit effect failed', extra={'effect': effect.name})
        return False


__all__ = ['Effect', 'PostCommitDispatcher', 'MODE_THREAD', 'MODE_INLINE']
