"""Progress callback delivery shared by the engine and the pipeline."""

import asyncio
import inspect
import logging
from typing import Any, Optional

from libs.core.models import ProgressSink

logger = logging.getLogger(__name__)

# Scheduled callback coroutines; held so they are not garbage collected mid-flight
_pending: set = set()


def notify_progress(sink: Optional[ProgressSink], snapshot: dict[str, Any]) -> None:
    """Deliver one snapshot to ``sink``.

    A callback that raises is logged and ignored. A callback returning an
    awaitable is scheduled on the running loop and never awaited here.
    """
    if sink is None:
        return
    try:
        outcome = sink(snapshot)
    except Exception as e:
        logger.warning(f"[Progress] Callback raised: {e}")
        return

    if inspect.isawaitable(outcome):
        task = asyncio.ensure_future(outcome)
        _pending.add(task)
        task.add_done_callback(_finished)


def _finished(task: asyncio.Future) -> None:
    _pending.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning(f"[Progress] Async callback failed: {task.exception()}")
