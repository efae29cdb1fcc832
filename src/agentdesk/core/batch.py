from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

logger = logging.getLogger("agentdesk.batch")

T = TypeVar("T")


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.processed + self.failed

    def to_dict(self) -> dict:
        return {"processed": self.processed, "failed": self.failed, "errors": dict(self.errors)}


def _chunks(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def process_in_batches(
    items: Sequence[T],
    fn: Callable[[T], object],
    batch_size: int = 50,
    delay_seconds: float = 0.0,
    key: Optional[Callable[[T], str]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchResult:
    """Run ``fn`` over ``items`` in fixed-size batches with a pause between batches.

    A failing item is counted and recorded in ``errors`` without aborting the
    rest of the run. ``should_stop`` is checked between batches.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    result = BatchResult()
    batches: List[Sequence[T]] = list(_chunks(items, batch_size))
    position = 0
    for index, batch in enumerate(batches):
        if should_stop and should_stop():
            logger.info("Batch run stopped after %d item(s)", result.total)
            break
        for item in batch:
            position += 1
            try:
                fn(item)
                result.processed += 1
            except Exception as exc:  # noqa: BLE001
                result.failed += 1
                label = key(item) if key else str(position)
                result.errors[label] = str(exc)
                logger.warning("Batch item %s failed: %s", label, exc)
        if delay_seconds and index < len(batches) - 1:
            sleep(delay_seconds)
    return result
