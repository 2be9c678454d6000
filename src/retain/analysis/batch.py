"""Batch execution with bisection on oversized payloads."""

import json
import logging
from typing import Callable, Optional, Sequence

from retain.analysis.payload import ConversationData
from retain.analysis.runner import AnalysisRunner, AnalysisRunResult
from retain.exceptions import BackendError, InvalidOutputError, PayloadTooLargeError
from retain.models.db import AnalysisQueueItem

logger = logging.getLogger(__name__)

OversizedCallback = Callable[[AnalysisQueueItem, PayloadTooLargeError], None]
FailedCallback = Callable[[list[AnalysisQueueItem], BackendError], None]


def _result_elements(json_output: str) -> list:
    try:
        parsed = json.loads(json_output)
    except json.JSONDecodeError as e:
        raise InvalidOutputError(f"{e.msg} at position {e.pos}") from e
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def run_with_split(
    runner: AnalysisRunner,
    tool: str,
    queue_items: Sequence[AnalysisQueueItem],
    conversations: Sequence[ConversationData],
    analysis_type: str,
    payload_mode: str = "minimized",
    max_payload_bytes: int = 500_000,
    on_oversized: Optional[OversizedCallback] = None,
    on_failed: Optional[FailedCallback] = None,
) -> AnalysisRunResult:
    """
    Run a batch, halving it whenever the payload is too large.

    Uses an explicit stack instead of recursion. A single item that is still
    too large re-raises ``PayloadTooLargeError`` unless ``on_oversized`` is
    given, in which case the item is reported there and skipped.

    A sub-batch the backend fails on (``BackendError``) re-raises unless
    ``on_failed`` is given; then its items are reported there and the
    remaining sub-batches still run, so results already returned are kept.
    Result arrays and dropped ids of all successful sub-batches are merged.
    """
    elements: list = []
    included = []
    dropped = []
    backend = model = None

    stack = [list(queue_items)] if queue_items else []
    while stack:
        chunk = stack.pop()
        try:
            result = runner.run_analysis(
                tool, chunk, conversations, analysis_type, payload_mode, max_payload_bytes
            )
            chunk_elements = _result_elements(result.json_output)
        except PayloadTooLargeError as e:
            if len(chunk) <= 1:
                if on_oversized is None:
                    raise
                on_oversized(chunk[0], e)
                continue
            middle = len(chunk) // 2
            logger.info(
                f"Payload too large ({e.size_bytes} bytes) for {len(chunk)} items, "
                f"splitting into {middle} + {len(chunk) - middle}"
            )
            stack.append(chunk[middle:])
            stack.append(chunk[:middle])
            continue
        except BackendError as e:
            if on_failed is None:
                raise
            logger.warning(f"Sub-batch of {len(chunk)} {analysis_type} items failed: {e}")
            on_failed(chunk, e)
            continue

        elements.extend(chunk_elements)
        included.extend(result.included_queue_ids)
        dropped.extend(result.dropped_queue_ids)
        backend = backend or result.backend
        model = model or result.model

    return AnalysisRunResult(
        json_output=json.dumps(elements),
        included_queue_ids=included,
        dropped_queue_ids=dropped,
        backend=backend,
        model=model,
    )
