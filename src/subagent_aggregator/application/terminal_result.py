"""Summaries for delegation results that are already known at open time."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from subagent_aggregator.core.domain.messages import (
    MatchConfidence,
    MessageKind,
    MessageSubtype,
    NormalizedMessage,
    Provenance,
)
from subagent_aggregator.core.domain.session import LifecycleSignal
from subagent_aggregator.core.utils.time import utc_now


def has_result(result: Any) -> bool:
    """Whether ``result`` counts as a supplied terminal result.

    ``None`` and the empty string mean "not finished yet".
    """
    return result is not None and result != ""


def _as_mapping(result: Any) -> Mapping[str, Any] | None:
    if isinstance(result, Mapping):
        return result
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        return dataclasses.asdict(result)
    return None


def summarize_result(result: Any) -> str:
    """Render a delegation result as display text.

    Order of preference: the string itself, ``content.text``, ``content``,
    ``output``, ``text``, then pretty-printed JSON of the whole result.
    """
    if isinstance(result, str):
        return result
    data = _as_mapping(result)
    if data is not None:
        content = data.get("content")
        if content:
            if isinstance(content, Mapping) and content.get("text"):
                return str(content["text"])
            if isinstance(content, str):
                return content
            return json.dumps(content, indent=2, default=str)
        for key in ("output", "text"):
            value = data.get(key)
            if value:
                return value if isinstance(value, str) else json.dumps(value, indent=2, default=str)
        return json.dumps(dict(data), indent=2, default=str)
    return json.dumps(result, indent=2, default=str)


def is_error_result(result: Any) -> bool:
    """Whether a result reports failure (``is_error`` set or ``success`` false)."""
    data = _as_mapping(result)
    if data is None:
        return False
    return bool(data.get("is_error")) or data.get("success") is False


def build_summary_message(
    result: Any,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> NormalizedMessage:
    """Synthesize the single transcript entry for a finished delegation."""
    errored = is_error_result(result)
    data = _as_mapping(result)
    return NormalizedMessage(
        kind=MessageKind.RESULT,
        subtype=(MessageSubtype.ERROR if errored else MessageSubtype.SUCCESS).value,
        text=summarize_result(result),
        structured_content=dict(data) if data is not None else None,
        timestamp=clock(),
        signal=LifecycleSignal.ERRORED if errored else LifecycleSignal.COMPLETED,
        provenance=Provenance(confidence=MatchConfidence.SYNTHESIZED),
    )
