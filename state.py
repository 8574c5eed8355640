"""
Fencing state codec.

The whole state of a node's fencing procedure lives in two annotations on
the Node object. This module decodes them into a FencingRecord and computes
the minimal annotation changes needed to move a node to another record.
A change value of None means "remove the annotation".
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

STATE_ANNOTATION = "fencing/state"
TIMESTAMP_ANNOTATION = "fencing/timestamp"

# Plain ASCII decimal, no separators or padding
INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")

logger = logging.getLogger(__name__)


class FencingState(Enum):
    NONE = ""
    PENDING = "pending"
    STARTED = "started"
    FENCED = "fenced"
    # Computed for the rest of a pass after a node comes back; never written
    RECOVERED = "recovered"


@dataclass(frozen=True)
class FencingRecord:
    """Persisted fencing state of a node"""
    state: FencingState = FencingState.NONE
    timestamp: Optional[int] = None


def decode_state(value: Optional[str]) -> FencingState:
    normalized = (value or "").strip().lower()
    if not normalized:
        return FencingState.NONE
    try:
        state = FencingState(normalized)
    except ValueError:
        state = None
    if state in (None, FencingState.RECOVERED):
        logger.warning(f"Unrecognised {STATE_ANNOTATION} value {value!r}, treating it as pending")
        return FencingState.PENDING
    return state


def parse_int(value: Optional[str]) -> Optional[int]:
    """Strict integer parse of an annotation value, None if it is not one"""
    if value is None or not INTEGER_PATTERN.fullmatch(value):
        return None
    return int(value)


def decode_timestamp(value: Optional[str]) -> Optional[int]:
    return parse_int(value)


def decode(annotations: Optional[Mapping[str, str]]) -> FencingRecord:
    """Build a FencingRecord from a node's annotations"""
    annotations = annotations or {}
    return FencingRecord(
        state=decode_state(annotations.get(STATE_ANNOTATION)),
        timestamp=decode_timestamp(annotations.get(TIMESTAMP_ANNOTATION)),
    )


def encode(record: FencingRecord) -> Dict[str, Optional[str]]:
    """Full annotation values for a record, None marking keys that must be absent"""
    if record.state is FencingState.RECOVERED:
        raise ValueError("recovered is a transient state and cannot be persisted")

    state = record.state.value or None
    timestamp = None
    # The timestamp only means something while the grace period runs
    if record.state is FencingState.PENDING and record.timestamp is not None:
        timestamp = str(record.timestamp)
    return {STATE_ANNOTATION: state, TIMESTAMP_ANNOTATION: timestamp}


def diff(annotations: Optional[Mapping[str, str]], record: FencingRecord) -> Dict[str, Optional[str]]:
    """Minimal merge-patch changes that turn the current annotations into record.

    Keys already holding the wanted value (or already absent when they should
    be removed) are left out, so an empty dict means nothing to write.
    """
    annotations = annotations or {}
    changes = {}
    for key, value in encode(record).items():
        if value is None:
            if key in annotations:
                changes[key] = None
        elif annotations.get(key) != value:
            changes[key] = value
    return changes


def apply(annotations: Optional[Mapping[str, str]], changes: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """Local view of the annotations after a merge patch has been applied"""
    result = dict(annotations or {})
    for key, value in changes.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = value
    return result
