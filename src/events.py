"""
Reconcile Events - Normal/Warning events recorded by reconcilers.

Mirrors the Kubernetes event recorder: reconcilers record short, reasoned
events against the object they act on. Events are logged and kept in a
bounded in-memory history that the CLI shows after a reconcile.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from resources import ResourceRef

logger = logging.getLogger(__name__)

REASON_RECONCILE_ERROR = "ReconcileError"
REASON_ANNOTATED = "Annotated"
REASON_READY = "Ready"


class EventType(Enum):
    """Types of reconcile events."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class ReconcileEvent:
    """Event recorded against an object by a reconciler."""

    event_type: EventType
    ref: ResourceRef
    reason: str
    message: str
    source: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "involvedObject": {
                "kind": self.ref.kind,
                "namespace": self.ref.namespace,
                "name": self.ref.name,
            },
            "reason": self.reason,
            "message": self.message,
            "source": {"component": self.source},
            "timestamp": self.timestamp,
        }


class EventRecorder:
    """
    Records events for one controller component.

    Every event is logged and kept in a bounded history, oldest first.
    """

    def __init__(self, source: str, history_size: int = 100):
        self.source = source
        self._history: Deque[ReconcileEvent] = deque(maxlen=history_size)

    def record(
        self, ref: ResourceRef, event_type: EventType, reason: str, message: str
    ) -> ReconcileEvent:
        event = ReconcileEvent(
            event_type=event_type,
            ref=ref,
            reason=reason,
            message=message,
            source=self.source,
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        self._history.append(event)

        if event_type is EventType.WARNING:
            logger.warning(f"{ref}: {reason}: {message}")
        else:
            logger.info(f"{ref}: {reason}: {message}")
        return event

    def normal(self, ref: ResourceRef, reason: str, message: str) -> ReconcileEvent:
        return self.record(ref, EventType.NORMAL, reason, message)

    def warning(self, ref: ResourceRef, reason: str, message: str) -> ReconcileEvent:
        return self.record(ref, EventType.WARNING, reason, message)

    def history(self, ref: Optional[ResourceRef] = None) -> List[ReconcileEvent]:
        """Return recorded events, oldest first, optionally for one object."""
        return [e for e in self._history if ref is None or e.ref == ref]
