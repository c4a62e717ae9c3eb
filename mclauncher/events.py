"""
Outbound events for whoever presents the engine's progress.

The engine only ever calls ``emit``: it does not wait on delivery, does not
retry, and a sink that raises is logged and otherwise ignored.
"""
import logging
from typing import Any, Protocol

log = logging.getLogger(__name__)

INSTANCE_STATE_CHANGED = "instance-state-changed"
INSTANCE_LOG = "instance-log"
ASSET_PROGRESS = "asset-progress"
ASSET_DONE = "asset-done"
INSTALL_LOG = "install-log"
LOADER_INSTALL_LOG = "loader-install-log"
LOADER_INSTALL_PROGRESS = "loader-install-progress"


class EventSink(Protocol):
    def emit(self, event: str, payload: Any) -> None:
        ...


class NullSink:
    def emit(self, event: str, payload: Any) -> None:
        pass


class LoggingSink:
    """Mirrors events into the log, per-chunk progress only at debug level."""

    def emit(self, event: str, payload: Any) -> None:
        if event == ASSET_PROGRESS:
            log.debug(f"{event}: {payload}")
        else:
            log.info(f"{event}: {payload}")


def emit(sink: EventSink, event: str, payload: Any) -> None:
    """Fire-and-forget delivery of one event."""
    try:
        sink.emit(event, payload)
    except Exception as e:
        log.warning(f"Event sink failed on '{event}': {e}")
