"""
Pipeline event journal in NDJSON format, one file per project.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


def emit_event(events_path: Path, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
    """
    Append an event to a project's journal.

    Args:
        events_path: The project's <name>.events.ndjson file
        event_type: Event type (see EventTypes)
        data: Event data
    """
    events_path.parent.mkdir(parents=True, exist_ok=True)
    event = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "data": data or {},
    }

    with open(events_path, "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()


def read_events(events_path: Path) -> List[Dict[str, Any]]:
    """
    Read all events from a journal, skipping malformed lines.

    Args:
        events_path: Journal file

    Returns:
        List of events, oldest first
    """
    if not events_path.exists():
        return []

    events = []
    with open(events_path, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
    return events


def get_last_event(events_path: Path) -> Optional[Dict[str, Any]]:
    events = read_events(events_path)
    return events[-1] if events else None


def get_status_from_events(events_path: Path) -> str:
    """
    Derive the pipeline state from the most recent event.

    Args:
        events_path: Journal file

    Returns:
        Status string ("unknown" when there is no journal)
    """
    last_event = get_last_event(events_path)
    if not last_event:
        return "unknown"

    status_map = {
        EventTypes.DEPLOY_START: "queued",
        EventTypes.FETCH_DONE: "fetched",
        EventTypes.ANALYZE_DONE: "analyzed",
        EventTypes.INSTALL_DONE: "installed",
        EventTypes.BUILD_DONE: "built",
        EventTypes.SUPERVISE_DONE: "supervised",
        EventTypes.PROXY_DONE: "routed",
        EventTypes.DONE: "deployed",
        EventTypes.UPDATE_START: "updating",
        EventTypes.UPDATE_DONE: "deployed",
        EventTypes.ENV_CHANGED: "deployed",
        EventTypes.ERROR: "failed",
        EventTypes.REMOVE_START: "removing",
        EventTypes.REMOVE_DONE: "removed",
    }

    return status_map.get(last_event.get("type", ""), "unknown")


class EventTypes:
    DEPLOY_START = "DEPLOY_START"
    FETCH_DONE = "FETCH_DONE"
    ANALYZE_DONE = "ANALYZE_DONE"
    INSTALL_DONE = "INSTALL_DONE"
    BUILD_DONE = "BUILD_DONE"
    SUPERVISE_DONE = "SUPERVISE_DONE"
    PROXY_DONE = "PROXY_DONE"
    DONE = "DONE"
    ERROR = "ERROR"
    UPDATE_START = "UPDATE_START"
    UPDATE_DONE = "UPDATE_DONE"
    ENV_CHANGED = "ENV_CHANGED"
    REMOVE_START = "REMOVE_START"
    REMOVE_DONE = "REMOVE_DONE"
