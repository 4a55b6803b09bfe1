"""
Task history snapshot helpers.

The engine broadcasts its task history inside `state` and
`taskHistoryUpdated` extension messages. Resuming with --continue picks the
most recent task whose workspace matches ours.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class HistoryItem:
    id: str
    task: str
    ts: int
    workspace: Optional[str] = None
    mode: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"id": self.id, "task": self.task, "ts": self.ts}
        for key in ("workspace", "mode", "status"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: Any) -> Optional["HistoryItem"]:
        if not isinstance(data, dict):
            return None
        item_id, task, ts = data.get("id"), data.get("task"), data.get("ts")
        if not isinstance(item_id, str) or not isinstance(task, str) or not isinstance(ts, (int, float)):
            return None
        workspace = data.get("workspace")
        mode = data.get("mode")
        status = data.get("status")
        return cls(
            id=item_id,
            task=task,
            ts=int(ts),
            workspace=workspace if isinstance(workspace, str) else None,
            mode=mode if isinstance(mode, str) else None,
            status=status if status in ("active", "completed", "delegated") else None,
        )


def extract_task_history(payload: Any) -> Optional[List[HistoryItem]]:
    """Return the history carried by an extension message, or None if it has none."""
    if not isinstance(payload, dict):
        return None

    raw = None
    if payload.get("type") == "state":
        state = payload.get("state")
        if isinstance(state, dict) and isinstance(state.get("taskHistory"), list):
            raw = state["taskHistory"]
    elif payload.get("type") == "taskHistoryUpdated" and isinstance(payload.get("taskHistory"), list):
        raw = payload["taskHistory"]

    if raw is None:
        return None
    return [item for item in (HistoryItem.from_dict(entry) for entry in raw) if item is not None]


def paths_equal(a: str, b: str) -> bool:
    na = os.path.normcase(os.path.normpath(os.path.abspath(a)))
    nb = os.path.normcase(os.path.normpath(os.path.abspath(b)))
    return na == nb


def most_recent_task_id(items: List[HistoryItem], workspace: str) -> Optional[str]:
    in_workspace = [i for i in items if i.workspace and paths_equal(i.workspace, workspace)]
    if not in_workspace:
        return None
    return max(in_workspace, key=lambda i: i.ts).id


def resolve_resume_task_id(
    items: List[HistoryItem],
    workspace: str,
    requested_id: Optional[str] = None,
) -> str:
    """
    Pick the task to resume.

    An explicit id must exist in the snapshot when the snapshot is non-empty;
    otherwise the most recent task of the workspace is used.

    Raises:
        ValueError: unknown session id, or nothing to continue.
    """
    if requested_id:
        if items and not any(i.id == requested_id for i in items):
            raise ValueError(f"Session not found in task history: {requested_id}")
        return requested_id

    task_id = most_recent_task_id(items, workspace)
    if not task_id:
        raise ValueError("No previous tasks found to continue in this workspace.")
    return task_id


def history_snapshot_payload(items: List[HistoryItem], extra: Optional[Dict[str, Any]] = None) -> dict:
    state: Dict[str, Any] = {"taskHistory": [i.to_dict() for i in items]}
    if extra:
        state.update(extra)
    return {"type": "state", "state": state}
