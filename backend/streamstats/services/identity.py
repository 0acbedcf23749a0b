"""Viewer identity resolution for de-duplication."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ViewerKey:
    kind: str  # "authenticated" | "anonymous" | "unidentified"
    value: str | None = None

    @property
    def is_identified(self) -> bool:
        return self.kind != "unidentified"

    @property
    def storage_key(self) -> str | None:
        if self.kind == "authenticated":
            return f"user:{self.value}"
        if self.kind == "anonymous":
            return f"session:{self.value}"
        return None


UNIDENTIFIED = ViewerKey("unidentified")


def _clean(value: Any) -> str:
    return str(value or "").strip()


def resolve_viewer_key(viewer_user_id: Any, session_id: Any) -> ViewerKey:
    """Authenticated user id wins, then session id; otherwise dedup is skipped."""
    user_id = _clean(viewer_user_id)
    if user_id:
        return ViewerKey("authenticated", user_id)
    session = _clean(session_id)
    if session:
        return ViewerKey("anonymous", session)
    return UNIDENTIFIED
