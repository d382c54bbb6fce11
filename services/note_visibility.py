from __future__ import annotations

from typing import Any, Iterable

from utils import is_privileged


NOTE_TYPES = ["General", "Pre-Interview", "Interview", "Post-Interview"]
MAX_NOTE_LENGTH = 5000


def _field(note: Any, name: str) -> Any:
    if isinstance(note, dict):
        return note.get(name)
    return getattr(note, name, None)


def can_view_note(note: Any, viewer_id: str, viewer_role: str) -> bool:
    if not bool(_field(note, "isPrivate")):
        return True
    if str(_field(note, "userId") or "") == str(viewer_id or ""):
        return True
    return is_privileged(viewer_role)


def filter_visible_notes(notes: Iterable[Any], viewer_id: str, viewer_role: str) -> list[Any]:
    """Notes the viewer may read, in their original order."""
    return [n for n in (notes or []) if can_view_note(n, viewer_id, viewer_role)]


def can_modify_note(note: Any, actor_id: str, actor_role: str) -> bool:
    if str(_field(note, "userId") or "") == str(actor_id or ""):
        return True
    return is_privileged(actor_role)
