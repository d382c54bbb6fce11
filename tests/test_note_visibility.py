from __future__ import annotations

from services.note_visibility import can_modify_note, can_view_note, filter_visible_notes


NOTES = [
    {"noteId": "N1", "userId": "U-AUTHOR", "isPrivate": False},
    {"noteId": "N2", "userId": "U-AUTHOR", "isPrivate": True},
    {"noteId": "N3", "userId": "U-OTHER", "isPrivate": True},
]


def _ids(notes):
    return [n["noteId"] for n in notes]


def test_public_notes_are_visible_to_everyone():
    assert can_view_note(NOTES[0], "U-ANY", "INTERVIEWER") is True


def test_private_notes_visible_to_author_only_among_staff():
    assert _ids(filter_visible_notes(NOTES, "U-AUTHOR", "RECRUITER")) == ["N1", "N2"]
    assert _ids(filter_visible_notes(NOTES, "U-THIRD", "INTERVIEWER")) == ["N1"]


def test_admin_and_hr_manager_see_all_notes():
    assert _ids(filter_visible_notes(NOTES, "U-ADMIN", "ADMIN")) == ["N1", "N2", "N3"]
    assert _ids(filter_visible_notes(NOTES, "U-HR", "HR Manager")) == ["N1", "N2", "N3"]


def test_only_author_or_privileged_role_modifies():
    assert can_modify_note(NOTES[0], "U-AUTHOR", "INTERVIEWER") is True
    assert can_modify_note(NOTES[0], "U-OTHER", "RECRUITER") is False
    assert can_modify_note(NOTES[0], "U-HR", "HR_MANAGER") is True
