from __future__ import annotations

from actions import assignments, auth_actions, candidates, interviews, jobs, notes, ratings, stages
from utils import ApiError


ACTIONS = {
    # Auth
    "LOGIN": auth_actions.login,
    "LOGOUT": auth_actions.logout,
    "SESSION_VALIDATE": auth_actions.session_validate,
    "GET_ME": auth_actions.get_me,
    "USERS_LIST": auth_actions.users_list,
    "USER_CREATE": auth_actions.user_create,
    # Candidates
    "CANDIDATE_CREATE": candidates.candidate_create,
    "CANDIDATE_UPDATE": candidates.candidate_update,
    "CANDIDATE_GET": candidates.candidate_get,
    "CANDIDATES_LIST": candidates.candidates_list,
    "CANDIDATE_RESUME_UPLOAD": candidates.candidate_resume_upload,
    "CANDIDATE_ACTIVITY_LIST": candidates.candidate_activity_list,
    # Stage transitions
    "CANDIDATE_STAGE_SET": stages.candidate_stage_set,
    "CANDIDATE_STAGE_REOPEN": stages.candidate_stage_reopen,
    "CANDIDATE_STAGE_HISTORY": stages.candidate_stage_history,
    "PIPELINE_COUNTS": stages.pipeline_counts,
    # Notes
    "CANDIDATE_NOTE_ADD": notes.candidate_note_add,
    "CANDIDATE_NOTE_UPDATE": notes.candidate_note_update,
    "CANDIDATE_NOTE_DELETE": notes.candidate_note_delete,
    "CANDIDATE_NOTE_GET": notes.candidate_note_get,
    "CANDIDATE_NOTES_LIST": notes.candidate_notes_list,
    "CANDIDATE_NOTES_SEARCH": notes.candidate_notes_search,
    # Ratings
    "CANDIDATE_RATING_ADD": ratings.candidate_rating_add,
    "CANDIDATE_RATING_UPDATE": ratings.candidate_rating_update,
    "CANDIDATE_RATING_DELETE": ratings.candidate_rating_delete,
    "CANDIDATE_RATING_GET": ratings.candidate_rating_get,
    "CANDIDATE_RATINGS_LIST": ratings.candidate_ratings_list,
    "CANDIDATE_RATINGS_AGGREGATE": ratings.candidate_ratings_aggregate,
    # Assignments
    "ASSIGNMENT_CREATE": assignments.assignment_create,
    "ASSIGNMENT_UPDATE": assignments.assignment_update,
    "ASSIGNMENT_DELETE": assignments.assignment_delete,
    "ASSIGNMENT_SEND": assignments.assignment_send,
    "ASSIGNMENT_STATUS_SET": assignments.assignment_status_set,
    "ASSIGNMENT_UPLOAD_FILES": assignments.assignment_upload_files,
    "ASSIGNMENT_FILE_REMOVE": assignments.assignment_file_remove,
    "ASSIGNMENT_GET": assignments.assignment_get,
    "ASSIGNMENT_LIST": assignments.assignment_list,
    "CANDIDATE_ASSIGNMENTS": assignments.candidate_assignments,
    # Interviews
    "INTERVIEW_SCHEDULE": interviews.interview_schedule,
    "INTERVIEW_UPDATE": interviews.interview_update,
    "INTERVIEW_STATUS_SET": interviews.interview_status_set,
    "INTERVIEW_DELETE": interviews.interview_delete,
    "INTERVIEW_GET": interviews.interview_get,
    "INTERVIEWS_LIST": interviews.interviews_list,
    "INTERVIEWS_FOR_DAY": interviews.interviews_for_day,
    "INTERVIEWS_TODAY": interviews.interviews_today,
    "INTERVIEW_CONFLICTS": interviews.interview_conflicts,
    "INTERVIEWS_UPCOMING": interviews.interviews_upcoming,
    "INTERVIEW_FEEDBACK_SUBMIT": interviews.interview_feedback_submit,
    # Jobs
    "JOB_CREATE": jobs.job_create,
    "JOB_UPDATE": jobs.job_update,
    "JOB_STATUS_SET": jobs.job_status_set,
    "JOB_GET": jobs.job_get,
    "JOBS_LIST": jobs.jobs_list,
}


def dispatch(action: str, data, auth, db, cfg):
    handler = ACTIONS.get(str(action or "").upper().strip())
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    return handler(data or {}, auth, db, cfg)
