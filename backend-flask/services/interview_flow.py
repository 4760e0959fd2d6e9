"""
Interview progression: status transitions and the progress document kept in
``Interview.questionsJson``::

    {"questions": [...], "responses": [...], "currentIndex": 0}

``responses[i]`` answers ``questions[i]``. Follow-up questions are inserted
right after the question that produced them, so response slots after the
insertion point shift with their questions.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from utils import ApiError, clamp

SCHEDULED = "SCHEDULED"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

TRANSITIONS = {
    "start": ({SCHEDULED}, IN_PROGRESS),
    "complete": ({IN_PROGRESS}, COMPLETED),
    "cancel": ({SCHEDULED, IN_PROGRESS}, CANCELLED),
}

ACTIVE_STATUSES = {SCHEDULED, IN_PROGRESS}

RECOMMENDATION_MAP = {
    "strong hire": "STRONG_HIRE",
    "strong_hire": "STRONG_HIRE",
    "hire": "HIRE",
    "no hire": "NO_HIRE",
    "no_hire": "NO_HIRE",
    "strong no hire": "STRONG_NO_HIRE",
    "strong_no_hire": "STRONG_NO_HIRE",
}


def next_status(current: str, action: str) -> str:
    act = str(action or "").strip().lower()
    if act not in TRANSITIONS:
        raise ApiError("BAD_REQUEST", "Invalid action")
    allowed_from, target = TRANSITIONS[act]
    if current not in allowed_from:
        raise ApiError("BAD_REQUEST", f"Cannot {act} an interview that is {current}")
    return target


def new_progress(questions: list[dict[str, Any]]) -> dict[str, Any]:
    return {"questions": list(questions), "responses": [], "currentIndex": 0}


def load_progress(raw: Any) -> dict[str, Any]:
    try:
        obj = json.loads(str(raw or "").strip() or "{}")
    except json.JSONDecodeError:
        obj = {}
    if not isinstance(obj, dict):
        obj = {}
    questions = obj.get("questions") if isinstance(obj.get("questions"), list) else []
    responses = obj.get("responses") if isinstance(obj.get("responses"), list) else []
    try:
        current = int(obj.get("currentIndex") or 0)
    except (TypeError, ValueError):
        current = 0
    return {"questions": questions, "responses": responses, "currentIndex": current}


def dump_progress(progress: dict[str, Any]) -> str:
    return json.dumps(progress)


def question_at(progress: dict[str, Any], index: Any) -> dict[str, Any]:
    try:
        i = int(index)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "questionIndex must be an integer")
    questions = progress["questions"]
    if i < 0 or i >= len(questions):
        raise ApiError("NOT_FOUND", "Question not found")
    return questions[i]


def _follow_up_id(questions: list[dict[str, Any]], index: int) -> str:
    taken = {q.get("id") for q in questions}
    fid = f"followup_{index}"
    n = 2
    while fid in taken:
        fid = f"followup_{index}_{n}"
        n += 1
    return fid


def record_response(
    progress: dict[str, Any],
    index: int,
    answer: str,
    evaluation: dict[str, Any],
    *,
    timestamp: str,
) -> Optional[dict[str, Any]]:
    """Store an evaluated answer and splice in its follow-up, if any.

    Returns the inserted follow-up question or None.
    """
    question = question_at(progress, index)
    questions = progress["questions"]
    responses = progress["responses"]

    while len(responses) <= index:
        responses.append(None)

    # Re-answering a question replaces the earlier answer but must not add a
    # second follow-up for it, wherever earlier insertions moved that follow-up.
    already_followed = any(q.get("isFollowUp") and q.get("parentId") == question.get("id") for q in questions)

    responses[index] = {
        "questionId": question.get("id"),
        "response": answer,
        "timestamp": timestamp,
        "score": evaluation.get("score"),
        "feedback": evaluation.get("feedback"),
        "detailedScores": evaluation.get("detailedScores") or {},
    }
    progress["currentIndex"] = index + 1

    follow_up_text = str(evaluation.get("followUp") or "").strip()
    if not follow_up_text or question.get("isFollowUp") or already_followed:
        return None

    follow_up = {
        "id": _follow_up_id(questions, index),
        "question": follow_up_text,
        "type": "technical",
        "difficulty": question.get("difficulty") or "medium",
        "category": question.get("category") or "general",
        "keyPoints": [],
        "followUpQuestions": [],
        "isFollowUp": True,
        "parentId": question.get("id"),
    }
    questions.insert(index + 1, follow_up)
    if len(responses) > index + 1:
        responses.insert(index + 1, None)
    return follow_up


def answered_count(progress: dict[str, Any]) -> int:
    return sum(1 for r in progress["responses"] if r)


def assessment_scores(overall: float) -> dict[str, float]:
    o = float(overall or 0)
    return {
        "technicalScore": round(clamp(o, 0, 10), 2),
        "communicationScore": round(clamp(o * 0.9, 0, 10), 2),
        "problemSolvingScore": round(clamp(o * 1.1, 0, 10), 2),
        "cultureScore": round(clamp(o * 0.8, 0, 10), 2),
        "overallScore": round(clamp(o, 0, 10), 2),
    }


def map_recommendation(value: Any) -> str:
    return RECOMMENDATION_MAP.get(str(value or "").strip().lower(), "HIRE")
