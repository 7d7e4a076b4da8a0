"""Question bank and exam routes. Anonymous visitors go through the trial gate."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify, request

from blueprints.trial import trial_required
from extensions import ServiceManager, limiter
from helpers import json_body
from questions import (
    EXAM_QUESTION_COUNT,
    PASS_PERCENTAGE,
    QuestionFetchError,
    exam_time_limit_seconds,
    grade_answers,
    score_exam,
    validate_link,
)

logger = logging.getLogger(__name__)

bp = Blueprint("questions", __name__)


def _link() -> str:
    return validate_link(request.args.get("link", ""))


def _fetch_failed(e: QuestionFetchError) -> tuple[Any, int]:
    logger.warning("Question source error: %s", e)
    return jsonify({"error": str(e)}), 502


@bp.route("/api/questions/count")
@trial_required
def api_questions_count() -> tuple[Any, int] | Any:
    try:
        return jsonify(ServiceManager.get_question_bank().get_questions(_link()))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except QuestionFetchError as e:
        return _fetch_failed(e)


@bp.route("/api/questions/random")
@trial_required
@limiter.limit("60 per minute")
def api_questions_random() -> tuple[Any, int] | Any:
    count = request.args.get("range", default=EXAM_QUESTION_COUNT, type=int)
    if count is None or count < 1:
        return jsonify({"error": "range must be a positive integer"}), 400
    try:
        questions = ServiceManager.get_question_bank().get_random_questions(count, _link())
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except QuestionFetchError as e:
        return _fetch_failed(e)
    return jsonify({"questions": [q.to_dict() for q in questions]})


@bp.route("/api/questions/<question_id>")
@trial_required
def api_question(question_id: str) -> tuple[Any, int] | Any:
    try:
        question = ServiceManager.get_question_bank().get_question(question_id, _link())
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except QuestionFetchError as e:
        return _fetch_failed(e)
    if question is None:
        return jsonify({"error": "Question not found"}), 404
    return jsonify(question.to_dict())


# ---------------------------------------------------------------------------
# Exam mode
# ---------------------------------------------------------------------------

@bp.route("/api/exam")
@trial_required
def api_exam() -> tuple[Any, int] | Any:
    """A fixed-length random exam with a time limit of two minutes per question."""
    try:
        questions = ServiceManager.get_question_bank().get_random_questions(EXAM_QUESTION_COUNT, _link())
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except QuestionFetchError as e:
        return _fetch_failed(e)
    return jsonify({
        "questions": [q.to_dict() for q in questions],
        "time_limit_seconds": exam_time_limit_seconds(len(questions)),
        "pass_percentage": PASS_PERCENTAGE,
    })


@bp.route("/api/exam/score", methods=["POST"])
def api_exam_score() -> tuple[Any, int] | Any:
    data = json_body()
    try:
        points = int(data.get("points", 0))
        max_points = int(data.get("maxPoints", 0))
    except (TypeError, ValueError):
        return jsonify({"error": "points and maxPoints must be integers"}), 400
    if points < 0 or max_points < 0 or (max_points and points > max_points):
        return jsonify({"error": "points must be between 0 and maxPoints"}), 400
    return jsonify(score_exam(points, max_points).to_dict())


@bp.route("/api/exam/grade", methods=["POST"])
@trial_required
def api_exam_grade() -> tuple[Any, int] | Any:
    """Grade submitted answers ({question id: [option texts]}) against the source."""
    data = json_body()
    answers = data.get("answers")
    question_ids = data.get("questionIds")
    if not isinstance(answers, dict) or not isinstance(question_ids, list) or not question_ids:
        return jsonify({"error": "questionIds and answers are required"}), 400
    if not all(isinstance(v, list) and all(isinstance(o, str) for o in v) for v in answers.values()):
        return jsonify({"error": "Each answer must be a list of option texts"}), 400

    try:
        link = validate_link(str(data.get("link", "")))
        wanted = {str(qid) for qid in question_ids}
        questions = [q for q in ServiceManager.get_question_bank().all_questions(link) if q.id in wanted]
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except QuestionFetchError as e:
        return _fetch_failed(e)

    result = grade_answers(questions, {str(k): v for k, v in answers.items()})
    # Ids that no longer exist in the source still count toward the maximum.
    result = score_exam(result.points, len(wanted))
    return jsonify(result.to_dict())