"""Tests for questions.py and the question/exam routes."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest
import requests

from conftest import EXAM_LINK, SAMPLE_MARKDOWN
from questions import (
    QuestionBank,
    QuestionFetchError,
    checksum,
    exam_time_limit_seconds,
    fetch_markdown,
    fetch_questions_and_checksum,
    grade_answers,
    score_exam,
    scrape_questions,
    validate_link,
)


def _response(text, status=200, content_type="text/plain; charset=utf-8"):
    resp = MagicMock(ok=200 <= status < 300, status_code=status, reason="Not Found" if status == 404 else "OK", text=text)
    resp.headers = {"content-type": content_type}
    return resp


# ── Scraping ───────────────────────────────────────────────


class TestScrapeQuestions:
    def test_parses_all_questions(self):
        questions = scrape_questions(SAMPLE_MARKDOWN)
        assert [q.id for q in questions] == ["0", "1", "2"]
        assert questions[0].question == "Which service stores objects?"

    def test_options_and_answers(self):
        q = scrape_questions(SAMPLE_MARKDOWN)[1]
        assert [o["text"] for o in q.options] == ["EC2", "Lambda", "S3"]
        assert q.correct_answers == ["EC2", "Lambda"]

    def test_images(self):
        q = scrape_questions(SAMPLE_MARKDOWN)[1]
        assert q.images == [{"alt": "Compute diagram", "url": "https://example.com/compute.png"}]
        assert scrape_questions(SAMPLE_MARKDOWN)[0].images == []

    def test_crlf_line_endings(self):
        questions = scrape_questions(SAMPLE_MARKDOWN.replace("\n", "\r\n"))
        assert len(questions) == 3
        assert questions[2].correct_answers == ["Identities and access"]

    def test_no_questions(self):
        assert scrape_questions("# Just a title\n\nSome prose.\n") == []

    def test_to_dict(self):
        data = scrape_questions(SAMPLE_MARKDOWN)[0].to_dict()
        assert set(data) == {"id", "question", "images", "options"}
        assert data["options"][0] == {"text": "S3", "isAnswer": True}

    def test_checksum_is_sha256(self):
        assert len(checksum(SAMPLE_MARKDOWN)) == 64
        assert checksum("a") != checksum("b")


class TestValidateLink:
    def test_allowed_github_link(self, app):
        assert validate_link(f"  {EXAM_LINK} ") == EXAM_LINK

    @pytest.mark.parametrize("link", [
        "",
        "http://raw.githubusercontent.com/x/y/main/README.md",
        "https://evil.example.com/README.md",
        "https://169.254.169.254/latest/meta-data/",
        "file:///etc/passwd",
    ])
    def test_rejected_links(self, app, link):
        with pytest.raises(ValueError):
            validate_link(link)


# ── Fetching ───────────────────────────────────────────────


class TestFetchMarkdown:
    def test_sends_headers_and_timeout(self, app, mock_markdown):
        assert fetch_markdown(EXAM_LINK) == SAMPLE_MARKDOWN
        _, kwargs = mock_markdown.call_args
        assert kwargs["headers"]["User-Agent"] == "Practice-Exams-Platform/1.0"
        assert kwargs["timeout"] == app.config["QUESTIONS_FETCH_TIMEOUT"]

    def test_cached_after_first_fetch(self, app, mock_markdown):
        fetch_markdown(EXAM_LINK)
        fetch_markdown(EXAM_LINK)
        assert mock_markdown.call_count == 1

    def test_http_error(self, app, monkeypatch):
        monkeypatch.setattr("questions.requests.get", MagicMock(return_value=_response("missing", status=404)))
        with pytest.raises(QuestionFetchError) as exc_info:
            fetch_markdown(EXAM_LINK)
        assert exc_info.value.status == 404
        assert "404" in str(exc_info.value)

    def test_html_body_rejected(self, app, monkeypatch):
        html = "<!DOCTYPE html><html><body>Sign in</body></html>"
        monkeypatch.setattr("questions.requests.get", MagicMock(return_value=_response(html, content_type="text/html")))
        with pytest.raises(QuestionFetchError, match="HTML instead of markdown"):
            fetch_markdown(EXAM_LINK)

    def test_network_error(self, app, monkeypatch):
        monkeypatch.setattr("questions.requests.get", MagicMock(side_effect=requests.ConnectionError("refused")))
        with pytest.raises(QuestionFetchError, match="Failed to fetch"):
            fetch_markdown(EXAM_LINK)

    def test_unexpected_content_type_still_parsed(self, app, monkeypatch):
        monkeypatch.setattr(
            "questions.requests.get",
            MagicMock(return_value=_response(SAMPLE_MARKDOWN, content_type="application/octet-stream")),
        )
        questions, digest = fetch_questions_and_checksum(EXAM_LINK)
        assert len(questions) == 3
        assert digest == checksum(SAMPLE_MARKDOWN)


class TestQuestionBank:
    def test_count(self, app, mock_markdown):
        assert QuestionBank().get_questions(EXAM_LINK) == {"count": 3}

    def test_get_question(self, app, mock_markdown):
        bank = QuestionBank()
        assert bank.get_question("2", EXAM_LINK).question == "What does IAM manage?"
        assert bank.get_question("99", EXAM_LINK) is None

    def test_random_questions_are_distinct(self, app, mock_markdown):
        picked = QuestionBank(rng=random.Random(7)).get_random_questions(2, EXAM_LINK)
        assert len(picked) == 2
        assert len({q.id for q in picked}) == 2

    def test_random_count_capped(self, app, mock_markdown):
        assert len(QuestionBank().get_random_questions(30, EXAM_LINK)) == 3


# ── Scoring ────────────────────────────────────────────────


class TestScoring:
    def test_pass_at_threshold(self):
        result = score_exam(3, 4)
        assert result.percentage == 75.0
        assert result.passed is True

    def test_fail_below_threshold(self):
        result = score_exam(2, 3)
        assert result.percentage == 66.67
        assert result.passed is False

    def test_zero_max_points(self):
        result = score_exam(0, 0)
        assert result.percentage == 0.0
        assert result.passed is False

    def test_time_limit(self):
        assert exam_time_limit_seconds() == 3600
        assert exam_time_limit_seconds(10) == 1200

    def test_grade_answers_requires_exact_set(self):
        questions = scrape_questions(SAMPLE_MARKDOWN)
        result = grade_answers(questions, {
            "0": ["S3"],
            "1": ["EC2"],  # partially correct scores nothing
            "2": ["Identities and access"],
        })
        assert result.points == 2
        assert result.max_points == 3


# ── Routes ─────────────────────────────────────────────────


class TestQuestionRoutes:
    def test_count(self, auth_client, mock_markdown):
        resp = auth_client.get(f"/api/questions/count?link={EXAM_LINK}")
        assert resp.get_json() == {"count": 3}

    def test_missing_link(self, auth_client):
        resp = auth_client.get("/api/questions/count")
        assert resp.status_code == 400

    def test_disallowed_link(self, auth_client, mock_markdown):
        resp = auth_client.get("/api/questions/count?link=https://example.com/x.md")
        assert resp.status_code == 400
        mock_markdown.assert_not_called()

    def test_upstream_failure_is_502(self, auth_client, monkeypatch):
        monkeypatch.setattr("questions.requests.get", MagicMock(return_value=_response("gone", status=404)))
        resp = auth_client.get(f"/api/questions/count?link={EXAM_LINK}")
        assert resp.status_code == 502

    def test_random(self, auth_client, mock_markdown):
        resp = auth_client.get(f"/api/questions/random?range=2&link={EXAM_LINK}")
        assert len(resp.get_json()["questions"]) == 2

    def test_random_invalid_range(self, auth_client, mock_markdown):
        resp = auth_client.get(f"/api/questions/random?range=0&link={EXAM_LINK}")
        assert resp.status_code == 400

    def test_single_question(self, auth_client, mock_markdown):
        data = auth_client.get(f"/api/questions/1?link={EXAM_LINK}").get_json()
        assert data["question"] == "Which of these are compute services?"

    def test_single_question_not_found(self, auth_client, mock_markdown):
        resp = auth_client.get(f"/api/questions/42?link={EXAM_LINK}")
        assert resp.status_code == 404

    def test_exam(self, auth_client, mock_markdown):
        data = auth_client.get(f"/api/exam?link={EXAM_LINK}").get_json()
        assert len(data["questions"]) == 3
        assert data["time_limit_seconds"] == 360
        assert data["pass_percentage"] == 75


class TestExamRoutes:
    def test_score(self, client):
        data = client.post("/api/exam/score", json={"points": 23, "maxPoints": 30}).get_json()
        assert data == {"points": 23, "max_points": 30, "percentage": 76.67, "passed": True}

    @pytest.mark.parametrize("body", [
        {"points": "x", "maxPoints": 30},
        {"points": -1, "maxPoints": 30},
        {"points": 31, "maxPoints": 30},
    ])
    def test_score_invalid(self, client, body):
        assert client.post("/api/exam/score", json=body).status_code == 400

    def test_grade(self, auth_client, mock_markdown):
        resp = auth_client.post("/api/exam/grade", json={
            "link": EXAM_LINK,
            "questionIds": ["0", "1", "2"],
            "answers": {"0": ["S3"], "1": ["Lambda", "EC2"], "2": ["Billing"]},
        })
        data = resp.get_json()
        assert data["points"] == 2
        assert data["max_points"] == 3
        assert data["passed"] is False

    @pytest.mark.parametrize("answer", [5, "S3", None, ["S3", 7], {"text": "S3"}])
    def test_grade_rejects_answers_that_are_not_option_lists(self, auth_client, mock_markdown, answer):
        resp = auth_client.post("/api/exam/grade", json={
            "link": EXAM_LINK,
            "questionIds": ["0"],
            "answers": {"0": answer},
        })
        assert resp.status_code == 400
        assert "list of option texts" in resp.get_json()["error"]
        mock_markdown.assert_not_called()

    def test_grade_requires_answers(self, auth_client):
        resp = auth_client.post("/api/exam/grade", json={"link": EXAM_LINK})
        assert resp.status_code == 400
