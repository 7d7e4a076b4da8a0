"""Practice question bank sourced from GitHub-hosted markdown.

Each exam lives in a markdown file where a question looks like::

    ### Which service stores objects?

    ![diagram](https://example.com/d.png)

    - [x] S3
    - [ ] EC2

Raw markdown is cached per link so repeated requests don't refetch.
"""

from __future__ import annotations

import hashlib
import logging
import random
import re
from urllib.parse import urlparse
from dataclasses import asdict, dataclass, field
from typing import Any

import requests

from cache_backend import get_cache
from helpers import config_value

logger = logging.getLogger(__name__)

USER_AGENT = "Practice-Exams-Platform/1.0"
ACCEPT = "text/plain, text/markdown, */*"
_EXPECTED_CONTENT_TYPES = ("text/plain", "text/markdown", "text/html")

EXAM_QUESTION_COUNT = 30
EXAM_SECONDS_PER_QUESTION = 120
PASS_PERCENTAGE = 75

_QUESTION_RE = re.compile(
    r"### (.*?)\s*\r?\n\r?\n"
    r"((?:!\[.*?\]\(.*?\)\s*\r?\n\r?\n)*?)"
    r"((?:- \[(?:x| )\] .*?\r?\n)+)",
    re.S,
)
_OPTION_RE = re.compile(r"- \[(x| )\] (.*?)(?=\r?\n- \[|$)")
_IMAGE_RE = re.compile(r"!\[(.*?)\]\((.*?)\)")


class QuestionFetchError(Exception):
    """Raised when a question bank can't be downloaded or isn't markdown."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass
class Question:
    id: str
    question: str
    images: list[dict[str, str]] = field(default_factory=list)
    options: list[dict[str, Any]] = field(default_factory=list)

    @property
    def correct_answers(self) -> list[str]:
        return [o["text"] for o in self.options if o["isAnswer"]]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def scrape_questions(markdown: str) -> list[Question]:
    questions: list[Question] = []
    for idx, match in enumerate(_QUESTION_RE.finditer(markdown)):
        images = [
            {"alt": alt.strip(), "url": url.strip()}
            for alt, url in _IMAGE_RE.findall(match.group(2).strip())
        ]
        options = [
            {"text": text.strip(), "isAnswer": mark.strip() == "x"}
            for mark, text in _OPTION_RE.findall(match.group(3).strip())
        ]
        questions.append(Question(
            id=str(idx),
            question=match.group(1).strip(),
            images=images,
            options=options,
        ))
    return questions


def checksum(markdown: str) -> str:
    return hashlib.sha256(markdown.encode("utf-8")).hexdigest()


def validate_link(link: str) -> str:
    """Only https links on an allowed host may be fetched. Raises ValueError."""
    link = (link or "").strip()
    if not link:
        raise ValueError("link is required")
    parsed = urlparse(link)
    allowed = config_value("QUESTIONS_ALLOWED_HOSTS", ["raw.githubusercontent.com", "github.com"])
    if parsed.scheme != "https" or parsed.hostname not in allowed:
        raise ValueError(f"Question source not allowed: {link}")
    return link


def _cache_key(link: str) -> str:
    return "questions:" + hashlib.sha256(link.encode()).hexdigest()


def fetch_markdown(link: str) -> str:
    """Download (or read from cache) the raw markdown behind ``link``."""
    cache = get_cache()
    key = _cache_key(link)
    cached = cache.get(key)
    if isinstance(cached, str):
        return cached

    try:
        resp = requests.get(
            link,
            headers={"User-Agent": USER_AGENT, "Accept": ACCEPT},
            timeout=config_value("QUESTIONS_FETCH_TIMEOUT", 15),
        )
    except requests.RequestException as exc:
        logger.error("Question fetch failed for %s: %s", link, exc)
        raise QuestionFetchError(f"Failed to fetch {link}: {exc}") from exc

    if not resp.ok:
        raise QuestionFetchError(
            f"Failed to fetch {link}: {resp.status_code} {resp.reason}. "
            f"Response: {resp.text[:200]}",
            status=resp.status_code,
        )

    markdown = resp.text
    stripped = markdown.strip()
    if stripped.startswith("<!DOCTYPE") or stripped.startswith("<html"):
        raise QuestionFetchError(
            f"Received HTML instead of markdown from {link}. "
            f"Response starts with: {markdown[:100]}"
        )

    content_type = resp.headers.get("content-type", "")
    if content_type and not any(t in content_type for t in _EXPECTED_CONTENT_TYPES):
        logger.warning("Unexpected content-type: %s for %s", content_type, link)

    cache.set(key, markdown, ttl=int(config_value("QUESTIONS_CACHE_TTL", 600)))
    return markdown


def fetch_questions(link: str) -> list[Question]:
    return scrape_questions(fetch_markdown(link))


def fetch_questions_and_checksum(link: str) -> tuple[list[Question], str]:
    markdown = fetch_markdown(link)
    return scrape_questions(markdown), checksum(markdown)


class QuestionBank:
    """Read access to the questions behind an exam link."""

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def all_questions(self, link: str) -> list[Question]:
        return fetch_questions(link)

    def get_question(self, question_id: str, link: str) -> Question | None:
        for q in self.all_questions(link):
            if q.id == question_id:
                return q
        return None

    def get_questions(self, link: str) -> dict[str, int]:
        return {"count": len(self.all_questions(link))}

    def get_random_questions(self, count: int, link: str) -> list[Question]:
        questions = self.all_questions(link)
        count = max(0, min(count, len(questions)))
        return self._rng.sample(questions, count)


# ---------------------------------------------------------------------------
# Exam scoring
# ---------------------------------------------------------------------------

@dataclass
class ExamResult:
    points: int
    max_points: int
    percentage: float
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def exam_time_limit_seconds(question_count: int = EXAM_QUESTION_COUNT) -> int:
    return question_count * EXAM_SECONDS_PER_QUESTION


def score_exam(points: int, max_points: int) -> ExamResult:
    denominator = max_points or 1
    percentage = round(points / denominator * 100, 2)
    return ExamResult(
        points=points,
        max_points=max_points,
        percentage=percentage,
        passed=percentage >= PASS_PERCENTAGE,
    )


def grade_answers(questions: list[Question], answers: dict[str, list[str]]) -> ExamResult:
    """A question scores a point when the selected option texts match the answer key exactly."""
    points = 0
    for q in questions:
        selected = set(answers.get(q.id) or [])
        if selected and selected == set(q.correct_answers):
            points += 1
    return score_exam(points, len(questions))
