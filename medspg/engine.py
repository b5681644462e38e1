"""
Test Session Engine: subject-scoped question selection, global countdown,
answer and per-question time capture, and scoring at submission.
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from engine import (
    FAIR_SCORE_PERCENT,
    GOOD_SCORE_PERCENT,
    LOW_TIME_SECONDS,
    QUESTIONS_PER_TEST,
    SECONDS_PER_QUESTION,
)
from medspg.auth import UserSession
from medspg.errors import MissingResultPayloadError, NoQuestionsError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Question:
    """Read-only multiple-choice question from the question bank."""

    id: int
    question_text: str
    options: tuple[str, ...]
    correct_answer: str
    subject: str
    explanation: str = ""

    @classmethod
    def from_row(cls, row: Dict) -> "Question":
        # Malformed options degrade to an empty list instead of breaking the page.
        options = row.get("options")
        if not isinstance(options, list):
            logger.warning(f"Question {row.get('id')} has malformed options: {options!r}")
            options = []
        return cls(
            id=row["id"],
            question_text=row.get("question_text") or "",
            options=tuple(str(o) for o in options),
            correct_answer=row.get("correct_answer") or "",
            subject=row.get("subject") or "",
            explanation=row.get("explanation") or "",
        )


@dataclass(slots=True, frozen=True)
class QuestionResult:
    question: Question
    user_answer: str
    is_correct: bool
    is_skipped: bool
    time_spent: int


@dataclass(slots=True, frozen=True)
class ReviewPayload:
    """Hand-off from a submitted attempt to the results page."""

    results: tuple[QuestionResult, ...]
    score: int
    total: int
    time_per_question: tuple[int, ...]
    skipped_count: int
    wrong_count: int

    @property
    def score_percent(self) -> int:
        return percent(self.score, self.total)

    @property
    def subject(self) -> str:
        return self.results[0].question.subject if self.results else ""

    def to_test_result(self, user_id: str) -> Dict:
        """Row for the TestResults table."""
        return {
            "user_id": user_id,
            "subject": self.subject,
            "score_percent": self.score_percent,
            "correct_count": self.score,
            "wrong_count": self.wrong_count,
            "skipped_count": self.skipped_count,
            "total_questions": self.total,
            "time_per_question": list(self.time_per_question),
        }


def round_half_up(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent(part: int, total: int) -> int:
    """Whole-number percentage, halves rounded up."""
    if total <= 0:
        return 0
    return round_half_up(Decimal(part) * 100 / Decimal(total))


def allotted_seconds(question_count: int) -> int:
    return round_half_up(question_count * SECONDS_PER_QUESTION)


def score_attempt(
    questions: List[Question],
    answers: Dict[int, str],
    time_per_question: List[int],
) -> ReviewPayload:
    """
    Score an attempt. Pure: the same inputs always give an equal payload.

    A missing or empty answer counts as skipped; anything else is correct only
    on an exact match with the question's correct answer.
    """
    results = []
    for index, question in enumerate(questions):
        user_answer = answers.get(question.id) or ""
        is_skipped = user_answer == ""
        is_correct = not is_skipped and user_answer == question.correct_answer
        time_spent = time_per_question[index] if index < len(time_per_question) else 0
        results.append(QuestionResult(question, user_answer, is_correct, is_skipped, time_spent))

    total = len(results)
    score = sum(1 for r in results if r.is_correct)
    skipped_count = sum(1 for r in results if r.is_skipped)
    return ReviewPayload(
        results=tuple(results),
        score=score,
        total=total,
        time_per_question=tuple(time_per_question),
        skipped_count=skipped_count,
        wrong_count=total - score - skipped_count,
    )


class TestAttempt:
    """One timed run through a shuffled question sequence."""

    __test__ = False  # not a pytest class

    def __init__(
        self,
        questions: List[Question],
        subject: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize an attempt.

        Args:
            questions: Already selected and shuffled questions
            subject: Subject the attempt was launched for
            clock: Monotonic seconds source (injected for tests)
        """
        self.attempt_id = uuid4()
        self.subject = subject
        self.questions = list(questions)
        self.current_index = 0
        self.answers: Dict[int, str] = {}
        self.time_per_question: List[int] = [0] * len(self.questions)
        self.time_remaining_seconds = allotted_seconds(len(self.questions))

        self._clock = clock
        self.started_at = clock()
        self._last_navigation = self.started_at
        self._clock_anchor = self.started_at
        self._timer_running = True
        self._payload: Optional[ReviewPayload] = None

    # ----- Timer -----

    @property
    def timer_running(self) -> bool:
        return self._timer_running

    @property
    def is_submitted(self) -> bool:
        return self._payload is not None

    def stop_timer(self) -> None:
        self._timer_running = False

    def tick(self, seconds: int = 1) -> Optional[ReviewPayload]:
        """
        Advance the countdown. Returns the payload when this tick ran the clock
        out and auto-submitted; None otherwise (including after the timer stopped).
        """
        if not self._timer_running:
            return None
        self.time_remaining_seconds = max(0, self.time_remaining_seconds - seconds)
        if self.time_remaining_seconds == 0:
            logger.info(f"Attempt {self.attempt_id}: time is up, auto-submitting")
            return self.submit()
        return None

    def sync_clock(self) -> Optional[ReviewPayload]:
        """Apply one tick per whole second of wall time since the last sync."""
        if not self._timer_running:
            return None
        elapsed = int(self._clock() - self._clock_anchor)
        if elapsed <= 0:
            return None
        self._clock_anchor += elapsed
        return self.tick(elapsed)

    def format_clock(self) -> str:
        minutes, seconds = divmod(self.time_remaining_seconds, 60)
        return f"{minutes:02d}:{seconds:02d}"

    @property
    def is_time_low(self) -> bool:
        return self.time_remaining_seconds <= LOW_TIME_SECONDS

    # ----- Navigation -----

    @property
    def current_question(self) -> Question:
        return self.questions[self.current_index]

    @property
    def is_first(self) -> bool:
        return self.current_index == 0

    @property
    def is_last(self) -> bool:
        return self.current_index == len(self.questions) - 1

    @property
    def progress(self) -> float:
        return (self.current_index + 1) / len(self.questions) if self.questions else 0.0

    def _flush_time(self) -> None:
        # Time belongs to the question being left, not the one being entered.
        now = self._clock()
        elapsed = max(0, round_half_up(now - self._last_navigation))
        self.time_per_question[self.current_index] += elapsed
        self._last_navigation = now

    def jump_to(self, index: int) -> None:
        if self.is_submitted or index == self.current_index:
            return
        if not 0 <= index < len(self.questions):
            return
        self._flush_time()
        self.current_index = index

    def next(self) -> None:
        self.jump_to(self.current_index + 1)

    def previous(self) -> None:
        self.jump_to(self.current_index - 1)

    # ----- Answers -----

    def select_answer(self, option: str) -> None:
        question = self.current_question
        if option not in question.options:
            raise ValueError(f"{option!r} is not an option of question {question.id}")
        self.answers[question.id] = option

    def answer_for(self, index: int) -> Optional[str]:
        return self.answers.get(self.questions[index].id)

    @property
    def answered_count(self) -> int:
        return sum(1 for q in self.questions if self.answers.get(q.id))

    def is_answered(self, index: int) -> bool:
        return bool(self.answer_for(index))

    def is_visited(self, index: int) -> bool:
        return self.time_per_question[index] > 0

    def question_status(self, index: int) -> str:
        """Navigator colour key for a question button."""
        if index == self.current_index:
            return "current"
        if self.is_answered(index):
            return "answered"
        if self.is_visited(index):
            return "visited"
        return "not_visited"

    # ----- Submission -----

    def submit(self) -> ReviewPayload:
        """Stop the clock and score. Safe to call twice: returns the same payload."""
        if self._payload is not None:
            return self._payload
        self.stop_timer()
        self._flush_time()
        self._payload = score_attempt(self.questions, self.answers, self.time_per_question)
        logger.info(
            f"Attempt {self.attempt_id} submitted: {self._payload.score}/{self._payload.total} "
            f"({self._payload.score_percent}%), skipped={self._payload.skipped_count}"
        )
        return self._payload


def select_questions(rows: List[Dict], rng: Optional[random.Random] = None) -> List[Question]:
    """Unbiased shuffle, then keep the first QUESTIONS_PER_TEST."""
    rng = rng or random.Random()
    questions = [Question.from_row(row) for row in rows]
    rng.shuffle(questions)
    return questions[:QUESTIONS_PER_TEST]


def start_attempt(
    db,
    subject: str,
    rng: Optional[random.Random] = None,
    clock: Callable[[], float] = time.monotonic,
) -> TestAttempt:
    """
    Launch a test for a subject.

    Raises:
        NoQuestionsError: the bank has nothing for this subject (caller redirects)
        BackendError: the question fetch failed
    """
    rows = db.get_questions_by_subject(subject)
    if not rows:
        logger.warning(f"No questions found for subject {subject!r}")
        raise NoQuestionsError(subject)
    questions = select_questions(rows, rng)
    attempt = TestAttempt(questions, subject=subject, clock=clock)
    logger.info(
        f"Attempt {attempt.attempt_id}: {len(questions)} of {len(rows)} {subject} questions, "
        f"{attempt.time_remaining_seconds}s on the clock"
    )
    return attempt


def submit_attempt(attempt: TestAttempt, db, user: UserSession) -> ReviewPayload:
    """Submit and persist one TestResults row. A failed insert is logged, never retried."""
    payload = attempt.submit()
    try:
        db.insert_test_result(payload.to_test_result(user.id))
        logger.info(f"Saved result for attempt {attempt.attempt_id}")
    except Exception as e:
        logger.error(f"Error saving test results for attempt {attempt.attempt_id}: {e}")
    return payload


# ----- Review helpers -----

def require_review_payload(payload: Optional[ReviewPayload]) -> ReviewPayload:
    if payload is None:
        raise MissingResultPayloadError("No submitted test to review")
    return payload


def score_band(score_percent: int) -> str:
    if score_percent >= GOOD_SCORE_PERCENT:
        return "good"
    if score_percent >= FAIR_SCORE_PERCENT:
        return "fair"
    return "poor"


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    minutes, rest = divmod(seconds, 60)
    return f"{minutes}m {rest}s"


def time_summary(time_per_question) -> tuple[int, int]:
    """(total seconds, rounded average seconds per question)."""
    times = list(time_per_question)
    if not times:
        return 0, 0
    total = sum(times)
    return total, round_half_up(Decimal(total) / len(times))
