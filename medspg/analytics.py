"""
Dashboard and analytics aggregation over a user's TestResults rows.
All recomputed on each read; rows arrive newest first.
"""
import logging
from datetime import datetime
from typing import Dict, List

from medspg.engine import round_half_up

logger = logging.getLogger(__name__)


def list_subjects(db) -> List[str]:
    """Distinct, non-empty subjects present in the question bank."""
    return sorted({s for s in db.get_subject_column() if s})


def filter_subjects(subjects: List[str], query: str) -> List[str]:
    q = query.strip().lower()
    if not q:
        return list(subjects)
    return [s for s in subjects if q in s.lower()]


def subject_averages(results: List[Dict]) -> List[Dict]:
    """
    Running mean of score_percent per subject, in first-seen order.

    Returns:
        List of {subject, average_score, total_tests}
    """
    averages: Dict[str, Dict] = {}
    for result in results:
        subject = result.get("subject") or ""
        score = result.get("score_percent") or 0
        entry = averages.get(subject)
        if entry is None:
            averages[subject] = {"subject": subject, "average_score": float(score), "total_tests": 1}
        else:
            n = entry["total_tests"]
            entry["average_score"] = (entry["average_score"] * n + score) / (n + 1)
            entry["total_tests"] = n + 1
    return list(averages.values())


def _format_date(value) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return str(value)


def performance_trend(results: List[Dict]) -> List[Dict]:
    """Oldest-first points for the score trend chart."""
    return [
        {
            "test": f"Test {i}",
            "score": r.get("score_percent") or 0,
            "date": _format_date(r.get("created_at")),
            "subject": r.get("subject") or "",
        }
        for i, r in enumerate(reversed(results), start=1)
    ]


def average_time_per_question(results: List[Dict]) -> int:
    total_time = 0
    total_questions = 0
    for r in results:
        times = r.get("time_per_question") or []
        total_time += sum(times)
        total_questions += len(times)
    if total_questions == 0:
        return 0
    return round_half_up(total_time / total_questions)


def dashboard_summary(results: List[Dict], top_n: int = 5, recent_n: int = 2) -> Dict:
    """Progress numbers for the dashboard cards."""
    completed = len(results)
    if not completed:
        return {"tests_completed": 0, "average_accuracy": 0, "subject_performance": [], "recent_activity": []}

    avg = round_half_up(sum(r.get("score_percent") or 0 for r in results) / completed)

    by_subject: Dict[str, List[int]] = {}
    for r in results:
        by_subject.setdefault(r.get("subject") or "General", []).append(r.get("score_percent") or 0)
    performance = sorted(
        ({"name": name, "value": round_half_up(sum(v) / len(v))} for name, v in by_subject.items()),
        key=lambda p: p["value"],
        reverse=True,
    )[:top_n]

    recent = [
        {"subject": r.get("subject") or "General", "score": f"{round_half_up(r.get('score_percent') or 0)}%"}
        for r in results[:recent_n]
    ]
    return {
        "tests_completed": completed,
        "average_accuracy": max(0, min(100, avg)),
        "subject_performance": performance,
        "recent_activity": recent,
    }


def load_results(db, user_id: str) -> List[Dict]:
    """User's results, newest first; an empty list when the load fails."""
    try:
        return db.get_test_results(user_id)
    except Exception as e:
        logger.error(f"Error fetching test results: {e}")
        return []
