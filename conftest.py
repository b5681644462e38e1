"""Shared fixtures: in-memory stand-ins for DatabaseClient and the auth API, and a manual clock."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

project_root = Path(__file__).resolve().parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from engine import POINTS_PER_POST, POINTS_PER_REPLY, POINTS_PER_UPVOTE
from medspg.auth import UserSession
from medspg.errors import BackendError

EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatabase:
    """Same surface as DatabaseClient, backed by lists. Add a method name to `fail` to make it raise."""

    def __init__(self):
        self.questions = []
        self.test_results = []
        self.posts = []
        self.replies = []
        self.votes = []
        self.points = {}
        self.grants = {}
        self.profiles = {}
        self.fail = set()
        self.calls = []
        self._next_id = 1
        self._tick = 0

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise BackendError(f"{name} failed")

    def _new_id(self):
        value = self._next_id
        self._next_id += 1
        return value

    def _timestamp(self):
        self._tick += 1
        return (EPOCH + timedelta(minutes=self._tick)).isoformat()

    # Questions
    def get_questions_by_subject(self, subject):
        self._call("get_questions_by_subject")
        return [dict(q) for q in self.questions if q["subject"].lower() == subject.lower()]

    def get_subject_column(self):
        return sorted(q.get("subject") for q in self.questions)

    def upsert_questions_batch(self, questions, chunk_size=200):
        self._call("upsert_questions_batch")
        by_id = {q["id"]: q for q in self.questions}
        by_id.update({q["id"]: dict(q) for q in questions})
        self.questions = list(by_id.values())
        return len(questions)

    # Test results
    def insert_test_result(self, row):
        self._call("insert_test_result")
        row = {**row, "id": self._new_id(), "created_at": self._timestamp()}
        self.test_results.append(row)
        return row

    def get_test_results(self, user_id, limit=500):
        self._call("get_test_results")
        rows = [r for r in self.test_results if r["user_id"] == user_id]
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)[:limit]

    # Posts
    def _with_activity(self, post):
        return {
            **post,
            "votes": [{"vote_type": v["vote_type"], "user_id": v["user_id"]}
                      for v in self.votes if v["post_id"] == post["id"]],
            "replies": [{"id": r["id"]} for r in self.replies if r["post_id"] == post["id"]],
        }

    def get_posts_with_activity(self):
        self._call("get_posts_with_activity")
        posts = sorted(self.posts, key=lambda p: p["created_at"], reverse=True)
        return [self._with_activity(p) for p in posts]

    def get_post(self, post_id):
        self._call("get_post")
        post = next((p for p in self.posts if p["id"] == post_id), None)
        return self._with_activity(post) if post else None

    def insert_post(self, row):
        self._call("insert_post")
        post = {**row, "id": self._new_id(), "created_at": self._timestamp()}
        self.posts.append(post)
        return dict(post)

    def delete_post(self, post_id):
        self._call("delete_post")
        self.posts = [p for p in self.posts if p["id"] != post_id]
        self.replies = [r for r in self.replies if r["post_id"] != post_id]
        self.votes = [v for v in self.votes if v["post_id"] != post_id]

    # Replies
    def get_replies(self, post_id, start, end):
        self._call("get_replies")
        rows = sorted((r for r in self.replies if r["post_id"] == post_id), key=lambda r: r["created_at"])
        return [dict(r) for r in rows[start:end + 1]], len(rows)

    def insert_reply(self, row):
        self._call("insert_reply")
        reply = {**row, "id": self._new_id(), "created_at": self._timestamp()}
        self.replies.append(reply)
        return dict(reply)

    # Votes
    def get_vote(self, post_id, user_id):
        self._call("get_vote")
        vote = next((v for v in self.votes if v["post_id"] == post_id and v["user_id"] == user_id), None)
        return {"id": vote["id"], "vote_type": vote["vote_type"]} if vote else None

    def insert_vote(self, post_id, user_id, vote_type):
        self._call("insert_vote")
        if any(v["post_id"] == post_id and v["user_id"] == user_id for v in self.votes):
            raise BackendError("duplicate key value violates unique constraint", table="votes")
        vote = {"id": self._new_id(), "post_id": post_id, "user_id": user_id, "vote_type": vote_type}
        self.votes.append(vote)
        return dict(vote)

    def update_vote(self, vote_id, vote_type):
        self._call("update_vote")
        for v in self.votes:
            if v["id"] == vote_id:
                v["vote_type"] = vote_type
                v["updated_at"] = self._timestamp()

    def delete_vote(self, vote_id):
        self._call("delete_vote")
        self.votes = [v for v in self.votes if v["id"] != vote_id]

    # Points
    def get_points(self, user_id):
        self._call("get_points")
        return self.points.get(user_id)

    def grant_points(self, grant_key):
        """Mirrors the grant_points SQL function, minus the auth.uid() check."""
        self._call("grant_points")
        kind, _, raw_id = grant_key.partition(":")
        row_id = int(raw_id)
        recipient, points = None, 0
        if kind == "post":
            post = next((p for p in self.posts if p["id"] == row_id), None)
            recipient, points = (post or {}).get("author_id"), POINTS_PER_POST
        elif kind == "reply":
            reply = next((r for r in self.replies if r["id"] == row_id), None)
            recipient, points = (reply or {}).get("author_id"), POINTS_PER_REPLY
        elif kind == "vote":
            vote = next((v for v in self.votes if v["id"] == row_id and v["vote_type"] == "up"), None)
            post = next((p for p in self.posts if vote and p["id"] == vote["post_id"]), None)
            recipient, points = (post or {}).get("author_id"), POINTS_PER_UPVOTE
        if recipient is None or grant_key in self.grants:
            return 0
        self.grants[grant_key] = (recipient, points)
        self.points[recipient] = self.points.get(recipient, 0) + points
        return points

    # Profiles
    def get_profile(self, user_id):
        self._call("get_profile")
        profile = self.profiles.get(user_id)
        return dict(profile) if profile else None

    def upsert_profile(self, row):
        self._call("upsert_profile")
        self.profiles[row["id"]] = dict(row)
        return dict(row)

    def update_profile(self, user_id, data):
        self._call("update_profile")
        self.profiles.setdefault(user_id, {"id": user_id}).update({**data, "updated_at": self._timestamp()})

    # Account
    def delete_owned_rows(self, table, column, user_id):
        self._call(f"delete_owned_rows:{table}")
        if table == "profiles":
            self.profiles.pop(user_id, None)
        elif table == "user_points":
            self.points.pop(user_id, None)
        else:
            rows = {"posts": self.posts, "replies": self.replies, "votes": self.votes}[table]
            rows[:] = [r for r in rows if r.get(column) != user_id]


class FakeAuthApi:
    """Stand-in for `client.auth`; `error` makes every call raise it."""

    def __init__(self, user=None, session=True, error=None):
        self.user = user
        self.session = session
        self.error = error
        self.updates = []

    def _response(self):
        if self.error:
            raise self.error
        return SimpleNamespace(user=self.user, session=object() if self.session else None)

    def get_user(self):
        return self._response()

    def sign_in_with_password(self, credentials):
        return self._response()

    def sign_up(self, credentials):
        return self._response()

    def on_auth_state_change(self, handler):
        self.handler = handler
        return "subscription"

    def update_user(self, attributes):
        if self.error:
            raise self.error
        self.updates.append(attributes)


AUTH_USER = SimpleNamespace(id="u-9", email="meera@example.com", user_metadata={"full_name": "Meera K"})


def make_question(qid, subject="Anatomy", correct="A", options=("A", "B", "C", "D"), **extra):
    return {
        "id": qid,
        "question_text": f"Question {qid}?",
        "options": list(options),
        "correct_answer": correct,
        "subject": subject,
        "explanation": "",
        **extra,
    }


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user():
    return UserSession(id="user-1", email="asha@example.com", metadata={"display_name": "Asha"})


@pytest.fixture
def other_user():
    return UserSession(id="user-2", email="ravi@example.com")
