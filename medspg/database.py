"""
Database operations for medsPG.
Handles Supabase CRUD for the question bank, test results, community tables,
points and profiles. Row-level security scopes every write to the signed-in user.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from medspg.errors import BackendError

logger = logging.getLogger(__name__)

QUESTIONS = "Questions"
TEST_RESULTS = "TestResults"
POSTS = "posts"
REPLIES = "replies"
VOTES = "votes"
USER_POINTS = "user_points"
POINT_GRANTS = "point_grants"
PROFILES = "profiles"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def escape_like(value: str) -> str:
    """Escape ILIKE wildcards so a subject name only matches itself."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DatabaseClient:
    """Wrapper around Supabase client with medsPG-specific operations."""

    def __init__(self, client: Client):
        self.client = client

    def _execute(self, query, table: str, action: str):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Error {action} ({table}): {e}")
            raise BackendError(f"Failed {action}: {e}", table=table) from e

    # ============= Questions =============

    def get_questions_by_subject(self, subject: str) -> List[Dict]:
        """Fetch every question whose subject matches case-insensitively."""
        query = self.client.table(QUESTIONS).select("*").ilike("subject", escape_like(subject))
        response = self._execute(query, QUESTIONS, "fetching questions")
        return response.data or []

    def get_subject_column(self) -> List[str]:
        """Raw subject values from the question bank, ordered by subject."""
        try:
            response = self.client.table(QUESTIONS).select("subject").order("subject").execute()
            return [row.get("subject") for row in response.data or []]
        except Exception as e:
            logger.error(f"Error fetching subjects: {e}")
            return []

    def upsert_questions_batch(self, questions: List[Dict], chunk_size: int = 200) -> int:
        """
        Batch upsert questions with chunking.

        Args:
            questions: List of question dicts (must include 'id')
            chunk_size: Number of questions per upsert call

        Returns:
            Total number of questions upserted
        """
        total = 0
        n_chunks = (len(questions) + chunk_size - 1) // chunk_size
        for i in range(0, len(questions), chunk_size):
            chunk = questions[i:i + chunk_size]
            query = self.client.table(QUESTIONS).upsert(chunk, on_conflict="id")
            self._execute(query, QUESTIONS, "upserting questions")
            total += len(chunk)
            logger.info(f"Upserted chunk {i // chunk_size + 1}/{n_chunks} ({len(chunk)} rows)")
        return total

    # ============= Test Results =============

    def insert_test_result(self, row: Dict) -> Dict:
        response = self._execute(self.client.table(TEST_RESULTS).insert(row), TEST_RESULTS, "saving test result")
        return (response.data or [row])[0]

    def get_test_results(self, user_id: str, limit: int = 500) -> List[Dict]:
        """Fetch a user's results, newest first."""
        query = (
            self.client.table(TEST_RESULTS)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
        )
        return self._execute(query, TEST_RESULTS, "fetching test results").data or []

    # ============= Posts =============

    def get_posts_with_activity(self) -> List[Dict]:
        """All posts, newest first, with nested vote rows and reply ids."""
        query = (
            self.client.table(POSTS)
            .select("id, title, content, subject, author_id, author_name, created_at, "
                    "votes(vote_type, user_id), replies(id)")
            .order("created_at", desc=True)
        )
        return self._execute(query, POSTS, "loading posts").data or []

    def get_post(self, post_id: int) -> Optional[Dict]:
        query = self.client.table(POSTS).select("*, votes(vote_type, user_id)").eq("id", post_id).limit(1)
        data = self._execute(query, POSTS, "loading post").data
        return data[0] if data else None

    def insert_post(self, row: Dict) -> Dict:
        response = self._execute(self.client.table(POSTS).insert(row), POSTS, "creating post")
        return response.data[0]

    def delete_post(self, post_id: int) -> None:
        self._execute(self.client.table(POSTS).delete().eq("id", post_id), POSTS, "deleting post")

    # ============= Replies =============

    def get_replies(self, post_id: int, start: int, end: int) -> Tuple[List[Dict], int]:
        """
        Fetch one inclusive range of replies, oldest first.

        Returns:
            (rows, exact total count for the post)
        """
        query = (
            self.client.table(REPLIES)
            .select("*", count="exact")
            .eq("post_id", post_id)
            .order("created_at")
            .range(start, end)
        )
        response = self._execute(query, REPLIES, "loading replies")
        return response.data or [], response.count or 0

    def insert_reply(self, row: Dict) -> Dict:
        response = self._execute(self.client.table(REPLIES).insert(row), REPLIES, "posting reply")
        return response.data[0]

    # ============= Votes =============

    def get_vote(self, post_id: int, user_id: str) -> Optional[Dict]:
        query = (
            self.client.table(VOTES)
            .select("id, vote_type")
            .match({"post_id": post_id, "user_id": user_id})
            .limit(1)
        )
        data = self._execute(query, VOTES, "looking up vote").data
        return data[0] if data else None

    def insert_vote(self, post_id: int, user_id: str, vote_type: str) -> Dict:
        row = {"post_id": post_id, "user_id": user_id, "vote_type": vote_type}
        response = self._execute(self.client.table(VOTES).insert(row), VOTES, "voting")
        return response.data[0]

    def update_vote(self, vote_id: int, vote_type: str) -> None:
        query = self.client.table(VOTES).update({"vote_type": vote_type, "updated_at": _now_iso()}).eq("id", vote_id)
        self._execute(query, VOTES, "changing vote")

    def delete_vote(self, vote_id: int) -> None:
        self._execute(self.client.table(VOTES).delete().eq("id", vote_id), VOTES, "removing vote")

    # ============= Points =============

    def get_points(self, user_id: str) -> Optional[int]:
        query = self.client.table(USER_POINTS).select("points").eq("user_id", user_id).limit(1)
        data = self._execute(query, USER_POINTS, "loading points").data
        return data[0]["points"] if data else None

    def grant_points(self, grant_key: str) -> int:
        """
        Claim the grant for a post:<id>, reply:<id> or vote:<id> key.

        Returns:
            Points awarded; 0 when the key was already paid out or is not claimable
        """
        query = self.client.rpc("grant_points", {"p_grant_key": grant_key})
        response = self._execute(query, POINT_GRANTS, "granting points")
        return int(response.data or 0)

    # ============= Profiles =============

    def get_profile(self, user_id: str) -> Optional[Dict]:
        query = self.client.table(PROFILES).select("*").eq("id", user_id).limit(1)
        data = self._execute(query, PROFILES, "loading profile").data
        return data[0] if data else None

    def upsert_profile(self, row: Dict) -> Dict:
        query = self.client.table(PROFILES).upsert(row, on_conflict="id")
        response = self._execute(query, PROFILES, "creating profile")
        return (response.data or [row])[0]

    def update_profile(self, user_id: str, data: Dict[str, Any]) -> None:
        query = self.client.table(PROFILES).update({**data, "updated_at": _now_iso()}).eq("id", user_id)
        self._execute(query, PROFILES, "saving profile")

    # ============= Account =============

    def delete_owned_rows(self, table: str, column: str, user_id: str) -> None:
        self._execute(self.client.table(table).delete().eq(column, user_id), table, "deleting account data")
