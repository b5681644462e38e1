"""
Community Interaction Engine: posts, paginated replies, vote toggling,
derived tallies, and point accrual for posting, replying and upvotes.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from engine import (
    MAX_TITLE_LENGTH,
    RECONCILE_DELAY_SECONDS,
    REPLIES_PER_PAGE,
)
from medspg.auth import UserSession
from medspg.errors import BackendError, NotPostOwnerError, PointsGrantError, ValidationError

logger = logging.getLogger(__name__)

UP = "up"
DOWN = "down"
VOTE_TYPES = (UP, DOWN)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"

SORT_NEWEST = "newest"
SORT_OLDEST = "oldest"
SORT_MOST_VOTED = "most_voted"
SORT_KEYS = (SORT_NEWEST, SORT_OLDEST, SORT_MOST_VOTED)

ALL_SUBJECTS = "all"


# ============= Votes =============

def apply_vote(current: Optional[str], requested: str) -> Tuple[Optional[str], str]:
    """
    Vote transition for one (post, user) pair.

    Returns:
        (new vote state or None, the single write needed: insert/update/delete)
    """
    if requested not in VOTE_TYPES:
        raise ValueError(f"Unknown vote type: {requested!r}")
    if current is None:
        return requested, INSERT
    if current == requested:
        return None, DELETE
    return requested, UPDATE


@dataclass(slots=True, frozen=True)
class Tally:
    upvotes: int
    downvotes: int
    user_vote: Optional[str] = None

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes


def compute_tally(votes: Optional[List[Dict]], user_id: Optional[str] = None) -> Tally:
    votes = votes or []
    upvotes = sum(1 for v in votes if v.get("vote_type") == UP)
    downvotes = sum(1 for v in votes if v.get("vote_type") == DOWN)
    user_vote = None
    if user_id is not None:
        mine = next((v for v in votes if v.get("user_id") == user_id), None)
        if mine:
            user_vote = mine.get("vote_type")
    return Tally(upvotes, downvotes, user_vote)


class SingleFlight:
    """Per-key guard: a second call for a busy key is refused, not queued."""

    def __init__(self):
        self._busy: set = set()
        self._lock = threading.Lock()

    def acquire(self, key) -> bool:
        with self._lock:
            if key in self._busy:
                return False
            self._busy.add(key)
            return True

    def release(self, key) -> None:
        with self._lock:
            self._busy.discard(key)

    def is_busy(self, key) -> bool:
        return key in self._busy


class PointsLedger:
    """
    Claims point grants by key (post:<id>, reply:<id>, vote:<id>).

    The database works out recipient and amount from the referenced row and
    pays each key at most once.
    """

    def __init__(self, db):
        self.db = db

    def grant(self, grant_key: str) -> int:
        """
        Returns:
            Points awarded, 0 if the key was already paid out or is not claimable
        Raises:
            BackendError: the grant call failed
        """
        points = self.db.grant_points(grant_key)
        if points:
            logger.info(f"Granted {points} points for {grant_key}")
        else:
            logger.info(f"Grant {grant_key} not applied")
        return points

    def grant_for(self, record: Dict, grant_key: str) -> int:
        """Grant after a successful write; failure keeps the saved record for the caller."""
        try:
            return self.grant(grant_key)
        except BackendError as e:
            raise PointsGrantError(f"Saved, but points were not updated: {e}", record=record) from e


def load_points(db, user_id: str) -> int:
    """Current points; a failed load is only logged."""
    try:
        return db.get_points(user_id) or 0
    except Exception as e:
        logger.error(f"Error loading points: {e}")
        return 0


class VoteService:
    """One read plus exactly one write per vote; tallies are reloaded by the caller."""

    def __init__(self, db, ledger: Optional[PointsLedger] = None, guard: Optional[SingleFlight] = None):
        self.db = db
        self.ledger = ledger or PointsLedger(db)
        self.guard = guard or SingleFlight()

    def is_busy(self, user: UserSession) -> bool:
        return self.guard.is_busy(user.id)

    def cast_vote(self, user: UserSession, post_id: int, vote_type: str) -> Optional[Tuple[Optional[str], str]]:
        """
        Toggle the user's vote on a post.

        Returns:
            (new state, action taken), or None if another vote by this user is in flight
        Raises:
            BackendError: the lookup or write failed; nothing was changed locally
        """
        if vote_type not in VOTE_TYPES:
            raise ValueError(f"Unknown vote type: {vote_type!r}")
        if not self.guard.acquire(user.id):
            logger.debug(f"Vote by {user.id} ignored: previous vote still in flight")
            return None
        try:
            existing = self.db.get_vote(post_id, user.id)
            current = existing["vote_type"] if existing else None
            new_state, action = apply_vote(current, vote_type)
            if action == INSERT:
                vote = self.db.insert_vote(post_id, user.id, vote_type)
                if vote_type == UP:
                    self.ledger.grant_for(vote, f"vote:{vote['id']}")
            elif action == UPDATE:
                self.db.update_vote(existing["id"], vote_type)
            else:
                self.db.delete_vote(existing["id"])
            logger.info(f"Vote on post {post_id} by {user.id}: {current} -> {new_state} ({action})")
            return new_state, action
        finally:
            self.guard.release(user.id)


# ============= Posts =============

@dataclass(slots=True, frozen=True)
class PostSummary:
    id: int
    title: str
    content: str
    subject: str
    author_id: Optional[str]
    author_name: str
    created_at: str
    tally: Tally
    reply_count: int = 0

    @property
    def score(self) -> int:
        return self.tally.score

    def is_owned_by(self, user: Optional[UserSession]) -> bool:
        return user is not None and self.author_id == user.id


def summarize_post(row: Dict, user_id: Optional[str] = None) -> PostSummary:
    return PostSummary(
        id=row["id"],
        title=row.get("title") or "",
        content=row.get("content") or "",
        subject=row.get("subject") or "",
        author_id=row.get("author_id"),
        author_name=row.get("author_name") or "Anonymous",
        created_at=row.get("created_at") or "",
        tally=compute_tally(row.get("votes"), user_id),
        reply_count=len(row.get("replies") or []),
    )


def filter_posts(posts: List[PostSummary], search: str = "", subject: str = ALL_SUBJECTS) -> List[PostSummary]:
    needle = search.strip().lower()
    if needle:
        posts = [p for p in posts if needle in p.title.lower() or needle in p.content.lower()]
    if subject and subject != ALL_SUBJECTS:
        posts = [p for p in posts if p.subject == subject]
    return posts


def sort_posts(posts: List[PostSummary], sort: str = SORT_NEWEST) -> List[PostSummary]:
    if sort == SORT_NEWEST:
        return sorted(posts, key=lambda p: p.created_at, reverse=True)
    if sort == SORT_OLDEST:
        return sorted(posts, key=lambda p: p.created_at)
    if sort == SORT_MOST_VOTED:
        # Stable: ties keep their incoming (newest-first) order.
        return sorted(posts, key=lambda p: p.score, reverse=True)
    raise ValueError(f"Unknown sort: {sort!r}")


def list_posts(
    db,
    user_id: Optional[str] = None,
    search: str = "",
    subject: str = ALL_SUBJECTS,
    sort: str = SORT_NEWEST,
) -> List[PostSummary]:
    """Fetch every post with its votes and reply ids, then filter and sort locally."""
    if sort not in SORT_KEYS:
        raise ValueError(f"Unknown sort: {sort!r}")
    rows = db.get_posts_with_activity()
    posts = [summarize_post(row, user_id) for row in rows]
    return sort_posts(filter_posts(posts, search, subject), sort)


def load_post(db, post_id: int, user_id: Optional[str] = None) -> Optional[PostSummary]:
    row = db.get_post(post_id)
    if row is None:
        logger.warning(f"Post {post_id} not found")
        return None
    return summarize_post(row, user_id)


def validate_post(title: str, subject: str, content: str) -> Tuple[str, str, str]:
    title, subject, content = title.strip(), subject.strip(), content.strip()
    if not title or not subject or not content:
        raise ValidationError("Please fill in the title, subject and content.")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters.")
    return title, subject, content


def create_post(db, user: UserSession, title: str, subject: str, content: str,
                ledger: Optional[PointsLedger] = None) -> Dict:
    """Insert a post and grant the author their points."""
    title, subject, content = validate_post(title, subject, content)
    post = db.insert_post({
        "title": title,
        "subject": subject,
        "content": content,
        "author_id": user.id,
        "author_name": user.display_name,
    })
    logger.info(f"Post {post['id']} created by {user.id}")
    (ledger or PointsLedger(db)).grant_for(post, f"post:{post['id']}")
    return post


def delete_post(db, user: UserSession, post: PostSummary) -> None:
    """Owner-only; the backend cascades replies and votes."""
    if not post.is_owned_by(user):
        raise NotPostOwnerError("Only the author can delete this post.")
    db.delete_post(post.id)
    logger.info(f"Post {post.id} deleted by {user.id}")


# ============= Replies =============

class ReplyThread:
    """
    Paged reply list for one post, oldest first.

    New replies are appended optimistically; page 0 is re-fetched once the
    reconciliation delay has passed and replaces the visible list wholesale.
    """

    def __init__(
        self,
        db,
        post_id: int,
        page_size: int = REPLIES_PER_PAGE,
        ledger: Optional[PointsLedger] = None,
        clock: Callable[[], float] = time.monotonic,
        reconcile_delay: float = RECONCILE_DELAY_SECONDS,
    ):
        self.db = db
        self.post_id = post_id
        self.page_size = page_size
        self.ledger = ledger or PointsLedger(db)
        self.replies: List[Dict] = []
        self.page = 0
        self.total_count = 0
        self.loading = False
        self._clock = clock
        self._reconcile_delay = reconcile_delay
        self._reconcile_at: Optional[float] = None

    @property
    def has_more(self) -> bool:
        return (self.page + 1) * self.page_size < self.total_count

    def _fetch(self, page: int) -> List[Dict]:
        start = page * self.page_size
        rows, count = self.db.get_replies(self.post_id, start, start + self.page_size - 1)
        self.total_count = count
        logger.debug(f"Loaded {len(rows)} replies for post {self.post_id} (page {page}, total {count})")
        return rows

    def load_first_page(self) -> List[Dict]:
        rows = self._fetch(0)
        self.replies = list(rows)
        self.page = 0
        return self.replies

    def load_more(self) -> List[Dict]:
        """Append the next page. No-op while loading or when nothing is left."""
        if self.loading or not self.has_more:
            return []
        self.loading = True
        try:
            rows = self._fetch(self.page + 1)
            self.replies.extend(rows)
            self.page += 1
            return rows
        finally:
            self.loading = False

    def post_reply(self, user: UserSession, content: str) -> Dict:
        content = content.strip()
        if not content:
            raise ValidationError("Please write something before submitting.")
        reply = self.db.insert_reply({
            "post_id": self.post_id,
            "content": content,
            "author_id": user.id,
            "author_name": user.display_name,
        })
        self.replies.append(reply)
        self._reconcile_at = self._clock() + self._reconcile_delay
        logger.info(f"Reply {reply['id']} posted on post {self.post_id} by {user.id}")
        self.ledger.grant_for(reply, f"reply:{reply['id']}")
        return reply

    @property
    def reconciliation_pending(self) -> bool:
        return self._reconcile_at is not None

    def reconcile_if_due(self) -> bool:
        """Re-fetch page 0 once the delay after an optimistic append has passed."""
        if self._reconcile_at is None or self._clock() < self._reconcile_at:
            return False
        self._reconcile_at = None
        self.load_first_page()
        return True
