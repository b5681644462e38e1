"""Community engine: vote toggling, tallies, points, posts and paged replies."""
import math

import pytest

from medspg.community import (
    DELETE,
    DOWN,
    INSERT,
    SORT_MOST_VOTED,
    SORT_NEWEST,
    SORT_OLDEST,
    UP,
    UPDATE,
    PointsLedger,
    ReplyThread,
    SingleFlight,
    VoteService,
    apply_vote,
    compute_tally,
    create_post,
    delete_post,
    list_posts,
    load_points,
    load_post,
)
from medspg.errors import BackendError, NotPostOwnerError, PointsGrantError, ValidationError

VOTE_CALLS = {"get_vote", "insert_vote", "update_vote", "delete_vote"}


def new_post(db, user, title="Brachial plexus mnemonic?", subject="Anatomy", content="Any good ones?"):
    return create_post(db, user, title, subject, content)


def vote_calls(db):
    return [c for c in db.calls if c in VOTE_CALLS]


def test_vote_transitions():
    assert apply_vote(None, UP) == (UP, INSERT)
    assert apply_vote(None, DOWN) == (DOWN, INSERT)
    assert apply_vote(UP, UP) == (None, DELETE)
    assert apply_vote(DOWN, DOWN) == (None, DELETE)
    assert apply_vote(UP, DOWN) == (DOWN, UPDATE)
    assert apply_vote(DOWN, UP) == (UP, UPDATE)
    with pytest.raises(ValueError):
        apply_vote(None, "sideways")


def test_tally_counts_and_user_vote():
    votes = [
        {"vote_type": UP, "user_id": "a"},
        {"vote_type": UP, "user_id": "b"},
        {"vote_type": DOWN, "user_id": "c"},
    ]
    tally = compute_tally(votes, "c")
    assert (tally.upvotes, tally.downvotes, tally.score) == (2, 1, 1)
    assert tally.user_vote == DOWN
    assert compute_tally(votes, "z").user_vote is None
    assert compute_tally(None).score == 0


def test_upvote_on_new_post_grants_author_two_points(db, user, other_user):
    post = new_post(db, user)
    assert db.points[user.id] == 10

    result = VoteService(db).cast_vote(other_user, post["id"], UP)

    assert result == (UP, INSERT)
    assert db.points[user.id] == 12
    summary = load_post(db, post["id"], other_user.id)
    assert (summary.tally.upvotes, summary.score, summary.tally.user_vote) == (1, 1, UP)


def test_toggle_off_removes_vote_without_clawback(db, user, other_user):
    post = new_post(db, user)
    votes = VoteService(db)
    votes.cast_vote(other_user, post["id"], UP)

    assert votes.cast_vote(other_user, post["id"], UP) == (None, DELETE)
    assert db.votes == []
    assert db.points[user.id] == 12
    assert load_post(db, post["id"]).tally.upvotes == 0


def test_switching_direction_updates_in_place_without_points(db, user, other_user):
    post = new_post(db, user)
    votes = VoteService(db)
    votes.cast_vote(other_user, post["id"], DOWN)
    assert db.points[user.id] == 10

    db.calls.clear()
    assert votes.cast_vote(other_user, post["id"], UP) == (UP, UPDATE)
    assert vote_calls(db) == ["get_vote", "update_vote"]
    assert len(db.votes) == 1
    assert db.points[user.id] == 10


def test_each_vote_is_one_lookup_and_one_write(db, user, other_user):
    post = new_post(db, user)
    votes = VoteService(db)
    for _ in range(3):
        db.calls.clear()
        votes.cast_vote(other_user, post["id"], DOWN)
        calls = vote_calls(db)
        assert len(calls) == 2 and calls[0] == "get_vote"


def test_tally_matches_rows_after_any_sequence(db, user, other_user):
    post = new_post(db, user)
    votes = VoteService(db)
    sequence = [(other_user, UP), (user, DOWN), (other_user, DOWN), (user, DOWN), (other_user, UP), (user, UP)]
    for voter, vote_type in sequence:
        votes.cast_vote(voter, post["id"], vote_type)
        pairs = [(v["post_id"], v["user_id"]) for v in db.votes]
        assert len(pairs) == len(set(pairs))
        up = sum(1 for v in db.votes if v["vote_type"] == UP)
        down = sum(1 for v in db.votes if v["vote_type"] == DOWN)
        assert load_post(db, post["id"]).score == up - down
    assert load_post(db, post["id"]).tally.upvotes == 2


def test_vote_ignored_while_previous_is_in_flight(db, user, other_user):
    post = new_post(db, user)
    guard = SingleFlight()
    votes = VoteService(db, guard=guard)
    assert guard.acquire(other_user.id)
    assert votes.is_busy(other_user)

    assert votes.cast_vote(other_user, post["id"], UP) is None
    assert db.votes == []

    guard.release(other_user.id)
    assert votes.cast_vote(other_user, post["id"], UP) == (UP, INSERT)


def test_failed_vote_write_releases_the_guard(db, user, other_user):
    post = new_post(db, user)
    votes = VoteService(db)
    db.fail.add("insert_vote")
    with pytest.raises(BackendError):
        votes.cast_vote(other_user, post["id"], UP)
    assert not votes.is_busy(other_user)
    assert db.votes == []


def test_vote_saved_when_points_fail(db, user, other_user):
    post = new_post(db, user)
    db.fail.add("grant_points")
    with pytest.raises(PointsGrantError) as exc:
        VoteService(db).cast_vote(other_user, post["id"], UP)
    assert exc.value.record["vote_type"] == UP
    assert len(db.votes) == 1


def test_grant_applies_once_per_key(db, user):
    post = db.insert_post({"title": "t", "subject": "Anatomy", "content": "c", "author_id": user.id})
    reply = db.insert_reply({"post_id": post["id"], "content": "r", "author_id": user.id})
    ledger = PointsLedger(db)

    assert ledger.grant(f"reply:{reply['id']}") == 5
    assert ledger.grant(f"reply:{reply['id']}") == 0
    assert db.points[user.id] == 5
    assert db.grants[f"reply:{reply['id']}"] == (user.id, 5)


def test_grant_amount_and_recipient_come_from_the_row(db, user, other_user):
    post = new_post(db, user)
    ledger = PointsLedger(db)
    # Nothing to pay for a missing row.
    assert ledger.grant("vote:999") == 0
    assert ledger.grant("reply:999") == 0

    VoteService(db).cast_vote(other_user, post["id"], DOWN)
    down_vote = db.votes[0]
    assert ledger.grant(f"vote:{down_vote['id']}") == 0
    assert db.points == {user.id: 10}
    assert other_user.id not in db.points


def test_switching_vote_stamps_updated_at(db, user, other_user):
    post = new_post(db, user)
    votes = VoteService(db)
    votes.cast_vote(other_user, post["id"], UP)
    assert "updated_at" not in db.votes[0]

    votes.cast_vote(other_user, post["id"], DOWN)
    assert db.votes[0]["updated_at"]


def test_load_points_falls_back_to_zero(db, user):
    assert load_points(db, user.id) == 0
    db.points[user.id] = 17
    assert load_points(db, user.id) == 17
    db.fail.add("get_points")
    assert load_points(db, user.id) == 0


def test_create_post_validates_input(db, user):
    with pytest.raises(ValidationError):
        create_post(db, user, "  ", "Anatomy", "Body")
    with pytest.raises(ValidationError):
        create_post(db, user, "x" * 201, "Anatomy", "Body")
    assert db.posts == []

    post = create_post(db, user, "x" * 200, "Anatomy", "  Body  ")
    assert post["content"] == "Body"
    assert post["author_name"] == "Asha"
    assert db.grants[f"post:{post['id']}"] == (user.id, 10)


def test_only_the_author_can_delete(db, user, other_user):
    post = new_post(db, user)
    VoteService(db).cast_vote(other_user, post["id"], UP)
    summary = load_post(db, post["id"])

    with pytest.raises(NotPostOwnerError):
        delete_post(db, other_user, summary)
    assert len(db.posts) == 1

    delete_post(db, user, summary)
    assert db.posts == []
    assert db.votes == []
    assert load_post(db, post["id"]) is None


def test_list_posts_filters_and_sorts(db, user, other_user):
    first = new_post(db, user, title="Krebs cycle", subject="Physiology", content="ATP yield?")
    second = new_post(db, user, title="Cranial nerves", subject="Anatomy", content="Order of exit")
    third = new_post(db, user, title="Nerve injuries", subject="Anatomy", content="Wrist drop")
    VoteService(db).cast_vote(other_user, first["id"], UP)

    assert [p.id for p in list_posts(db, sort=SORT_NEWEST)] == [third["id"], second["id"], first["id"]]
    assert [p.id for p in list_posts(db, sort=SORT_OLDEST)] == [first["id"], second["id"], third["id"]]
    # Ties keep newest-first order.
    assert [p.id for p in list_posts(db, sort=SORT_MOST_VOTED)] == [first["id"], third["id"], second["id"]]
    assert [p.id for p in list_posts(db, subject="Anatomy")] == [third["id"], second["id"]]
    assert [p.id for p in list_posts(db, search="NERVE")] == [third["id"], second["id"]]
    assert [p.id for p in list_posts(db, search="atp")] == [first["id"]]
    with pytest.raises(ValueError):
        list_posts(db, sort="hot")


def test_post_summary_counts_replies(db, user):
    post = new_post(db, user)
    for i in range(3):
        db.insert_reply({"post_id": post["id"], "content": f"r{i}", "author_id": user.id})
    summary = list_posts(db, user.id)[0]
    assert summary.reply_count == 3
    assert summary.is_owned_by(user)


def test_twelve_replies_page_five_five_two(db, user, clock):
    post = new_post(db, user)
    expected = [db.insert_reply({"post_id": post["id"], "content": f"r{i}"})["id"] for i in range(12)]
    thread = ReplyThread(db, post["id"], clock=clock)

    assert len(thread.load_first_page()) == 5
    assert thread.has_more
    assert len(thread.load_more()) == 5
    assert thread.has_more
    assert len(thread.load_more()) == 2
    assert not thread.has_more
    assert [r["id"] for r in thread.replies] == expected

    db.calls.clear()
    assert thread.load_more() == []
    assert db.calls == []


@pytest.mark.parametrize("page_size", [1, 3, 5])
@pytest.mark.parametrize("total", [0, 1, 5, 10, 11, 12])
def test_paging_covers_every_reply_once(db, user, clock, total, page_size):
    post = new_post(db, user)
    expected = [db.insert_reply({"post_id": post["id"], "content": f"r{i}"})["id"] for i in range(total)]
    thread = ReplyThread(db, post["id"], clock=clock, page_size=page_size)

    pages = [thread.load_first_page()]
    flags = [thread.has_more]
    while thread.has_more:
        pages.append(thread.load_more())
        flags.append(thread.has_more)

    assert [r["id"] for page in pages for r in page] == expected
    assert [r["id"] for r in thread.replies] == expected
    assert len(pages) == max(1, math.ceil(total / page_size))
    assert flags == [True] * (len(pages) - 1) + [False]
    assert all(len(page) == page_size for page in pages[:-1])


def test_load_more_is_ignored_while_loading(db, user, clock):
    post = new_post(db, user)
    for i in range(8):
        db.insert_reply({"post_id": post["id"], "content": f"r{i}"})
    thread = ReplyThread(db, post["id"], clock=clock)
    thread.load_first_page()
    thread.loading = True
    assert thread.load_more() == []
    assert len(thread.replies) == 5


def test_reply_appears_immediately_then_reconciles(db, user, other_user, clock):
    post = new_post(db, user)
    db.insert_reply({"post_id": post["id"], "content": "first"})
    thread = ReplyThread(db, post["id"], clock=clock)
    thread.load_first_page()

    reply = thread.post_reply(other_user, "  second  ")
    assert reply["content"] == "second"
    assert [r["content"] for r in thread.replies] == ["first", "second"]
    assert thread.reconciliation_pending
    assert db.points[other_user.id] == 5

    clock.advance(0.5)
    assert not thread.reconcile_if_due()
    clock.advance(0.5)
    assert thread.reconcile_if_due()
    assert not thread.reconciliation_pending
    assert thread.total_count == 2
    assert [r["content"] for r in thread.replies] == ["first", "second"]


def test_empty_reply_is_rejected(db, user, clock):
    post = new_post(db, user)
    thread = ReplyThread(db, post["id"], clock=clock)
    with pytest.raises(ValidationError):
        thread.post_reply(user, "   ")
    assert db.replies == []
    assert not thread.reconciliation_pending


def test_reply_kept_when_points_fail(db, user, clock):
    post = new_post(db, user)
    thread = ReplyThread(db, post["id"], clock=clock)
    thread.load_first_page()
    db.fail.add("grant_points")
    with pytest.raises(PointsGrantError) as exc:
        thread.post_reply(user, "still saved")
    assert exc.value.record["content"] == "still saved"
    assert len(thread.replies) == 1
    assert thread.reconciliation_pending
