"""MedsPG: multi-page medical PG exam practice with a community board."""
import logging
import os
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).resolve().parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import streamlit as st

from db import get_database, get_supabase
from engine import MAX_TITLE_LENGTH, QUESTIONS_PER_TEST, SECONDS_PER_QUESTION
from medspg.analytics import (
    average_time_per_question,
    dashboard_summary,
    filter_subjects,
    list_subjects,
    load_results,
    performance_trend,
    subject_averages,
)
from medspg.auth import AuthGateway, require_user
from medspg.community import (
    ALL_SUBJECTS,
    DOWN,
    SORT_MOST_VOTED,
    SORT_NEWEST,
    SORT_OLDEST,
    UP,
    ReplyThread,
    VoteService,
    create_post,
    delete_post,
    list_posts,
    load_points,
    load_post,
)
from medspg.engine import (
    format_duration,
    require_review_payload,
    score_band,
    start_attempt,
    submit_attempt,
    time_summary,
)
from medspg.errors import (
    AccountDeletionError,
    BackendError,
    MedsPGError,
    MissingResultPayloadError,
    NameChangeRestrictedError,
    NoQuestionsError,
    NotAuthenticatedError,
    PointsGrantError,
    ValidationError,
)
from medspg.profile import ProfileService, can_change_name, days_until_name_change, delete_account

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

PAGES = ["Home", "Dashboard", "Take Test", "Results", "Analytics", "Community", "New Post", "Profile"]
PROTECTED_PAGES = set(PAGES) - {"Home"}
SORT_LABELS = {SORT_NEWEST: "Newest", SORT_OLDEST: "Oldest", SORT_MOST_VOTED: "Most voted"}
STATUS_ICONS = {"current": "🔵", "answered": "🟢", "visited": "🟠", "not_visited": "⚪"}
BAND_MESSAGES = {"good": st.success, "fair": st.warning, "poor": st.error}

st.set_page_config(page_title="MedsPG", layout="wide")

db = get_database()
auth = AuthGateway(get_supabase())

if "user" not in st.session_state:
    st.session_state["user"] = auth.current_user()
if "auth_subscription" not in st.session_state:
    # Token refreshes and sign-outs made through this client keep the session user current.
    st.session_state["auth_subscription"] = auth.on_change(
        lambda event, changed: st.session_state.update(user=changed)
    )
if "vote_service" not in st.session_state:
    st.session_state["vote_service"] = VoteService(db)
if "attempt" not in st.session_state:
    st.session_state["attempt"] = None
if "review_payload" not in st.session_state:
    st.session_state["review_payload"] = None
if "reply_threads" not in st.session_state:
    st.session_state["reply_threads"] = {}  # post_id -> ReplyThread


def go_to(page: str, **params) -> None:
    # Reply threads live for one visit to a post; the next visit re-fetches.
    st.session_state["reply_threads"].clear()
    st.query_params.clear()
    st.query_params["page"] = page
    for key, value in params.items():
        st.query_params[key] = str(value)
    st.rerun()


def show_grant_warning(e: PointsGrantError) -> None:
    # The write itself went through; only the points update is missing.
    # Every caller reruns next, so the message is shown on the following run.
    st.session_state["flash"] = str(e)


def parse_post_id(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring malformed post id {raw!r}")
        return None


# ----- Navigation -----
st.sidebar.title("MedsPG")
user = st.session_state["user"]
default_page = st.query_params.get("page", "Home")
if default_page not in PAGES:
    default_page = "Home"
page = st.sidebar.radio("Navigate", PAGES, index=PAGES.index(default_page), label_visibility="collapsed")
if page != default_page:
    go_to(page)

if user is not None:
    st.sidebar.caption(f"Signed in as **{user.display_name}**")
    st.sidebar.metric("Points", load_points(db, user.id))
    if st.sidebar.button("Sign out"):
        try:
            auth.sign_out()
        except BackendError as e:
            st.sidebar.error(f"Sign-out failed: {e}")
        else:
            st.session_state["user"] = None
            st.session_state["attempt"] = None
            st.session_state["review_payload"] = None
            go_to("Home")

flash = st.session_state.pop("flash", None)
if flash:
    st.warning(f"⚠️ {flash}")

if page in PROTECTED_PAGES:
    try:
        user = require_user(user)
    except NotAuthenticatedError as e:
        st.info(str(e))
        page = "Home"

# ----- Home / sign in -----
if page == "Home":
    st.header("MedsPG")
    st.caption(
        f"Timed subject tests ({QUESTIONS_PER_TEST} questions, {SECONDS_PER_QUESTION}s each), "
        "progress analytics and a discussion board for medical PG aspirants."
    )
    if user is not None:
        st.success(f"Welcome back, {user.display_name}.")
        if st.button("Go to dashboard", type="primary"):
            go_to("Dashboard")
        st.stop()

    sign_in_tab, sign_up_tab = st.tabs(["Sign in", "Create account"])
    with sign_in_tab:
        with st.form("sign_in"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            if st.form_submit_button("Sign in", type="primary"):
                try:
                    st.session_state["user"] = auth.sign_in(email, password)
                    go_to("Dashboard")
                except BackendError as e:
                    st.error(f"Could not sign in: {e}")
    with sign_up_tab:
        with st.form("sign_up"):
            display_name = st.text_input("Display name")
            email = st.text_input("Email", key="sign_up_email")
            password = st.text_input("Password", type="password", key="sign_up_password")
            if st.form_submit_button("Create account"):
                try:
                    new_user = auth.sign_up(email, password, display_name.strip())
                except BackendError as e:
                    st.error(f"Could not create account: {e}")
                else:
                    if new_user is None:
                        st.info("Check your inbox to confirm your email, then sign in.")
                    else:
                        st.session_state["user"] = new_user
                        go_to("Dashboard")

# ----- Dashboard -----
elif page == "Dashboard":
    st.header("Dashboard")
    results = load_results(db, user.id)
    summary = dashboard_summary(results)
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Tests completed", summary["tests_completed"])
    with col2:
        st.metric("Average accuracy", f"{summary['average_accuracy']}%")
    with col3:
        st.metric("Points", load_points(db, user.id))

    if summary["recent_activity"]:
        st.subheader("Recent activity")
        for item in summary["recent_activity"]:
            st.write(f"- {item['subject']}: {item['score']}")

    st.subheader("Start a test")
    try:
        subjects = list_subjects(db)
    except BackendError as e:
        st.error(f"Could not load subjects. Check DB and .env (SUPABASE_URL, SUPABASE_KEY). {e}")
        st.stop()
    query = st.text_input("Search subjects", placeholder="e.g. Anatomy")
    matches = filter_subjects(subjects, query)
    if not matches:
        st.warning("No subjects match your search.")
    cols = st.columns(3)
    for i, subject in enumerate(matches):
        with cols[i % 3]:
            if st.button(subject, key=f"subject_{subject}", use_container_width=True):
                go_to("Take Test", subject=subject)

# ----- Take Test -----
elif page == "Take Test":
    subject = st.query_params.get("subject", "")
    attempt = st.session_state["attempt"]

    if attempt is None or attempt.is_submitted or (subject and attempt.subject != subject):
        if not subject:
            st.info("Choose a subject on the dashboard to start a test.")
            st.stop()
        try:
            attempt = start_attempt(db, subject)
        except NoQuestionsError as e:
            st.warning(str(e))
            if st.button("Back to dashboard"):
                go_to("Dashboard")
            st.stop()
        except BackendError as e:
            st.error(f"Failed to load questions: {e}")
            st.stop()
        st.session_state["attempt"] = attempt

    def finish(reason: str) -> None:
        payload = submit_attempt(attempt, db, user)
        st.session_state["review_payload"] = payload
        st.session_state["attempt"] = None
        logger.info(f"Test finished ({reason}) for {user.id}")
        go_to("Results")

    @st.fragment(run_every=1)
    def countdown():
        if attempt.sync_clock() is not None:
            # Time ran out; the attempt already scored itself, only persist it.
            st.session_state["review_payload"] = submit_attempt(attempt, db, user)
            st.session_state["attempt"] = None
            st.query_params["page"] = "Results"
            st.rerun(scope="app")
        if attempt.is_time_low:
            st.error(f"⏰ {attempt.format_clock()}")
        else:
            st.metric("Time left", attempt.format_clock())

    st.header(f"{attempt.subject} test")
    with st.sidebar:
        countdown()
        st.progress(attempt.progress)
        st.caption(f"{attempt.answered_count}/{len(attempt.questions)} answered")
        st.caption("🔵 current · 🟢 answered · 🟠 visited · ⚪ not visited")
        nav_cols = st.columns(5)
        for i in range(len(attempt.questions)):
            with nav_cols[i % 5]:
                icon = STATUS_ICONS[attempt.question_status(i)]
                if st.button(f"{icon}{i + 1}", key=f"nav_{i}"):
                    attempt.jump_to(i)
                    st.rerun()

    idx = attempt.current_index
    q = attempt.current_question
    st.subheader(f"Question {idx + 1} of {len(attempt.questions)}")
    st.write(q.question_text)
    if not q.options:
        st.warning("This question has no options available.")
    else:
        current = attempt.answer_for(idx)
        choice = st.radio(
            "Choose one:",
            list(q.options),
            index=q.options.index(current) if current in q.options else None,
            key=f"q_{attempt.attempt_id}_{idx}",
        )
        if choice is not None and choice != current:
            attempt.select_answer(choice)

    col1, col2, col3 = st.columns([1, 1, 2])
    with col1:
        if st.button("Previous", disabled=attempt.is_first):
            attempt.previous()
            st.rerun()
    with col2:
        if st.button("Next", disabled=attempt.is_last):
            attempt.next()
            st.rerun()
    with col3:
        if st.button("Submit test", type="primary", disabled=attempt.is_submitted):
            finish("submitted")

# ----- Results -----
elif page == "Results":
    try:
        payload = require_review_payload(st.session_state["review_payload"])
    except MissingResultPayloadError:
        st.info("No submitted test to review.")
        if st.button("Back to dashboard"):
            go_to("Dashboard")
        st.stop()

    st.header(f"{payload.subject} results")
    band = score_band(payload.score_percent)
    BAND_MESSAGES[band](f"Score: {payload.score}/{payload.total} ({payload.score_percent}%)")
    total_time, avg_time = time_summary(payload.time_per_question)
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Correct", payload.score)
    with col2:
        st.metric("Wrong", payload.wrong_count)
    with col3:
        st.metric("Skipped", payload.skipped_count)
    with col4:
        st.metric("Time", format_duration(total_time), help=f"Average {format_duration(avg_time)} per question")

    for i, r in enumerate(payload.results, start=1):
        mark = "⏭️" if r.is_skipped else ("✅" if r.is_correct else "❌")
        with st.expander(f"{mark} Q{i}. {r.question.question_text[:80]}"):
            st.write(r.question.question_text)
            for option in r.question.options:
                if option == r.question.correct_answer:
                    st.success(f"✓ {option} (Correct Answer)")
                elif option == r.user_answer:
                    st.error(f"✗ {option} (Your Answer)")
                else:
                    st.write(f"○ {option}")
            if r.is_skipped:
                st.caption("Skipped")
            st.caption(f"Time spent: {format_duration(r.time_spent)}")
            if r.question.explanation:
                st.info(r.question.explanation)

    col1, col2 = st.columns(2)
    with col1:
        if st.button("Retake", type="primary"):
            go_to("Take Test", subject=payload.subject)
    with col2:
        if st.button("Back to dashboard"):
            go_to("Dashboard")

# ----- Analytics -----
elif page == "Analytics":
    st.header("Analytics")
    results = load_results(db, user.id)
    if not results:
        st.info("Take a test to see your analytics.")
        st.stop()
    col1, col2 = st.columns(2)
    with col1:
        st.metric("Tests taken", len(results))
    with col2:
        st.metric("Avg time per question", format_duration(average_time_per_question(results)))

    st.subheader("Score trend")
    trend = performance_trend(results)
    st.line_chart({"Score %": [p["score"] for p in trend]})
    st.subheader("By subject")
    averages = subject_averages(results)
    st.bar_chart({a["subject"]: [round(a["average_score"], 1)] for a in averages})
    st.dataframe(averages, use_container_width=True)

# ----- Community -----
elif page == "Community":
    votes: VoteService = st.session_state["vote_service"]
    post_id = st.query_params.get("post")

    def vote_buttons(post, key_prefix: str) -> None:
        up_col, score_col, down_col = st.columns([1, 1, 1])
        busy = votes.is_busy(user)
        for col, vote_type, icon in ((up_col, UP, "👍"), (down_col, DOWN, "👎")):
            with col:
                active = post.tally.user_vote == vote_type
                if st.button(icon, key=f"{key_prefix}_{vote_type}_{post.id}", disabled=busy,
                             type="primary" if active else "secondary"):
                    try:
                        votes.cast_vote(user, post.id, vote_type)
                    except PointsGrantError as e:
                        show_grant_warning(e)
                    except BackendError as e:
                        st.error(f"Vote failed: {e}")
                    st.rerun()
        with score_col:
            st.write(f"**{post.score}**")

    if post_id is not None:
        # ----- Post detail -----
        post_id = parse_post_id(post_id)
        try:
            post = load_post(db, post_id, user.id) if post_id is not None else None
        except BackendError as e:
            st.error(f"Could not load post: {e}")
            st.stop()
        if post is None:
            st.warning("This post no longer exists.")
            if st.button("Back to community"):
                go_to("Community")
            st.stop()

        if st.button("← Back to community"):
            go_to("Community")
        st.header(post.title)
        st.caption(f"{post.subject} · by {post.author_name} · {post.created_at[:10]}")
        st.write(post.content)
        vote_buttons(post, "detail")
        if post.is_owned_by(user) and st.button("Delete post"):
            try:
                delete_post(db, user, post)
            except MedsPGError as e:
                st.error(str(e))
            else:
                go_to("Community")

        threads = st.session_state["reply_threads"]
        thread = threads.get(post.id)
        if thread is None:
            thread = ReplyThread(db, post.id)
            try:
                thread.load_first_page()
            except BackendError as e:
                st.error(f"Could not load replies: {e}")
            threads[post.id] = thread
        try:
            thread.reconcile_if_due()
        except BackendError as e:
            logger.warning(f"Reply reconciliation failed for post {post.id}: {e}")

        st.subheader(f"Replies ({thread.total_count})")
        for reply in thread.replies:
            with st.container(border=True):
                st.caption(f"{reply.get('author_name') or 'Anonymous'} · {(reply.get('created_at') or '')[:16]}")
                st.write(reply.get("content") or "")
        if thread.has_more and st.button("Load more", disabled=thread.loading):
            try:
                thread.load_more()
            except BackendError as e:
                st.error(f"Could not load more replies: {e}")
            st.rerun()

        with st.form("reply", clear_on_submit=True):
            content = st.text_area("Your reply")
            if st.form_submit_button("Reply", type="primary"):
                try:
                    thread.post_reply(user, content)
                except ValidationError as e:
                    st.warning(str(e))
                except PointsGrantError as e:
                    show_grant_warning(e)
                except BackendError as e:
                    st.error(f"Could not post reply: {e}")
                if thread.reconciliation_pending:
                    st.rerun()
        if thread.reconciliation_pending:
            # Pick up the re-fetch once the delay has elapsed.
            @st.fragment(run_every=1)
            def reconcile_watch():
                if thread.reconcile_if_due():
                    st.rerun(scope="app")

            reconcile_watch()
        st.stop()

    # ----- Post list -----
    st.header("Community")
    if st.button("New post", type="primary"):
        go_to("New Post")
    try:
        subjects = list_subjects(db)
    except BackendError:
        subjects = []
    col1, col2, col3 = st.columns([2, 1, 1])
    with col1:
        search = st.text_input("Search posts")
    with col2:
        subject = st.selectbox("Subject", [ALL_SUBJECTS] + subjects,
                               format_func=lambda s: "All subjects" if s == ALL_SUBJECTS else s)
    with col3:
        sort = st.selectbox("Sort", list(SORT_LABELS), format_func=SORT_LABELS.get)
    try:
        posts = list_posts(db, user.id, search, subject, sort)
    except BackendError as e:
        st.error(f"Could not load posts: {e}")
        st.stop()
    if not posts:
        st.info("No posts yet. Start the discussion!")
    for post in posts:
        with st.container(border=True):
            st.subheader(post.title)
            st.caption(f"{post.subject} · by {post.author_name} · {post.reply_count} replies")
            st.write(post.content[:200] + ("…" if len(post.content) > 200 else ""))
            vote_buttons(post, "list")
            if st.button("Open", key=f"open_{post.id}"):
                go_to("Community", post=post.id)

# ----- New Post -----
elif page == "New Post":
    st.header("New post")
    try:
        subjects = list_subjects(db)
    except BackendError:
        subjects = []
    with st.form("new_post"):
        title = st.text_input("Title", max_chars=MAX_TITLE_LENGTH)
        subject = st.selectbox("Subject", subjects) if subjects else st.text_input("Subject")
        content = st.text_area("Content", height=200)
        if st.form_submit_button("Publish", type="primary"):
            try:
                post = create_post(db, user, title, subject or "", content)
            except ValidationError as e:
                st.warning(str(e))
            except PointsGrantError as e:
                show_grant_warning(e)
                go_to("Community", post=e.record["id"])
            except BackendError as e:
                st.error(f"Could not publish post: {e}")
            else:
                go_to("Community", post=post["id"])

# ----- Profile -----
elif page == "Profile":
    st.header("Profile")
    profiles = ProfileService(db, auth)
    try:
        profile = profiles.load_or_create(user)
    except BackendError as e:
        st.error(f"Could not load profile: {e}")
        st.stop()

    last_change = profile.get("last_name_change")
    if not can_change_name(last_change):
        st.caption(f"You can change your display name again in {days_until_name_change(last_change)} days.")
    with st.form("profile"):
        display_name = st.text_input("Display name", value=profile.get("display_name") or "")
        college = st.text_input("College", value=profile.get("college") or "")
        year = st.text_input("Year", value=profile.get("year") or "")
        status = st.text_input("Status", value=profile.get("status") or "")
        if st.form_submit_button("Save", type="primary"):
            try:
                profiles.save(user, profile, display_name, college, year, status)
                st.success("Profile saved.")
            except NameChangeRestrictedError as e:
                st.warning(str(e))
            except BackendError as e:
                st.error(f"Could not save profile: {e}")

    st.divider()
    st.subheader("Delete account")
    st.caption("Removes your profile, points, posts, replies and votes. This cannot be undone.")
    confirm = st.checkbox("I understand")
    if st.button("Delete my account", disabled=not confirm):
        try:
            delete_account(db, user.id)
        except AccountDeletionError as e:
            st.error(str(e))
        else:
            try:
                auth.sign_out()
            except BackendError as e:
                logger.warning(f"Sign-out after account deletion failed: {e}")
            st.session_state["user"] = None
            go_to("Home")
