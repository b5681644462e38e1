"""Exam and community constants. No UI, no I/O."""
# Test: up to 20 shuffled questions, ~1.05 min per question on one global clock
# Points: post +10, reply +5, upvote received +2 (never clawed back)

QUESTIONS_PER_TEST = 20
SECONDS_PER_QUESTION = 63
LOW_TIME_SECONDS = 300

GOOD_SCORE_PERCENT = 70
FAIR_SCORE_PERCENT = 50

REPLIES_PER_PAGE = 5
RECONCILE_DELAY_SECONDS = 1.0
MAX_TITLE_LENGTH = 200

POINTS_PER_POST = 10
POINTS_PER_REPLY = 5
POINTS_PER_UPVOTE = 2

NAME_CHANGE_COOLDOWN_DAYS = 60

SUBJECTS = [
    "Anatomy", "Physiology", "Pathology", "Pharmacology",
    "Microbiology", "Medicine", "General",
]
