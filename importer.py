"""Ingest a question bank (.json array or .jsonl); bulk UPSERT into Questions."""
import argparse
import hashlib
import json
import logging
from pathlib import Path

from engine import SUBJECTS

logger = logging.getLogger(__name__)

MAX_OPTIONS = 10


def stable_question_id(subject: str, text: str) -> int:
    """Deterministic bigint id from subject + text, so re-imports update in place."""
    digest = hashlib.sha256(f"{subject.lower()}|{text}".encode("utf-8")).hexdigest()
    return int(digest[:15], 16)


def normalize_subject(subject: str) -> str:
    """Match a known subject case-insensitively; otherwise title-case it."""
    s = (subject or "").strip()
    for known in SUBJECTS:
        if known.lower() == s.lower():
            return known
    return s.title() if s else "General"


def parse_record(raw: dict) -> dict | None:
    """Turn one source record into a Questions row. Returns None if invalid/skip."""
    if not isinstance(raw, dict):
        return None
    text = (raw.get("question_text") or raw.get("question") or raw.get("text") or "").strip()
    if not text:
        return None
    options = raw.get("options")
    if not isinstance(options, list) or len(options) < 2:
        return None
    options = [str(o).strip() for o in options][:MAX_OPTIONS]
    correct = raw.get("correct_answer")
    # Accept an option index as well as the option text.
    if isinstance(correct, int) and 0 <= correct < len(options):
        correct = options[correct]
    correct = str(correct or "").strip()
    if correct not in options:
        logger.warning(f"Skipping {text[:40]!r}: correct answer {correct!r} is not one of its options")
        return None
    subject = normalize_subject(raw.get("subject") or raw.get("topic") or "")
    raw_id = raw.get("id")
    return {
        "id": raw_id if isinstance(raw_id, int) else stable_question_id(subject, text),
        "question_text": text,
        "options": options,
        "correct_answer": correct,
        "subject": subject,
        "explanation": str(raw.get("explanation") or "")[:50000],
    }


def load_records(path: Path):
    """Yield raw records from a JSON array file or a JSONL file."""
    if path.suffix == ".json":
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        yield from data if isinstance(data, list) else []
        return
    with path.open("r", encoding="utf-8") as f:
        for n, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Line {n} is not valid JSON, skipped")


def load_and_transform(path: Path) -> list[dict]:
    rows = {}
    for raw in load_records(path):
        row = parse_record(raw)
        if row:
            rows[row["id"]] = row
    return list(rows.values())


def run_import(path: Path, chunk_size: int = 200, dry_run: bool = False) -> int:
    if not path.exists():
        raise FileNotFoundError(f"Question file not found: {path}")
    rows = load_and_transform(path)
    if dry_run:
        print(f"Dry run: would upsert {len(rows)} questions from {path}")
        if rows:
            print("Sample row:", rows[0])
        return len(rows)

    from db import get_supabase_uncached
    from medspg.database import DatabaseClient

    total = DatabaseClient(get_supabase_uncached()).upsert_questions_batch(rows, chunk_size=chunk_size)
    print(f"Upserted {total} questions from {path}")
    return total


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description="Import a question bank into Supabase Questions.")
    parser.add_argument("path", help="Path to .json (array) or .jsonl")
    parser.add_argument("--chunk-size", type=int, default=200, help="Upsert chunk size (default 200)")
    parser.add_argument("--dry-run", action="store_true", help="Parse only, do not upsert")
    args = parser.parse_args()
    run_import(Path(args.path), chunk_size=args.chunk_size, dry_run=args.dry_run)
