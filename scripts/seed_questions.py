"""
Seed tags and questions into the hosted backend.

    python scripts/seed_questions.py

Reads SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY from the environment
(or .env) and loads scripts/data/sample_questions.json. Safe to re-run:
tags are upserted by slug and questions that already exist (same
question text) are skipped.

Exit status: 0 on success, 1 on any failure.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

from usmle_trivia.backend.base import BackendError
from usmle_trivia.core.config import settings
from usmle_trivia.db.supabase import SupabaseClient, eq

DATA_FILE = Path(__file__).resolve().parent / "data" / "sample_questions.json"


async def seed_tags(client: SupabaseClient, tags: List[Dict[str, Any]]) -> Dict[str, str]:
    rows = await client.upsert(
        "tags",
        [{**tag, "is_active": True} for tag in tags],
        on_conflict="slug",
        operation="seed tags",
    )
    return {row["slug"]: str(row["id"]) for row in rows}


async def seed_question(
    client: SupabaseClient,
    question: Dict[str, Any],
    tag_ids: Dict[str, str],
) -> bool:
    """Insert one question with its tag links. False if it already exists."""
    existing = await client.select_one(
        "questions",
        columns="id",
        filters={"question_text": eq(question["question_text"])},
        operation="find question",
    )
    if existing:
        return False

    values = {k: v for k, v in question.items() if k != "tags"}
    values["is_active"] = True
    rows = await client.insert("questions", [values], operation="seed question")
    question_id = rows[0]["id"]

    links = [
        {"question_id": question_id, "tag_id": tag_ids[slug]}
        for slug in question.get("tags", [])
        if slug in tag_ids
    ]
    if links:
        await client.upsert(
            "question_tags", links, on_conflict="question_id,tag_id", operation="seed question tags"
        )
    return True


async def main() -> int:
    if not settings.SUPABASE_SERVICE_ROLE_KEY:
        print("SUPABASE_SERVICE_ROLE_KEY is not set; seeding needs the service-role key")
        return 1

    try:
        data = json.loads(DATA_FILE.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        print(f"Could not read {DATA_FILE}: {e}")
        return 1

    client = SupabaseClient(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_ROLE_KEY,
        timeout=settings.BACKEND_TIMEOUT_SECONDS,
    )
    try:
        print(f"Seeding {settings.SUPABASE_URL}")
        tag_ids = await seed_tags(client, data.get("tags", []))
        print(f"  tags: {len(tag_ids)} upserted")

        created = skipped = 0
        for question in data.get("questions", []):
            if await seed_question(client, question, tag_ids):
                created += 1
            else:
                skipped += 1
        print(f"  questions: {created} created, {skipped} already present")
    except BackendError as e:
        print(f"Seeding failed: {e}")
        return 1
    finally:
        await client.aclose()

    print("Done")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
