"""
Check that the hosted backend has what the quiz service needs.

    python scripts/diagnose_backend.py

Checks configuration, REST reachability, the tables the service reads
and writes, and the RPC functions it calls. Prints one line per check.

Exit status: 0 if every check passes, 1 otherwise.
"""

import asyncio
import sys
from typing import Awaitable, Callable, List, Tuple

from usmle_trivia.backend.base import BackendError, NotFoundError
from usmle_trivia.core.config import settings
from usmle_trivia.db.supabase import SupabaseClient

TABLES = [
    "questions",
    "tags",
    "question_tags",
    "quiz_sessions",
    "quiz_responses",
    "user_question_history",
    "user_stats",
    "profiles",
]

# Nil UUID: the functions must exist, the result does not matter
NIL_UUID = "00000000-0000-0000-0000-000000000000"

RPCS = [
    ("get_user_stats", {"p_user_id": NIL_UUID}),
]


async def run_checks(client: SupabaseClient) -> List[Tuple[str, bool, str]]:
    results: List[Tuple[str, bool, str]] = []

    async def check(name: str, probe: Callable[[], Awaitable[str]]) -> None:
        try:
            detail = await probe()
            results.append((name, True, detail))
        except BackendError as e:
            results.append((name, False, str(e)))

    async def reachable() -> str:
        if not await client.health():
            raise BackendError("REST endpoint did not answer", operation="health")
        return settings.SUPABASE_URL

    await check("rest api", reachable)

    for table in TABLES:
        async def count_rows(table=table) -> str:
            return f"{await client.count(table, columns='*')} rows visible"
        await check(f"table {table}", count_rows)

    for function, params in RPCS:
        async def call(function=function, params=params) -> str:
            try:
                await client.rpc(function, params)
            except NotFoundError:
                raise
            except BackendError as e:
                # Exists but rejected the probe arguments
                if e.status_code in (400, 422):
                    return f"present ({e.message})"
                raise
            return "present"
        await check(f"rpc {function}", call)

    return results


async def main() -> int:
    if not settings.SUPABASE_ANON_KEY:
        print("SUPABASE_ANON_KEY is not set")
        return 1

    key = settings.SUPABASE_SERVICE_ROLE_KEY or settings.SUPABASE_ANON_KEY
    print(f"Backend:  {settings.SUPABASE_URL}")
    print(f"Key:      {'service role' if settings.SUPABASE_SERVICE_ROLE_KEY else 'anon (RLS applies)'}")
    print()

    client = SupabaseClient(settings.SUPABASE_URL, key, timeout=settings.BACKEND_TIMEOUT_SECONDS)
    try:
        results = await run_checks(client)
    finally:
        await client.aclose()

    for name, ok, detail in results:
        print(f"[{'OK' if ok else 'FAIL'}] {name}: {detail}")

    failed = [name for name, ok, _ in results if not ok]
    print()
    if failed:
        print(f"{len(failed)} check(s) failed")
        return 1
    print("All checks passed")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
