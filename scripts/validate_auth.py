"""
Validate the sign-in flow against the hosted auth service.

    python scripts/validate_auth.py

Uses TEST_USER_EMAIL / TEST_USER_PASSWORD from the environment (or
.env) to sign in, resolves the returned token the same way the API
does, and checks that the user's profile is readable under row-level
security while anonymous requests see no quiz sessions.

Exit status: 0 if every step passes, 1 otherwise.
"""

import asyncio
import sys
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from usmle_trivia.backend.base import BackendError
from usmle_trivia.backend.supabase import SupabaseBackend
from usmle_trivia.core.config import settings
from usmle_trivia.db.supabase import SupabaseClient, eq


class AuthCheckSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    TEST_USER_EMAIL: Optional[str] = None
    TEST_USER_PASSWORD: Optional[str] = None


async def main() -> int:
    check_settings = AuthCheckSettings()
    if not settings.SUPABASE_ANON_KEY:
        print("SUPABASE_ANON_KEY is not set")
        return 1
    if not check_settings.TEST_USER_EMAIL or not check_settings.TEST_USER_PASSWORD:
        print("TEST_USER_EMAIL and TEST_USER_PASSWORD must be set")
        return 1

    client = SupabaseClient(
        settings.SUPABASE_URL,
        settings.SUPABASE_ANON_KEY,
        timeout=settings.BACKEND_TIMEOUT_SECONDS,
    )
    backend = SupabaseBackend(client)
    ok = True
    try:
        print("1. Connection")
        tags = await client.select("tags", columns="id,name", limit=1)
        print(f"   OK ({len(tags)} tag(s) readable anonymously)")

        print("2. Sign in")
        session = await client.sign_in_with_password(
            check_settings.TEST_USER_EMAIL, check_settings.TEST_USER_PASSWORD
        )
        token = session.get("access_token")
        if not token:
            print("   FAIL: no access token returned")
            return 1
        print("   OK")

        print("3. Token resolves to a user")
        user = await backend.authenticate(token)
        print(f"   OK ({user.id}, {user.email})")

        print("4. Profile readable with the user's token")
        profile = await client.with_token(token).select_one(
            "profiles", columns="id", filters={"id": eq(user.id)}
        )
        if profile:
            print("   OK")
        else:
            print("   FAIL: profile row missing or hidden")
            ok = False

        print("5. Anonymous requests see no quiz sessions")
        sessions = await client.select("quiz_sessions", columns="id", limit=1)
        if sessions:
            print("   FAIL: quiz_sessions readable without a token")
            ok = False
        else:
            print("   OK")
    except BackendError as e:
        print(f"   FAIL: {e}")
        return 1
    finally:
        await backend.close()

    print()
    print("Auth flow valid" if ok else "Auth flow has problems")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
