"""
Backend Module

Access to the hosted backend through the QuizBackend contract.
The active implementation is chosen by the BACKEND setting.

Adding New Backends:
-------------------
1. Create new file: backend/<name>.py
2. Implement <Name>Backend(QuizBackend)
3. Add it to _create_backend()
4. Set BACKEND=<name> in config
"""

from typing import Optional

from usmle_trivia.backend.base import (
    AlreadyCompletedError,
    ApplicationError,
    AuthError,
    AuthUser,
    BackendError,
    BackendNetworkError,
    BackendTimeoutError,
    NotFoundError,
    QuizBackend,
    RateLimitError,
)
from usmle_trivia.backend.memory import InMemoryBackend
from usmle_trivia.core.config import settings

# Module-level backend instance (singleton)
_backend_instance: Optional[QuizBackend] = None


def get_backend() -> QuizBackend:
    """
    Return the configured backend, creating it on first use.

    Configuration:
        BACKEND=supabase  SupabaseBackend over SUPABASE_URL / SUPABASE_ANON_KEY
        BACKEND=memory    InMemoryBackend (empty; seed it yourself)
    """
    global _backend_instance

    if _backend_instance is None:
        _backend_instance = _create_backend()

    return _backend_instance


def _create_backend() -> QuizBackend:
    backend = settings.BACKEND.lower()

    if backend == "supabase":
        from usmle_trivia.backend.supabase import SupabaseBackend
        from usmle_trivia.db.supabase import SupabaseClient

        client = SupabaseClient(
            settings.SUPABASE_URL,
            settings.SUPABASE_ANON_KEY,
            timeout=settings.BACKEND_TIMEOUT_SECONDS,
        )
        return SupabaseBackend(client)

    elif backend == "memory":
        return InMemoryBackend()

    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            f"Valid options: supabase, memory"
        )


def set_backend(backend: Optional[QuizBackend]) -> None:
    """Replace the singleton (tests install an in-memory backend here)."""
    global _backend_instance
    _backend_instance = backend


async def close_backend() -> None:
    """Close and forget the singleton, if one was created."""
    global _backend_instance
    if _backend_instance is not None:
        await _backend_instance.close()
        _backend_instance = None


__all__ = [
    "get_backend",
    "set_backend",
    "close_backend",
    "QuizBackend",
    "AuthUser",
    "InMemoryBackend",
    "BackendError",
    "BackendNetworkError",
    "BackendTimeoutError",
    "RateLimitError",
    "AuthError",
    "NotFoundError",
    "ApplicationError",
    "AlreadyCompletedError",
]
