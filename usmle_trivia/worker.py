"""
ARQ Worker Configuration

Runs the background recovery of quiz completions that could not be
saved while the user was taking the quiz.

Running the Worker:
------------------
    # From project root directory
    arq usmle_trivia.worker.WorkerSettings

    # With verbose logging
    arq usmle_trivia.worker.WorkerSettings --verbose

The recovery job runs on a cron every RECOVERY_INTERVAL_MINUTES (and
once at startup). The API can also enqueue it on demand:
    pool = await get_arq_pool()
    await pool.enqueue_job("recover_pending_completions_task")
"""

import logging
from typing import Any, Dict

from arq import cron

from usmle_trivia.backend.base import QuizBackend
from usmle_trivia.backend.memory import InMemoryBackend
from usmle_trivia.core.config import settings
from usmle_trivia.core.retry import RetryPolicy
from usmle_trivia.db.redis import get_arq_redis_settings
from usmle_trivia.services.draft_store import RedisDraftStore
from usmle_trivia.tasks.session_tasks import recover_pending_completions_task

# ============================================================
# Logging Configuration
# ============================================================

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _worker_backend() -> QuizBackend:
    """
    Backend for the worker.

    The worker acts for many users without their tokens, so it uses the
    service-role key when one is configured.
    """
    if settings.BACKEND == "memory":
        return InMemoryBackend()

    from usmle_trivia.backend.supabase import SupabaseBackend
    from usmle_trivia.db.supabase import SupabaseClient

    if not settings.SUPABASE_SERVICE_ROLE_KEY:
        logger.warning(
            "SUPABASE_SERVICE_ROLE_KEY not set; recovery runs with the anon key "
            "and row-level security may hide sessions"
        )
    client = SupabaseClient(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_ROLE_KEY or settings.SUPABASE_ANON_KEY,
        timeout=settings.BACKEND_TIMEOUT_SECONDS,
    )
    return SupabaseBackend(client)


# ============================================================
# Startup and Shutdown Hooks
# ============================================================

async def startup(ctx: Dict[str, Any]) -> None:
    logger.info("ARQ Worker starting up...")

    ctx["backend"] = _worker_backend()
    ctx["draft_store"] = RedisDraftStore(ctx["redis"])
    ctx["retry_policy"] = RetryPolicy()

    if not await ctx["backend"].ping():
        logger.warning("Backend not reachable yet; recovery will retry on schedule")

    logger.info("ARQ Worker ready to process jobs")


async def shutdown(ctx: Dict[str, Any]) -> None:
    logger.info("ARQ Worker shutting down...")

    backend = ctx.get("backend")
    if backend is not None:
        await backend.close()

    logger.info("ARQ Worker shutdown complete")


# ============================================================
# Worker Configuration Class
# ============================================================

class WorkerSettings:
    """
    ARQ Worker settings.

    Discovered by ARQ when you run:
        arq usmle_trivia.worker.WorkerSettings
    """

    functions = [
        recover_pending_completions_task,
    ]

    cron_jobs = [
        cron(
            recover_pending_completions_task,
            minute=set(range(0, 60, settings.RECOVERY_INTERVAL_MINUTES)),
            run_at_startup=True,
            unique=True,
        ),
    ]

    redis_settings = get_arq_redis_settings()

    on_startup = startup
    on_shutdown = shutdown

    # ========================================
    # Job Settings
    # ========================================
    job_timeout = 300
    keep_result = 3600
    max_tries = 3
    retry_delay = 60

    max_jobs = 5
    poll_delay = 0.5

    queue_name = "arq:queue"
    health_check_interval = 10
