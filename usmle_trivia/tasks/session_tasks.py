"""
Session Recovery Tasks

Background task that finishes quiz completions which could not be
saved at the time (backend down, retries exhausted). The unsaved
summary lives in the session's draft; this task replays it.
"""

import logging
from typing import Any, Dict, Optional

from usmle_trivia.backend.base import QuizBackend
from usmle_trivia.core.retry import RetryPolicy
from usmle_trivia.schemas.session import SessionState
from usmle_trivia.services.draft_store import DraftStore
from usmle_trivia.services.quiz_session import QuizSessionManager

logger = logging.getLogger(__name__)


def _needs_completion(state: SessionState, failed_stage: Optional[SessionState]) -> bool:
    if state == SessionState.COMPLETING:
        return True
    return state == SessionState.FAILED and failed_stage == SessionState.COMPLETING


async def recover_pending_completions(
    backend: QuizBackend,
    draft_store: DraftStore,
    retry_policy: Optional[RetryPolicy] = None,
) -> Dict[str, int]:
    """
    Retry every draft whose completion was never saved.

    Drafts of quizzes still in progress are left alone; they expire
    with their TTL.

    Returns:
        Counts: checked, recovered, failed
    """
    retry_policy = retry_policy or RetryPolicy()
    result = {"checked": 0, "recovered": 0, "failed": 0}

    for session_id in await draft_store.list_session_ids():
        snapshot = await draft_store.load(session_id)
        if snapshot is None or not _needs_completion(snapshot.state, snapshot.failed_stage):
            continue
        result["checked"] += 1

        manager = QuizSessionManager.restore(
            snapshot, backend, retry_policy=retry_policy, draft_store=draft_store
        )
        state = await manager.finish_completion()
        await manager.flush()

        if state == SessionState.COMPLETED:
            result["recovered"] += 1
        else:
            result["failed"] += 1

    if result["checked"]:
        logger.info(
            f"Completion recovery: {result['recovered']} recovered, "
            f"{result['failed']} still pending"
        )
    return result


# ============================================================
# ARQ TASK
# ============================================================

async def recover_pending_completions_task(ctx: Dict[str, Any]) -> Dict[str, int]:
    """
    ARQ entry point (cron and on-demand).

    Args:
        ctx: ARQ context; startup() puts `backend` and `draft_store` in it
    """
    job_id = ctx.get("job_id", "unknown")
    logger.info(f"Running completion recovery (job: {job_id})")
    return await recover_pending_completions(
        ctx["backend"], ctx["draft_store"], ctx.get("retry_policy")
    )
