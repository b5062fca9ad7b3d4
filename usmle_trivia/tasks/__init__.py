"""
Background Tasks Module

Task definitions for the ARQ worker.

- session_tasks.py: recovery of quiz completions that were not saved

Task functions receive ARQ's `ctx` dict:
- ctx['redis']: Redis connection for the worker
- ctx['job_id']: Unique ID of this job
- ctx['job_try']: Which retry attempt this is (1, 2, 3...)

Running Workers:
---------------
    arq usmle_trivia.worker.WorkerSettings
"""

from usmle_trivia.tasks.session_tasks import (
    recover_pending_completions,
    recover_pending_completions_task,
)

__all__ = [
    "recover_pending_completions",
    "recover_pending_completions_task",
]
