"""
auth/maintenance.py -- Periodic housekeeping, off the request path.

Two jobs:
  run_revocation_sweep()  delete revocation entries whose token has expired
  run_attempt_cleanup()   delete login-attempt records past the retention window

maintenance_loop() runs one job forever as an asyncio task started in the app
lifespan. The job itself is blocking storage work, so each cycle runs in a
worker thread. A failed cycle is logged and the loop keeps going. Shutdown
cancels the task and awaits it; a cycle already in its worker thread is
allowed to finish first.

Sweeps have no ordering guarantee against request traffic. That is fine:
is_revoked() always reads committed state, and a sweep only ever removes
entries for tokens that can no longer validate.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from auth.attempts import BruteForceGuard
from auth.revocation import RevocationStore

logger = logging.getLogger("warden.maintenance")


def run_revocation_sweep(store: RevocationStore) -> int:
    removed = store.sweep()
    logger.info("Revocation sweep removed %d expired entries", removed)
    return removed


def run_attempt_cleanup(guard: BruteForceGuard) -> int:
    removed = guard.cleanup()
    logger.info("Login-attempt cleanup removed %d stale records", removed)
    return removed


async def maintenance_loop(fn: Callable[[], int], interval: float, name: str) -> None:
    """Call fn every interval seconds until cancelled.

    Cancelling the loop while fn is running in its worker thread waits for fn
    to return before the CancelledError propagates, so shutdown can dispose
    the stores once the task is done.
    """
    while True:
        await asyncio.sleep(interval)
        job = asyncio.ensure_future(asyncio.to_thread(fn))
        try:
            await asyncio.shield(job)
        except asyncio.CancelledError:
            await asyncio.wait({job})
            if job.exception() is not None:
                logger.error("Maintenance job %s failed during shutdown", name)
            raise
        except Exception:
            logger.exception("Maintenance job %s failed; retrying next cycle", name)
