"""Background jobs executed by the rq worker.

Cleanup sweeps over a large bucket can take a while, so the API can hand
them to the ``cleanup`` queue instead of running them inside a request.
"""

from __future__ import annotations

from typing import List, Optional

from .cleanup import Reconciler
from .config import Settings
from .storage import build_storage_client


def run_cleanup(files_to_keep: List[str], min_age_seconds: Optional[int] = None) -> dict:
    """Run one reconcile pass with settings read from the worker environment."""
    settings = Settings.from_env()
    reconciler = Reconciler(build_storage_client(settings), grace_seconds=settings.cleanup_grace_seconds)
    return reconciler.reconcile(files_to_keep, min_age_seconds=min_age_seconds).to_dict()
