"""
Sweep Router — run one scheduler sweep on demand.

Same sweep the Celery beat entry triggers every few minutes; useful for
operations and for environments without a beat process.
"""

from typing import Any

from fastapi import APIRouter, Depends

from api.deps import get_current_user, get_sink, get_store
from notifications import NotificationSink
from scheduling.sweep import Scheduler
from store.record_store import RecordStore

router = APIRouter(prefix="/api/v1/sweeps", tags=["sweeps"])


@router.post("")
async def run_sweep(
    store: RecordStore = Depends(get_store),
    sink: NotificationSink = Depends(get_sink),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    """Run every scheduler job once and report what happened."""
    try:
        result = await Scheduler(store, sink).run_sweep()
    finally:
        await sink.close()
    return result.to_dict()
