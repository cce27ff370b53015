
from fastapi import APIRouter, Depends

from worker.app.entities import RunKind
from worker.app.store import MetadataStore

from ..config import settings
from ..deps import get_restore_dispatcher, get_store
from ..schemas import QueuedOut, RunRecordOut

router = APIRouter(prefix="/runs", tags=["runs"])


@router.get("/", response_model=list[RunRecordOut])
def list_runs(
    job_id: int | None = None,
    kind: RunKind | None = None,
    limit: int | None = None,
    store: MetadataStore = Depends(get_store),
):
    return store.list_runs(job_id=job_id, kind=kind, limit=limit or settings.dockback_history_limit)


@router.get("/{run_id}", response_model=RunRecordOut)
def read_run(run_id: int, store: MetadataStore = Depends(get_store)):
    return store.get_run(run_id)


@router.post("/{run_id}/resume", response_model=QueuedOut, status_code=202)
def resume_restore(run_id: int, store: MetadataStore = Depends(get_store), dispatch=Depends(get_restore_dispatcher)):
    run = store.get_run(run_id)
    if run.kind != RunKind.RESTORE:
        raise ValueError(f"run {run_id} is not a restore run")
    task_id = dispatch(None, None, resume_run_id=run.id)
    return QueuedOut(entry_id=run.target_entry_id, task_id=task_id)
