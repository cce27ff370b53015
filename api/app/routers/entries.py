from fastapi import APIRouter, Depends

from worker.app.chain import resolve_path
from worker.app.store import MetadataStore

from ..deps import get_restore_dispatcher, get_store
from ..schemas import ChainEntryOut, QueuedOut, RestoreRequest

router = APIRouter(tags=["entries"])


@router.get("/volumes/{volume_name}/entries", response_model=list[ChainEntryOut])
def list_volume_entries(volume_name: str, include_deleted: bool = False, store: MetadataStore = Depends(get_store)):
    return store.list_entries(volume_name, include_deleted=include_deleted)


@router.get("/entries/{entry_id}", response_model=ChainEntryOut)
def read_entry(entry_id: int, store: MetadataStore = Depends(get_store)):
    return store.get_entry(entry_id)


@router.get("/entries/{entry_id}/path", response_model=list[ChainEntryOut])
def restore_path(entry_id: int, store: MetadataStore = Depends(get_store)):
    entry = store.get_entry(entry_id)
    return resolve_path(store.list_entries(entry.volume_name), entry.id)


@router.post("/entries/{entry_id}/restore", response_model=QueuedOut, status_code=202)
def trigger_restore(
    entry_id: int,
    payload: RestoreRequest,
    store: MetadataStore = Depends(get_store),
    dispatch=Depends(get_restore_dispatcher),
):
    entry = store.get_entry(entry_id)
    # Refuse broken chains up front; the worker checks again before replaying.
    resolve_path(store.list_entries(entry.volume_name), entry.id)
    task_id = dispatch(entry.id, payload.destination)
    return QueuedOut(entry_id=entry.id, task_id=task_id)
