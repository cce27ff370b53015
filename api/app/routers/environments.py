from fastapi import APIRouter, Depends

from worker.app.store import MetadataStore

from ..deps import get_store
from ..schemas import EnvironmentConfig, EnvironmentIn, EnvironmentOut

router = APIRouter(prefix="/environments", tags=["environments"])


@router.get("/", response_model=list[EnvironmentOut])
def list_environments(store: MetadataStore = Depends(get_store)):
    return store.list_environments()


@router.post("/", response_model=EnvironmentOut, status_code=201)
def create_environment(payload: EnvironmentIn, store: MetadataStore = Depends(get_store)):
    return store.create_environment(payload.name, payload.config)


@router.get("/{environment_id}", response_model=EnvironmentOut)
def read_environment(environment_id: int, store: MetadataStore = Depends(get_store)):
    return store.get_environment(environment_id)


@router.put("/{environment_id}/config", response_model=EnvironmentOut)
def update_environment_config(environment_id: int, payload: EnvironmentConfig, store: MetadataStore = Depends(get_store)):
    return store.update_environment_config(environment_id, payload.config)


@router.delete("/{environment_id}", status_code=204)
def delete_environment(environment_id: int, store: MetadataStore = Depends(get_store)):
    store.delete_environment(environment_id)
