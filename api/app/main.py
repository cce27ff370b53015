from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from worker.app.db import engine
from worker.app.errors import BrokenChainError, ConflictError, NotFoundError
from worker.app.logs import setup_logging
from worker.app.models import metadata

from .config import settings
from .routers import entries, environments, jobs, runs

app = FastAPI(title="DockBack API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"]
    if settings.dockback_base_url == "*"
    else [settings.dockback_base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.on_event("startup")
def startup():
    setup_logging()
    metadata.create_all(bind=engine)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
@app.exception_handler(BrokenChainError)
async def conflict_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def invalid_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


app.include_router(environments.router)
app.include_router(jobs.router)
app.include_router(entries.router)
app.include_router(runs.router)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response: Response = await call_next(request)
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "same-origin"
    if request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response
