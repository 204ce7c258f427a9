from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from session_memory.api.dependencies import get_config, get_readonly_store
from session_memory.api.models import HealthResponse
from session_memory.api.routes.search import router as search_router
from session_memory.api.routes.status import router as status_router
from session_memory.errors import (
    ConfigurationError,
    NotIndexedError,
    ProviderError,
    StorageError,
)
from session_memory.health import collect_status
from session_memory.ingestion.storage import SessionStore
from session_memory.pipeline_config import MemoryConfig

app = FastAPI(
    title="Session Memory API",
    description="Hybrid retrieval over indexed conversation transcripts",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(search_router)
app.include_router(status_router)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(NotIndexedError)
async def not_indexed_handler(request: Request, exc: NotIndexedError) -> JSONResponse:
    return _error(409, exc)


@app.exception_handler(ConfigurationError)
async def configuration_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    return _error(503, exc)


@app.exception_handler(ProviderError)
async def provider_handler(request: Request, exc: ProviderError) -> JSONResponse:
    return _error(502, exc)


@app.exception_handler(StorageError)
async def storage_handler(request: Request, exc: StorageError) -> JSONResponse:
    return _error(500, exc)


@app.get("/health", response_model=HealthResponse)
def health(
    store: SessionStore = Depends(get_readonly_store),
    config: MemoryConfig = Depends(get_config),
) -> HealthResponse:
    status = collect_status(store, config)
    return HealthResponse(
        status=status.verdict,
        level=status.level,
        total_chunks=status.stats.total_chunks,
        total_sources=status.stats.total_sources,
        embedded_chunks=status.stats.embedded_chunks,
        failed_sources=status.stats.failed_sources,
    )
