from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import analyses, progress, runs, worker
from app.config import get_settings
from app.core.exceptions import AnalysisServiceError, analysis_error_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from app.core.json import CompactJSONResponse
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware

settings = get_settings()

app = FastAPI(title="Lens Analysis Service", default_response_class=CompactJSONResponse, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

app.add_middleware(
  CORSMiddleware,
  allow_origins=list(settings.allowed_origins),
  allow_credentials=True,
  allow_methods=["GET", "POST", "OPTIONS"],
  allow_headers=["content-type", "authorization", "x-session-id"],
  expose_headers=["content-length", "x-request-id"],
)


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(AnalysisServiceError, analysis_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(analyses.router, prefix="/v1/analyses", tags=["analyses"])
app.include_router(progress.router, prefix="/v1/progress", tags=["progress"])
app.include_router(runs.router, prefix="/v1", tags=["runs"])
app.include_router(worker.router, prefix="/worker", tags=["worker"])
