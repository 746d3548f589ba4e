from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from recipe_ingest.api.deps import get_services
from recipe_ingest.api.routes import ingest, recipes, tasks
from recipe_ingest.config import settings
from recipe_ingest.errors import IngestError


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    services = get_services()
    services.start_background_jobs()
    yield
    # Shutdown
    await services.shutdown()


app = FastAPI(
    title="Recipe Ingest",
    description="Recipe ingestion pipeline with review, similarity guardrail and normalization",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IngestError)
async def ingest_error_handler(request: Request, exc: IngestError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"code": "INVALID_REQUEST", "message": problems})


# Routes
app.include_router(tasks.router)
app.include_router(ingest.router)
app.include_router(recipes.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "recipe-ingest"}
