from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.dependencies import init_access_control
from app.features.permissions.exceptions import (
    CacheUnavailableError,
    ForbiddenError,
    HierarchyIntegrityError,
    InvalidOperationError,
    NotFoundError,
)
from app.features.permissions.routes import router as rbac_router
from app.features.users.dependencies import get_authorization_header
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Dealer RBAC Backend",
    description="Multi-tenant effective-permission resolution with Appwrite authentication",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter

init_access_control(app, AsyncSessionLocal)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.exception_handler(NotFoundError)
async def not_found_handler(_request: Request, exc: NotFoundError):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(ForbiddenError)
async def forbidden_handler(_request: Request, exc: ForbiddenError):
    return JSONResponse({"detail": str(exc)}, status_code=403)


@app.exception_handler(InvalidOperationError)
async def invalid_operation_handler(_request: Request, exc: InvalidOperationError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(HierarchyIntegrityError)
async def hierarchy_integrity_handler(_request: Request, exc: HierarchyIntegrityError):
    log.critical(str(exc))
    return JSONResponse({"detail": f"{exc.tree} hierarchy is inconsistent"}, status_code=500)


@app.exception_handler(CacheUnavailableError)
async def cache_unavailable_handler(_request: Request, exc: CacheUnavailableError):
    log.error(f"Permission cache unavailable: {exc}")
    return JSONResponse({"detail": "Permission cache unavailable"}, status_code=503)


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Dealer RBAC Backend API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/rbac/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Effective permissions from inherited roles, assignments and overrides",
            "hierarchy": "Nested-set organizational units and role hierarchy per tenant",
            "constraints": "Time window, weekday, location and ownership conditions",
            "cache": "Two-tier permission cache with tenant-wide invalidation"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Access-control routes
app.include_router(rbac_router, prefix="/rbac", tags=["rbac"])
