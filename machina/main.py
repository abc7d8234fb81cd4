import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from machina.config import settings
from machina.core.exceptions import OrchestrationError
from machina.database.supabase_client import SupabaseClient, ping
from machina.modules.deployments.coordinator import OrchestrationCoordinator
from machina.modules.resources import routes as resources_routes
from machina.modules.deployments import routes as deployments_routes
from machina.modules.credentials import routes as credentials_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(OrchestrationError)
async def orchestration_exception_handler(request: Request, exc: OrchestrationError):
    logger.warning(f"{request.method} {request.url.path} rejected ({exc.code}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class SecurityHeadersMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].extend([
                    (b"X-Content-Type-Options", b"nosniff"),
                    (b"X-Frame-Options", b"DENY"),
                ])
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include module routes
app.include_router(resources_routes.router, prefix="/api/v1")
app.include_router(deployments_routes.router, prefix="/api/v1")
app.include_router(credentials_routes.router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup")
    if getattr(app.state, "coordinator", None) is None:
        # Workflows write state outside any request, so they use the service-role client
        app.state.coordinator = OrchestrationCoordinator(SupabaseClient.get_service_client())
    app.state.coordinator.start()
    logger.info(f"Orchestration engine started: {app.state.coordinator.health()}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown")
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        coordinator.stop()


@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.app_name}", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        return {"status": "starting", "tool_available": False}
    details = coordinator.health()
    return {
        "status": "healthy" if details["tool_available"] else "degraded",
        **details,
    }


@app.get("/ready")
@limiter.exempt
async def ready():
    """Readiness check: coordinator running and the store reachable."""
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None or not ping(coordinator.deployments.supabase):
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return {"status": "ready"}
