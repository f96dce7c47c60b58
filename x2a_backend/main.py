from fastapi import FastAPI
from typing import Optional
import asyncio
import logging

from .auth import (
    DiscoveryService,
    HeaderIdentityProvider,
    IdentityProvider,
    PermissionEvaluator,
    StaticDiscoveryService,
    StaticPermissionEvaluator,
)
from .config import Settings, get_settings
from .database import Base, create_engine, create_session_factory
from .errors import register_exception_handlers
from .routers import collect_artifacts, modules, projects
from .routers.common import RouterDeps
from .services.kube_service import KubeService
from .services.store import MigrationStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[MigrationStore] = None,
    kube_service: Optional[KubeService] = None,
    identity: Optional[IdentityProvider] = None,
    permissions: Optional[PermissionEvaluator] = None,
    discovery: Optional[DiscoveryService] = None,
) -> FastAPI:
    """
    Composition root: wire settings, store, cluster gateway and collaborators.

    Every collaborator can be overridden; defaults are built from settings.
    """
    settings = settings or get_settings()
    configure_logging(settings)
    settings.validate_required()

    engine = None
    if store is None:
        engine = create_engine(settings.database_url)
        store = MigrationStore(create_session_factory(engine))

    deps = RouterDeps(
        settings=settings,
        store=store,
        kube_service=kube_service or KubeService(settings),
        identity=identity or HeaderIdentityProvider(),
        permissions=permissions or StaticPermissionEvaluator(settings.admin_user_set),
        discovery=discovery or StaticDiscoveryService(settings.x2a_base_url),
    )

    app = FastAPI(title="X2A Migration API")
    app.state.deps = deps

    register_exception_handlers(app)

    app.include_router(projects.router)
    app.include_router(modules.router)
    app.include_router(collect_artifacts.router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "x2a-backend"}

    if engine is not None:
        @app.on_event("startup")
        async def startup():
            # Retry database connection up to 5 times with exponential backoff
            max_retries = 5
            for attempt in range(max_retries):
                try:
                    async with engine.begin() as conn:
                        await conn.run_sync(Base.metadata.create_all)
                    logger.info("Database tables created successfully")
                    break
                except Exception as e:
                    if attempt < max_retries - 1:
                        wait_time = 2 ** attempt
                        logger.warning(f"Database connection attempt {attempt + 1} failed: {type(e).__name__}: {e}")
                        await asyncio.sleep(wait_time)
                    else:
                        logger.error(f"Failed to connect to database after {max_retries} attempts: {type(e).__name__}: {e}")
                        raise

        @app.on_event("shutdown")
        async def shutdown():
            await engine.dispose()

    logger.info(f"X2A backend ready - namespace: {settings.k8s_namespace}, image: {settings.image}")
    return app


def main() -> None:
    import uvicorn

    uvicorn.run("x2a_backend.main:create_app", factory=True, host="0.0.0.0", port=8000)
