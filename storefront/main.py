# storefront/main.py
import os
import logging

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from starlette.middleware.cors import CORSMiddleware

from storefront.api import admin, appeals, auth, credits, generate, root, watermark
from storefront.core.config import WATERMARK_WORKER_ENABLED
from storefront.core.database import engine as default_engine, SessionLocal, init_models
from storefront.core.errors import add_error_handlers
from storefront.services.fulfillment_service import FulfillmentClient
from storefront.services.job_service import JobManager, JobReaper
from storefront.services.pricing_service import PricingProvider
from storefront.services.watermark_queue import WatermarkQueue, WatermarkWorker

# ================== LOGGING ==================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("storefront")


def create_app(
    engine: AsyncEngine = None,
    session_factory: async_sessionmaker = None,
    client=None,
    background: bool = WATERMARK_WORKER_ENABLED,
) -> FastAPI:
    engine = engine or default_engine
    session_factory = session_factory or SessionLocal
    client = client or FulfillmentClient()

    app = FastAPI(title="Storefront Credits API")

    pricing = PricingProvider(session_factory)
    worker = WatermarkWorker(session_factory, client)
    job_manager = JobManager(session_factory, pricing, client)

    app.state.session_factory = session_factory
    app.state.pricing = pricing
    app.state.job_manager = job_manager
    app.state.watermark_worker = worker
    app.state.watermark_queue = WatermarkQueue(session_factory, pricing, worker=worker if background else None)
    app.state.job_reaper = JobReaper(job_manager)

    # ================== ROUTES ==================

    app.include_router(root.router)
    app.include_router(auth.router)
    app.include_router(credits.router)
    app.include_router(credits.config_router)
    app.include_router(generate.router)
    app.include_router(watermark.router)
    app.include_router(appeals.router)
    app.include_router(admin.router)

    add_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ================== LIFECYCLE ==================

    @app.on_event("startup")
    async def startup():
        await init_models(engine)
        await pricing.seed_costs()
        if background:
            worker.start()
            app.state.job_reaper.start()
        logger.info(f"Storefront started (background workers: {'on' if background else 'off'})")

    @app.on_event("shutdown")
    async def shutdown():
        if background:
            await worker.stop()
            await app.state.job_reaper.stop()
        await engine.dispose()

    return app


app = create_app()
