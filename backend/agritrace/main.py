from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agritrace.config import settings
from agritrace.middleware.exceptions import register_exception_handlers
from agritrace.routers import analytics, batches, health, stages
from agritrace.services.scheduler import lifespan

app = FastAPI(
    title="AgriTrace",
    description="Supply-chain stage traceability for harvested batches",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(stages.router, prefix="/api/stages", tags=["stages"])
app.include_router(batches.router, prefix="/api/batches", tags=["batches"])
app.include_router(analytics.router, prefix="/api/analytics", tags=["analytics"])
