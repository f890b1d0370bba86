import logging

from fastapi import FastAPI

from src.onboarding.api.v1.errors import onboarding_error_handler
from src.onboarding.api.v1.routes_onboarding import router as onboarding_router_v1
from src.onboarding.api.v1.routes_onboarding_async import router as onboarding_async_router_v1
from src.onboarding.api.v1.routes_summaries import router as summaries_router_v1
from src.onboarding.api.v1.routes_system import router as system_router_v1
from src.onboarding.api.v1.routes_voice import router as voice_router_v1
from src.onboarding.container import get_container
from src.onboarding.domain.errors import OnboardingError

logger = logging.getLogger("onboarding")

app = FastAPI(title="Onboarding Conversation API")
app.add_exception_handler(OnboardingError, onboarding_error_handler)


@app.on_event("startup")
async def on_startup() -> None:
    """Wire the container and start the stale reaper.

    With USE_SQL_REPOS enabled and a DATABASE_URL configured, SQL-backed
    repositories are used; otherwise the in-memory ones.
    """

    get_container().start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    get_container().stop()


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness check for the API root."""
    return {"status": "ok"}


# Versioned API routers
app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(onboarding_router_v1, prefix="/api/v1")
app.include_router(onboarding_async_router_v1, prefix="/api/v1")
app.include_router(voice_router_v1, prefix="/api/v1")
app.include_router(summaries_router_v1, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.onboarding.main:app", host="0.0.0.0", port=8000)
