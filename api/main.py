"""FastAPI application for the EKS blue/green rollout control plane."""

import logging

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI

from api.routes.configs import router as configs_router
from api.routes.promotions import router as promotions_router
from api.routes.rollouts import router as rollouts_router
from api.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="EKS blue/green rollouts",
    description="Provision a wave of EKS environments, validate their health "
    "and promote one of them to production traffic after manual approval.",
    version="1.0.0",
)

app.include_router(configs_router)
app.include_router(rollouts_router)
app.include_router(promotions_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
