from fastapi import FastAPI

from .api.batch_routers import router as batch_router
from .config import settings
from .observability.logging_setup import setup_logging

# Configure logging from settings (LOG_LEVEL in .env)
setup_logging()

app = FastAPI(title=settings.app_name)
app.include_router(batch_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}
