import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from credlife.config import settings
from credlife.database import init_db
from credlife.routers import auth, health, two_factor

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title=f"{settings.app_name} Credentials")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api")
app.include_router(auth.router, prefix="/api")
app.include_router(two_factor.router, prefix="/api")


@app.on_event("startup")
def startup() -> None:
    init_db()


@app.get("/")
def root():
    return {"status": "Credential service running"}
