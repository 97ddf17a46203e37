"""FastAPI pickup status API."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bot.models.base import init_db

from web.api.routes import router as pickups_router
from web.api.settings_routes import router as settings_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


app = FastAPI(title="Pickup Bot API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(pickups_router)
app.include_router(settings_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
