from fastapi import FastAPI

from .routes import router

app = FastAPI(title="Jellypulse", description="Jellyfin session mirror and playback ledger")

# Include routes
app.include_router(router)
