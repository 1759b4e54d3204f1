import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ledgersync.config import get_settings
from ledgersync.app.routes import quickbooks, mappings, sync

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

app = FastAPI(
    title="LedgerSync API",
    description="Sync categorized bank statement transactions into QuickBooks Online",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(quickbooks.router, prefix="/api")
app.include_router(mappings.router, prefix="/api")
app.include_router(sync.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
