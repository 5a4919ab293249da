from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from finsync.database import Base, engine
from finsync.logging_config import setup_logging
from finsync.app.routes import connections, webhooks

setup_logging()

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="finsync API",
    description="Bank aggregation sync for Pluggy Open Finance connections",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(connections.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
