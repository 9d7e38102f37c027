"""Main FastAPI application entry point."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from activity_audit.database import engine, Base, settings
from activity_audit.api.routes import router
from activity_audit.logging_config import configure_logging
# Import models to register them with SQLAlchemy Base
from activity_audit.models.log import ActivityLog

configure_logging(settings.log_level)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Activity Audit",
    description="Records user and content activity as aggregated, queryable audit logs.",
    version="0.1.0"
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Activity Audit"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Activity Audit"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
