import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from doubt_solver.api import auth, conversations, doubts, uploads
from doubt_solver.api.deps import build_services
from doubt_solver.config import CORS_ORIGINS, MONGO_DB_NAME, MONGO_URI
from doubt_solver.database.mongo import close_mongo_connection, connect_to_mongo
from doubt_solver.errors import register_exception_handlers
from doubt_solver.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="AI Doubt Solver")

# CORS middleware setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


# MongoDB connection and worker hooks
@app.on_event("startup")
async def startup_event():
    db = await connect_to_mongo(MONGO_URI, MONGO_DB_NAME)
    services = build_services(db)
    await services.documents.ensure_indexes()
    await services.conversations.ensure_indexes()
    await services.users.ensure_indexes()
    app.state.services = services

    await services.queue.start()
    await services.queue.recover()
    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.queue.stop()
    await close_mongo_connection()


# Include routers
app.include_router(uploads.router, prefix="/api/upload", tags=["Upload"])
app.include_router(doubts.router, prefix="/api/doubt", tags=["Doubts"])
app.include_router(conversations.router, prefix="/api/conversations", tags=["Conversations"])
app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/")
async def root():
    return {"message": "API is running."}
