from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from onechart.api import router as api_router
from onechart.auth import router as auth_router, require_user
from onechart.ai_gateway import AIGateway
from onechart.session_store import SqliteSessionStore
from onechart.services import ScribeService
from onechart import config
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("onechart")

app = FastAPI(
    title="OneChart",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.store = SqliteSessionStore(config.DB_PATH)
app.state.scribe = ScribeService(AIGateway(), app.state.store)


@app.get("/ping")
def ping():
    return {"status": "ok"}


@app.on_event("startup")
def startup_event():
    logger.info(
        f"OneChart backend started (db={config.DB_PATH} draft_model={config.DRAFT_MODEL} "
        f"transcribe_model={config.TRANSCRIBE_MODEL})"
    )


@app.on_event("shutdown")
async def shutdown_event():
    scribe: ScribeService = app.state.scribe
    pending = len(scribe.registry)
    if pending:
        logger.warning(f"Shutting down with {pending} session(s) still processing")
    await scribe.aclose()
    logger.info("OneChart backend stopped")


# ======================
# API ROUTES
# ======================
app.include_router(auth_router, prefix="/api")
app.include_router(api_router, prefix="/api", dependencies=[Depends(require_user)])
