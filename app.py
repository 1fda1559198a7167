import os
import re
import time
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional, Set
import httpx
from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from loguru import logger
from dotenv import load_dotenv

# Import our modules
from graph.cancellation import CancellationToken
from graph.events import to_sse
from graph.workflow import ListRequest, generate_list
from tools.bigquery import BigQuerySource
from tools.errors import PersistenceError
from tools.idempotency import RunLock
from tools.lead_store import LeadStore
from tools.reoon import ReoonVerifier
from tools.settings import Settings, load_settings

# Load environment variables
load_dotenv()

# Configure logging
logger.add("logs/app.log", rotation="1 day", retention="7 days", level="INFO")
logger.add(
    "logs/verification.log", rotation="1 day", retention="7 days", level="INFO",
    filter=lambda record: record["extra"].get("channel") == "verification",
)
logger.add(
    "logs/bigquery.log", rotation="1 day", retention="7 days", level="INFO",
    filter=lambda record: record["extra"].get("channel") == "bigquery",
)

SUPPRESSION_SYNC_CHUNK = 500
SAMPLE_LIST_LIMIT = 20
SAMPLE_NAME_JUNK = re.compile(r"[^a-zA-Z0-9_.\-]")
EMAIL_SPLIT = re.compile(r"[\r\n,;]+")

# Active runs by list name, for the cancel endpoint
ACTIVE_RUNS: Dict[str, CancellationToken] = {}
# Detached run tasks; referenced here so they are not garbage collected mid-run
_background_runs: Set[asyncio.Task] = set()

_store: Optional[LeadStore] = None
# Shared by every verifier; opened and closed with the app
_http_client: Optional[httpx.AsyncClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _http_client, _store
    _http_client = httpx.AsyncClient()
    logger.info("Lead List Generator started")
    yield
    for token in list(ACTIVE_RUNS.values()):
        token.cancel("server shutting down")
    if _background_runs:
        await asyncio.gather(*_background_runs, return_exceptions=True)
    await _http_client.aclose()
    _http_client = None
    if _store is not None:
        await _store.close()
        _store = None
    logger.info("Lead List Generator stopped")


# Initialize FastAPI app
app = FastAPI(
    title="Lead List Generator",
    description="Adaptive lead list generation with email verification",
    version="1.0.0",
    lifespan=lifespan,
)


def get_settings() -> Settings:
    return load_settings()


def get_store(settings: Settings = Depends(get_settings)) -> LeadStore:
    global _store
    if _store is None:
        _store = LeadStore.from_url(settings.redis_url)
    return _store


def get_source(settings: Settings = Depends(get_settings)):
    return BigQuerySource(
        project_id=settings.bq_project_id,
        query_template=settings.bq_query_template,
        location=settings.bq_location,
        timeout=settings.bq_timeout,
        credentials_json=settings.google_credentials_json,
    )


def get_verifier(settings: Settings = Depends(get_settings)):
    return ReoonVerifier(
        settings.reoon_api_key,
        mode=settings.reoon_mode,
        timeout=settings.reoon_timeout,
        client=_http_client,
    )


def parse_email_list(text: str) -> list:
    """Emails from an uploaded text body: newline/comma separated, header rows dropped."""
    emails = []
    for part in EMAIL_SPLIT.split(text or ""):
        email = part.strip().strip('"').strip().lower()
        if "@" not in email:
            continue
        emails.append(email)
    return list(dict.fromkeys(emails))


@app.get("/api/lists/generate")
async def generate(
    listName: str = "",
    gender: str = "All",
    target: int = 100,
    industryFilter: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    store: LeadStore = Depends(get_store),
    source=Depends(get_source),
    verifier=Depends(get_verifier),
):
    """
    Generate a verified lead list, streaming progress as Server-Sent Events.

    The run continues in the background if the client goes away; it is
    cancelled, persists what it has and emits `done`.
    """
    request = ListRequest(
        list_name=listName.strip(),
        target=target,
        gender=gender,
        industry_filter=(industryFilter or "").strip() or None,
    )
    try:
        request.validate()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Received list request: {request}")
    queue: asyncio.Queue = asyncio.Queue()
    token = CancellationToken()
    registered = request.list_name not in ACTIVE_RUNS
    if registered:
        ACTIVE_RUNS[request.list_name] = token

    async def emit(event) -> None:
        await queue.put(event)

    async def run() -> None:
        try:
            await generate_list(
                request, settings, source, verifier, store, emit,
                token=token, lock=RunLock(store.r),
            )
        finally:
            if registered and ACTIVE_RUNS.get(request.list_name) is token:
                del ACTIVE_RUNS[request.list_name]
            await queue.put(None)

    task = asyncio.create_task(run())
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)

    async def event_stream():
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield to_sse(event)
        finally:
            if not task.done():
                logger.info(f"Client disconnected from \"{request.list_name}\", stopping run")
                token.cancel("client disconnected")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/api/lists/{list_name}/cancel")
async def cancel_list(list_name: str):
    """Stop an active run; it still saves what it found and emits `done`."""
    token = ACTIVE_RUNS.get(list_name)
    if token is None:
        raise HTTPException(status_code=404, detail=f"No active run for list '{list_name}'")
    token.cancel("stopped by user")
    return {"status": "cancelling", "listName": list_name}


@app.post("/api/suppression/upload")
async def upload_suppression(req: Request, store: LeadStore = Depends(get_store)):
    """Add emails from a plain-text body (one per line or comma separated) to the suppression list."""
    body = (await req.body()).decode("utf-8", errors="ignore")
    emails = parse_email_list(body)
    if not emails:
        raise HTTPException(status_code=400, detail="No email addresses found in upload")

    try:
        added = await store.add_suppressed(emails, source="uploaded")
    except PersistenceError as e:
        return JSONResponse(status_code=503, content={"status": "error", "message": str(e)})

    logger.info(f"Suppression upload: {added} new of {len(emails)} emails")
    return {"status": "success", "received": len(emails), "added": added, "skipped": len(emails) - added}


@app.post("/api/suppression/sync-from-leads")
async def sync_suppression(store: LeadStore = Depends(get_store)):
    """Copy every stored lead email into the suppression list."""
    scanned = 0
    added = 0
    chunk = []
    try:
        async for email in store.iter_lead_emails():
            chunk.append(email)
            if len(chunk) >= SUPPRESSION_SYNC_CHUNK:
                added += await store.add_suppressed(chunk, source="synced-from-leads")
                scanned += len(chunk)
                chunk = []
        if chunk:
            added += await store.add_suppressed(chunk, source="synced-from-leads")
            scanned += len(chunk)
    except PersistenceError as e:
        return JSONResponse(status_code=503, content={"status": "error", "message": str(e)})

    logger.info(f"Suppression sync: {added} new of {scanned} stored leads")
    return {"status": "success", "scanned": scanned, "added": added}


@app.get("/api/suppression/stats")
async def suppression_stats(store: LeadStore = Depends(get_store)):
    try:
        return await store.suppression_stats()
    except PersistenceError as e:
        return JSONResponse(status_code=503, content={"status": "error", "message": str(e)})


@app.delete("/api/suppression/clear")
async def clear_suppression(store: LeadStore = Depends(get_store)):
    """Remove every email from the suppression list."""
    try:
        deleted = await store.clear_suppression()
    except PersistenceError as e:
        return JSONResponse(status_code=503, content={"status": "error", "message": str(e)})
    return {"success": True, "deleted": deleted}


@app.get("/api/reoon-samples")
async def list_samples(settings: Settings = Depends(get_settings)):
    """Newest verification audit samples."""
    if not os.path.isdir(settings.samples_dir):
        return {"files": []}
    files = sorted((f for f in os.listdir(settings.samples_dir) if f.endswith(".csv")), reverse=True)
    return {"files": files[:SAMPLE_LIST_LIMIT]}


@app.get("/api/reoon-samples/{filename}")
async def download_sample(filename: str, settings: Settings = Depends(get_settings)):
    """Download one audit sample as a CSV attachment."""
    filename = SAMPLE_NAME_JUNK.sub("", filename)
    path = os.path.join(settings.samples_dir, filename)
    if not filename or not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, media_type="text/csv", filename=filename)


@app.get("/api/leads/stats")
async def lead_stats(store: LeadStore = Depends(get_store)):
    """Stored lead count per list tag."""
    try:
        return {"lists": await store.list_stats(), "total": await store.count_leads()}
    except PersistenceError as e:
        return JSONResponse(status_code=503, content={"status": "error", "message": str(e)})


@app.get("/health")
async def health(store: LeadStore = Depends(get_store)):
    """Health check endpoint."""
    connected = await store.ping()
    leads = None
    if connected:
        try:
            leads = await store.count_leads()
        except PersistenceError:
            connected = False
    return {
        "status": "healthy" if connected else "degraded",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "redis": "connected" if connected else "disconnected",
            "workflow": "ready"
        },
        "leads": leads,
        "activeRuns": sorted(ACTIVE_RUNS),
    }


# Error handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Lead List Generator")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
