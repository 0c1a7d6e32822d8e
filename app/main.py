"""
FastAPI application for ephemeral text and file sharing.
Security-hardened version with rate limiting, CORS, and input validation.
"""
import asyncio
import contextlib
import os
import logging
from datetime import datetime
from typing import Optional
from contextlib import asynccontextmanager
from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, UploadFile, File, Form, HTTPException, Request, Query
from fastapi.responses import FileResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from access_control import AccessDecision
from blob_store import LocalBlobStore
from cleanup import cleanup_loop
from database import Database
from errors import InvalidShareError, TransientError
from item_record import utcnow
from models import ClaimRequest, ClaimResponse, ContentView, LinkListResponse, ShareResponse
from security import (
    get_caller_identity,
    sanitize_filename,
)
from share_manager import DeleteOutcome, FileUpload, ShareManager

# ============ ENVIRONMENT CONFIG ============
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
PRODUCTION_DOMAIN = os.getenv("PRODUCTION_DOMAIN", "vault.example.com")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

# Configure logging
logging.basicConfig(level=logging.DEBUG if DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

# Rate limiter setup
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


# ============ LIFESPAN CONTEXT ============
@asynccontextmanager
async def lifespan(app):
    """Open the database, start the cleanup worker, release both on shutdown."""
    db = Database()
    await db.connect()
    blobs = LocalBlobStore()
    app.state.shares = ShareManager(db, blobs)
    cleanup_task = asyncio.create_task(cleanup_loop(db, blobs))
    logger.info("Share service started successfully")
    try:
        yield
    finally:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        await db.close()
        logger.info("Share service shutting down")


app = FastAPI(title="Vault", docs_url=None, redoc_url=None, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(InvalidShareError)
async def invalid_share_handler(request: Request, exc: InvalidShareError):
    return JSONResponse(status_code=400, content={"error": exc.message})


@app.exception_handler(TransientError)
async def transient_error_handler(request: Request, exc: TransientError):
    logger.error(f"Transient failure on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=503,
        content={"error": "Service temporarily unavailable, please retry"},
    )


# CORS Configuration - production origins only
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "ALLOWED_ORIGINS",
        f"https://{PRODUCTION_DOMAIN},https://www.{PRODUCTION_DOMAIN}",
    ).split(",")
    if origin.strip()
] + (["http://localhost:5173", "http://127.0.0.1:5173"] if DEBUG else [])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        # API only: nothing here is meant to be rendered by a browser
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        # Shared content must never be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"
        if not DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

app.add_middleware(SecurityHeadersMiddleware)

# Trusted Host Middleware - prevent host header attacks
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")
    if host.strip()
] + [PRODUCTION_DOMAIN, f"*.{PRODUCTION_DOMAIN}"]
app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)


DENY_RESPONSES = {
    AccessDecision.NOT_FOUND: (404, "Content not found or has been deleted"),
    AccessDecision.EXPIRED: (410, "This link has expired"),
    AccessDecision.EXHAUSTED: (410, "This link has reached its maximum view count"),
    AccessDecision.SECRET_REQUIRED: (401, "Password required"),
    AccessDecision.BAD_SECRET: (401, "Incorrect password"),
}


def get_shares(request: Request) -> ShareManager:
    return request.app.state.shares


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidShareError("Invalid expiry date format")


def _parse_max_views(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise InvalidShareError("Max views must be a positive number")


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}


@app.post("/api/upload", status_code=201, response_model=ShareResponse)
@limiter.limit("10/minute")  # Rate limit: 10 shares per minute
async def create_share(
    request: Request,
    type: str = Form(...),
    content: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    expires_at: Optional[str] = Form(None),
    max_views: Optional[str] = Form(None),
    is_one_time: bool = Form(False),
    link_name: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    shares: ShareManager = Depends(get_shares),
    identity: Optional[str] = Depends(get_caller_identity),
):
    """Create a new share."""
    upload = None
    if type == "file" and file is not None:
        data = await file.read()
        upload = FileUpload(
            data=data,
            filename=file.filename or "unnamed",
            content_type=file.content_type or "application/octet-stream",
        )

    created = await shares.create_item(
        kind=type,
        content=content,
        upload=upload,
        secret=password or None,
        expires_at=_parse_expiry(expires_at),
        max_views=_parse_max_views(max_views),
        is_one_time=is_one_time,
        owner_id=identity,
        display_name=link_name,
    )
    return ShareResponse(
        unique_id=created.id,
        url=str(request.base_url) + f"view/{created.id}",
        expires_at=created.expires_at,
    )


@app.get("/api/content/{item_id}", response_model=ContentView)
@limiter.limit("30/minute")  # Rate limit: 30 access attempts per minute
async def access_share(
    request: Request,
    item_id: str,
    password: Optional[str] = Query(None),
    shares: ShareManager = Depends(get_shares),
):
    """Access a share by id. Each successful call counts as one view."""
    result = await shares.access_item(item_id, password)
    if not result.allowed:
        status_code, message = DENY_RESPONSES[result.decision]
        body = {"error": message, "reason": result.decision.value}
        if result.decision is AccessDecision.SECRET_REQUIRED:
            body["requires_password"] = True
        return JSONResponse(status_code=status_code, content=body)

    view = result.view
    if view.file_locator:
        view.file_url = str(request.url_for("download_blob", locator=view.file_locator))
    return view


@app.get("/api/blobs/{locator}", name="download_blob")
@limiter.limit("60/minute")  # Rate limit file downloads
async def download_blob(
    request: Request,
    locator: str,
    filename: str = Query("download"),
    shares: ShareManager = Depends(get_shares),
):
    """Stream the file payload of an item that may still be downloaded."""
    file_path = await shares.resolve_blob(locator)
    if file_path is None:
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(
        path=file_path,
        filename=sanitize_filename(filename),
        media_type="application/octet-stream"
    )


@app.delete("/api/delete/{item_id}")
async def delete_share(
    item_id: str,
    shares: ShareManager = Depends(get_shares),
    identity: Optional[str] = Depends(get_caller_identity),
):
    """Manually delete content."""
    outcome = await shares.delete_item(item_id, identity)
    if outcome is DeleteOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Content not found or already deleted")
    if outcome is DeleteOutcome.FORBIDDEN:
        raise HTTPException(status_code=403, detail="You do not have permission to delete this content")
    return {"success": True, "message": "Content deleted successfully"}


def require_identity(identity: Optional[str] = Depends(get_caller_identity)) -> str:
    if identity is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity


@app.get("/api/my-links", response_model=LinkListResponse)
async def my_links(
    shares: ShareManager = Depends(get_shares),
    identity: str = Depends(require_identity),
):
    """List the caller's live items."""
    return LinkListResponse(links=await shares.list_items(identity))


@app.put("/api/my-links/claim", response_model=ClaimResponse)
async def claim_links(
    body: ClaimRequest,
    shares: ShareManager = Depends(get_shares),
    identity: str = Depends(require_identity),
):
    """Attach anonymous items created before login to the caller."""
    result = await shares.claim_items(body.link_ids, identity)
    claimed = sorted(result.claimed)
    return ClaimResponse(claimed_count=len(claimed), claimed_ids=claimed)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
