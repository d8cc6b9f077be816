import logging
from datetime import datetime
from typing import Callable, List
from fastapi import FastAPI, HTTPException, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import BASE_URL, LOG_LEVEL, REDIRECT_DELAY_SECONDS, STORAGE_KEY
from db import SessionLocal, init_models
from events import log_event
from links import ResolveStatus, format_validity, is_expired, summarize
from redirect import DeferredResolution, resolve_unless_abandoned
from schemas import (
    ExpiredResponse,
    LinkRecord,
    LinkView,
    ShortenRequest,
    StatsResponse,
    ValidationErrorResponse,
)
from store import LinkStore, PersistenceError, utcnow

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("url_shortener")

app = FastAPI(title="URL Shortener Service", description="Short links with expiry windows and click analytics.")


async def get_db():
    async with SessionLocal() as session:
        yield session


def get_storage_key() -> str:
    return STORAGE_KEY


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_redirect_delay() -> float:
    return REDIRECT_DELAY_SECONDS


def get_store(
    db: AsyncSession = Depends(get_db),
    key: str = Depends(get_storage_key),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> LinkStore:
    return LinkStore(db, key=key, clock=clock)


@app.on_event("startup")
async def on_startup():
    await init_models()


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(f"Persistence failure on {request.url.path}: {exc}")
    log_event("PERSISTENCE_ERROR", {"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def to_view(record: LinkRecord, now: datetime) -> LinkView:
    return LinkView(
        id=record.id,
        original_url=record.original_url,
        short_code=record.short_code,
        short_url=f"{BASE_URL}/{record.short_code}",
        created_at=record.created_at,
        expires_at=record.expires_at,
        is_custom_code=record.is_custom_code,
        click_count=record.click_count,
        click_events=record.click_events,
        expired=is_expired(record, now),
        validity=format_validity(record.created_at, record.expires_at),
    )


@app.get("/health")
def health_check():
    logger.info("Health check endpoint called.")
    return {"status": "ok"}


@app.post(
    "/shorten",
    response_model=LinkView,
    status_code=201,
    responses={422: {"model": ValidationErrorResponse}},
)
async def shorten_url(req: ShortenRequest, store: LinkStore = Depends(get_store)):
    logger.info(f"Shorten API called with url={req.url}, custom_code={req.custom_code}, validity={req.validity_minutes}")
    result = await store.create(req.url, req.custom_code, req.validity_minutes)
    if not result.ok:
        logger.warning(f"Shorten rejected: {result.errors}")
        return JSONResponse(status_code=422, content=ValidationErrorResponse(errors=result.errors).model_dump())
    logger.info(f"Shorten API response: code={result.record.short_code}, url={result.record.original_url}")
    return to_view(result.record, store.clock())


@app.get("/links", response_model=List[LinkView])
async def list_links(store: LinkStore = Depends(get_store)):
    now = store.clock()
    return [to_view(record, now) for record in await store.list_links()]


@app.get("/links/{link_id}", response_model=LinkView)
async def get_link(link_id: str, store: LinkStore = Depends(get_store)):
    record = await store.get_link(link_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Link not found.")
    return to_view(record, store.clock())


@app.delete("/links/{link_id}", status_code=204)
async def delete_link(link_id: str, store: LinkStore = Depends(get_store)):
    logger.info(f"Delete API called with id={link_id}")
    await store.delete(link_id)
    return Response(status_code=204)


@app.get("/stats", response_model=StatsResponse)
async def get_stats(store: LinkStore = Depends(get_store)):
    now = store.clock()
    records = await store.list_links()
    summary = summarize(records, now)
    return StatsResponse(
        **summary.model_dump(),
        links=[to_view(record, now) for record in records],
    )


@app.get("/{code}")
async def redirect(
    code: str,
    request: Request,
    store: LinkStore = Depends(get_store),
    delay: float = Depends(get_redirect_delay),
):
    logger.info(f"Redirect API called with code={code}")
    deferred = DeferredResolution(store, code, source=request.headers.get("referer"), delay=delay)
    resolution = await resolve_unless_abandoned(deferred, request.is_disconnected)
    if resolution is None:
        # client left before the delay elapsed; nothing was read or recorded
        return Response(status_code=499)
    if resolution.status is ResolveStatus.NOT_FOUND:
        logger.warning(f"Redirect failed: code={code} not found")
        raise HTTPException(status_code=404, detail="URL not found")
    if resolution.status is ResolveStatus.EXPIRED:
        logger.warning(f"Redirect refused: code={code} expired at {resolution.record.expires_at}")
        body = ExpiredResponse(detail="This URL has expired", link=to_view(resolution.record, store.clock()))
        return JSONResponse(status_code=410, content=body.model_dump(mode="json", by_alias=True))
    logger.info(f"Redirecting to url={resolution.original_url} for code={code}")
    return RedirectResponse(resolution.original_url)
