from fastapi import FastAPI, HTTPException, Query, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from typing import Optional
import asyncio
import json
import logging
from datetime import datetime, timezone

from reservation_scraper.aggregator import StreamingAggregator, CancelToken
from reservation_scraper.availability import ReservationChecker
from reservation_scraper.cache import CacheStore
from reservation_scraper.config import ScraperConfig, PLATFORMS, load_config_from_env
from reservation_scraper.fetch import Fetcher
from reservation_scraper.normalize import normalize_name
from reservation_scraper.platforms import build_scrapers
from reservation_scraper.resolver import IdentityResolver
from reservation_scraper.scraper_logger import get_scraper_logger
from reservation_scraper.session import SessionManager, EnvAccountStore, ConfigurationError

from .models import (
    AvailabilitySearchRequest, AvailabilityCheckRequest, ResolveRequest, ResolveNamesRequest,
    ScoreLookupRequest, ResolveResponse, AccountValidationResponse, BrowseResponse
)
from .storage import Storage

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

NDJSON_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class Services:
    """Long-lived scraper components shared by all requests"""

    def __init__(self, config: Optional[ScraperConfig] = None, storage: Optional[Storage] = None):
        self.config = config or load_config_from_env()
        self.storage = storage
        self.caches = CacheStore(self.config)
        self.fetcher = Fetcher(self.config)
        self.sessions = SessionManager(self.config, self.fetcher, self.caches,
                                       accounts=storage or EnvAccountStore())
        self.scrapers = build_scrapers(self.config, self.fetcher, self.caches, self.sessions)
        self.resolver = IdentityResolver(self.config, self.fetcher, self.caches)
        self.aggregator = StreamingAggregator(
            self.config, self.scrapers, self.resolver,
            phone_lookup=storage.get_restaurant_phone if storage is not None else None,
        )
        self.checker = ReservationChecker(self.config, self.fetcher, self.caches)

    async def close(self):
        await self.fetcher.close()


services: Optional[Services] = None


def get_storage() -> Optional[Storage]:
    """Supabase storage when configured; accounts fall back to the environment otherwise"""
    try:
        return Storage()
    except ValueError as e:
        logger.warning(f"Supabase storage not configured, using environment accounts: {str(e).splitlines()[0]}")
        return None


def get_services() -> Services:
    """Get services instance, initializing if needed"""
    global services
    if services is None:
        services = Services(storage=get_storage())
        detail_logger = get_scraper_logger()
        logger.info(f"Detailed scraper logging initialized: {detail_logger.log_file}")
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if services is not None:
        await services.close()


app = FastAPI(
    title="Reservation Availability API",
    description="Restaurant availability across Tabelog, Omakase, TableCheck and TableAll with cross-platform matching",
    version="1.0.0",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler to ensure all errors return JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions and return JSON responses"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {str(exc)}"
        }
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors and return JSON responses"""
    return JSONResponse(
        status_code=422,
        content={
            "detail": exc.errors()
        }
    )


@app.get("/health")
@app.head("/health")
async def health_check():
    """Health check endpoint"""
    return JSONResponse(
        status_code=200,
        content={
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


async def watch_disconnect(request: Request, cancel: CancelToken, interval: float = 0.5):
    """Cancel the stream once the client goes away"""
    while not cancel.cancelled:
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling stream")
            cancel.cancel()
            return
        await asyncio.sleep(interval)


def ndjson_stream(events, request: Request, cancel: CancelToken):
    async def event_generator():
        watcher = asyncio.create_task(watch_disconnect(request, cancel))
        try:
            async for event in events:
                yield json.dumps(event, ensure_ascii=False) + "\n"
        except Exception as exc:
            logger.error(f"Streaming failed: {exc}", exc_info=True)
            yield json.dumps({"type": "error", "message": str(exc)}) + "\n"
        finally:
            watcher.cancel()

    return StreamingResponse(event_generator(), media_type="application/x-ndjson", headers=NDJSON_HEADERS)


@app.post("/api/availability/search")
async def availability_search(body: AvailabilitySearchRequest, request: Request,
                              svc: Services = Depends(get_services)):
    """
    Stream availability for each requested date as newline-delimited JSON.

    Events: progress, date (one per date, in completion order), done,
    then platform-update for background cross-platform matches.
    """
    cancel = CancelToken()
    query = body.to_query()
    logger.info(f"Availability search: {query.platform} {query.city} {query.dates[:14]}")
    return ndjson_stream(svc.aggregator.stream(query, cancel), request, cancel)


@app.post("/api/availability/check")
async def availability_check(body: AvailabilityCheckRequest, svc: Services = Depends(get_services)):
    """Tabelog reservation calendar for one restaurant"""
    if "tabelog.com" not in body.url:
        raise HTTPException(status_code=400, detail="url must be a Tabelog restaurant URL")
    result = await svc.checker.check(
        body.url,
        refresh=bool(body.refresh),
        date_from=body.date_from,
        date_to=body.date_to,
        meals=body.meals,
        party_size=body.party_size,
    )
    return result.model_dump(mode='json')


@app.get("/api/restaurants/browse", response_model=BrowseResponse)
async def browse_restaurants(
    city: str = Query("tokyo"),
    page: int = Query(1, ge=1),
    refresh: bool = Query(False),
    svc: Services = Depends(get_services),
):
    """One page of Tabelog's ranked list for a city"""
    result = await svc.scrapers["tabelog"].browse(city, page=page, refresh=refresh)
    return BrowseResponse(
        city=city.lower(),
        page=page,
        has_next_page=result.has_next_page,
        restaurants=[r.model_dump(mode='json') for r in result.restaurants],
    )


@app.post("/api/restaurants/resolve", response_model=ResolveResponse)
async def resolve_restaurant(body: ResolveRequest, svc: Services = Depends(get_services)):
    """Cross-platform links and Tabelog score for one restaurant"""
    phone = body.phone
    if not phone and svc.storage is not None:
        phone = svc.storage.get_restaurant_phone(body.name)

    reference = {
        'name': body.name,
        'city': body.city or 'tokyo',
        'area': body.area,
        'address': body.address,
        'phone': phone,
        'links': body.links or {},
        'tabelog_url': (body.links or {}).get('tabelog'),
    }
    identity = await svc.resolver.resolve(reference)
    if identity.score is None:
        score = await svc.resolver.lookup_score(body.name, body.city or 'tokyo')
        identity.score = score.get('score')
        identity.tabelog_url = identity.tabelog_url or score.get('tabelog_url')
    return ResolveResponse(**identity.model_dump())


@app.post("/api/restaurants/resolve-names")
async def resolve_names(body: ResolveNamesRequest, request: Request, svc: Services = Depends(get_services)):
    """Stream one result event per restaurant name as newline-delimited JSON"""
    cancel = CancelToken()
    return ndjson_stream(svc.aggregator.resolve_names(body.names, body.city or 'tokyo', cancel), request, cancel)


@app.post("/api/restaurants/scores")
async def lookup_scores(body: ScoreLookupRequest, svc: Services = Depends(get_services)):
    """Tabelog scores for a list of names; stored scores are used first"""
    city = body.city or 'tokyo'
    stored = svc.storage.get_stored_scores() if svc.storage is not None else {}
    results = {}
    remaining = []
    for name in body.names:
        known = stored.get(normalize_name(name))
        if known:
            results[name] = {**known, 'stage': 'stored'}
        else:
            remaining.append(name)
    if remaining:
        results.update(await svc.resolver.lookup_scores(remaining, city))
    return {"city": city, "scores": results}


@app.post("/api/accounts/{platform}/validate", response_model=AccountValidationResponse)
async def validate_account(platform: str, svc: Services = Depends(get_services)):
    """Log in with the platform's configured account; a failing account is marked invalid"""
    if platform not in PLATFORMS:
        raise HTTPException(status_code=404, detail=f"Unknown platform: {platform}")
    try:
        result = await svc.sessions.validate_account(platform)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AccountValidationResponse(platform=platform, **result)
