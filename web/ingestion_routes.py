"""
Ingestion Routes - Crawl Triggers and Status Surface

Trigger routes run a crawl synchronously or hand it to the job scheduler.
Status routes are read-only projections of sources, health, jobs and
listings.

Access Control:
- Mutating routes require `Authorization: Bearer <CRON_SECRET>` when
  CRON_SECRET is configured
- Read-only routes are open, except the hosted-run routes, which call
  a credentialed service
"""

from __future__ import annotations

import hmac
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from adapters import supported_parsers
from ingestion.context import IngestionContext, get_ingestion_context
from ingestion.listings import SORT_OPTIONS, ListingQuery
from ingestion.schema import JobState, ListingStatus, utcnow
from ingestion.sources import SourceConfig
from utils.formatting import format_currency, format_percent


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api/ingestion", tags=["ingestion"])


def get_context() -> IngestionContext:
    return get_ingestion_context()


def require_cron_secret(
    authorization: Optional[str] = Header(None),
    context: IngestionContext = Depends(get_context),
) -> None:
    """
    Check the bearer secret for trigger routes.

    Raises:
        HTTPException(401) if a secret is configured and not presented
    """
    secret = context.config.cron_secret
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


# =============================================================================
# Request Models
# =============================================================================


class SourceUpsertRequest(BaseModel):
    """Body for creating or replacing a source definition."""

    name: str
    kind: str = Field(description="direct-html, run-based-service or api")
    connection: dict[str, Any]
    enabled: bool = True
    priority: int = Field(10, ge=0)
    policy: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


class RunRequest(BaseModel):
    """Body for starting a hosted run; every field is optional."""

    search_url: Optional[str] = Field(None, alias="searchUrl")
    borough: Optional[str] = None
    max_items: int = Field(100, alias="maxItems", ge=1, le=1000)


# =============================================================================
# Crawl Triggers
# =============================================================================


@router.post("/crawl/{source_id}", dependencies=[Depends(require_cron_secret)])
def trigger_crawl(
    source_id: str,
    max_pages: Optional[int] = Query(None, alias="maxPages", ge=1, le=50),
    max_listings: Optional[int] = Query(None, alias="maxListings", ge=1, le=5000),
    dry_run: bool = Query(False, alias="dryRun"),
    run_async: bool = Query(False, alias="async"),
    priority: Optional[int] = Query(None, ge=0),
    context: IngestionContext = Depends(get_context),
):
    """
    Crawl one source now, or schedule it as a background job.

    Synchronous responses carry the CrawlResult; async responses carry the
    job id (the id of the already-queued job if one exists). A synchronous
    crawl of a source with a job in flight is refused with 409.
    """
    source = context.registry.get_source(source_id)

    if run_async:
        job_id = context.scheduler.schedule_crawl(source_id, priority=priority)
        return JSONResponse(
            status_code=202,
            content={
                "message": f"Crawl scheduled for {source.name}",
                "jobId": job_id,
                "status": "scheduled",
            },
        )

    options = context.crawl_options(
        max_pages=max_pages,
        max_listings=max_listings,
        dry_run=dry_run,
    )
    result = context.scheduler.run_now(source_id, options)
    verb = "Dry run" if dry_run else "Crawl"
    return {
        "message": f"{verb} completed for {source.name}",
        "result": result.to_dict(),
    }


@router.get("/crawl/{source_id}")
def crawl_source_info(source_id: str, context: IngestionContext = Depends(get_context)):
    """Source definition with its health and scheduling state."""
    source = context.registry.get_source(source_id)
    summary = context.health.summary(source_id)
    cooldown = context.scheduler.cooldown_until(source_id)
    return {
        "source": source.to_dict(),
        "health": summary.to_dict(),
        "cooldownUntil": cooldown.isoformat() if cooldown else None,
    }


@router.post("/crawl", dependencies=[Depends(require_cron_secret)])
def trigger_all_crawls(
    run_async: bool = Query(False, alias="async"),
    limit: int = Query(3, ge=1, le=50),
    dry_run: bool = Query(False, alias="dryRun"),
    context: IngestionContext = Depends(get_context),
):
    """
    Crawl all enabled sources.

    Async schedules every enabled source in one batch; sync crawls the
    first `limit` sources in priority order.
    """
    if run_async:
        summary = context.scheduler.schedule_all_crawls()
        return JSONResponse(
            status_code=202,
            content={
                "message": f"Scheduled {summary.scheduled} crawl jobs",
                "status": "scheduled",
                **summary.to_dict(),
            },
        )

    sources = [s.id for s in context.registry.list_sources(enabled_only=True)][:limit]
    results = context.orchestrator.run_many(
        sources,
        context.crawl_options(dry_run=dry_run),
        run_crawl=context.scheduler.run_now,
    )
    return {
        "message": f"Crawled {len(results)} sources",
        "summary": {
            "sourcesCrawled": len(results),
            "totalFound": sum(r.listings_found for r in results),
            "totalNew": sum(r.new_listings for r in results),
            "totalDelisted": sum(r.delisted_listings for r in results),
        },
        "results": [r.to_dict() for r in results],
    }


@router.get("/crawl")
def crawl_overview(context: IngestionContext = Depends(get_context)):
    """Enabled sources in crawl order plus queue state."""
    counts = context.listings.count_active_by_source()
    enabled = [s for s in context.registry.status_report(counts) if s.enabled]
    return {
        "sources": [s.to_dict() for s in enabled],
        "queue": context.scheduler.queue_stats(),
    }


# =============================================================================
# Hosted Runs
# =============================================================================


@router.post("/sources/{source_id}/runs", dependencies=[Depends(require_cron_secret)])
def start_run(
    source_id: str,
    body: Optional[RunRequest] = None,
    context: IngestionContext = Depends(get_context),
):
    """
    Start a hosted run for a run-based source.

    The next crawl of the source ingests the run's dataset once it
    succeeds. Sources that are not run-based are refused with 422.
    """
    body = body or RunRequest()
    run_options = {"max_items": body.max_items}
    if body.search_url:
        run_options["search_url"] = body.search_url
    if body.borough:
        run_options["borough"] = body.borough

    run_id = context.orchestrator.trigger_run(source_id, run_options)
    return JSONResponse(
        status_code=202,
        content={
            "message": f"Run started for {source_id}",
            "runId": run_id,
            "status": "pending",
        },
    )


@router.get("/sources/{source_id}/runs/latest/items", dependencies=[Depends(require_cron_secret)])
def preview_latest_run(
    source_id: str,
    limit: int = Query(20, ge=1, le=200),
    context: IngestionContext = Depends(get_context),
):
    """Normalised items of the latest run's dataset. Nothing is stored."""
    records, errors = context.orchestrator.preview_dataset(source_id, limit)
    return {
        "count": len(records),
        "listings": [r.to_dict() for r in records],
        "errors": errors,
    }


@router.get("/sources/{source_id}/runs/{run_id}", dependencies=[Depends(require_cron_secret)])
def run_status(
    source_id: str,
    run_id: str,
    wait: float = Query(0, ge=0, le=300, description="Seconds to wait for the run to finish"),
    context: IngestionContext = Depends(get_context),
):
    status = context.orchestrator.run_status(source_id, run_id, wait_seconds=wait)
    return {"runId": run_id, "status": status.value}


# =============================================================================
# Jobs
# =============================================================================


@router.get("/jobs")
def list_jobs(
    limit: int = Query(50, ge=1, le=500),
    state: Optional[str] = Query(None),
    context: IngestionContext = Depends(get_context),
):
    job_state = None
    if state:
        try:
            job_state = JobState(state)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown job state: {state}")
    jobs = context.scheduler.list_jobs(limit=limit, state=job_state)
    return {
        "jobs": [j.to_dict() for j in jobs],
        "queue": context.scheduler.queue_stats(),
    }


@router.get("/jobs/{job_id}")
def get_job(job_id: str, context: IngestionContext = Depends(get_context)):
    job = context.scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job.to_dict()


@router.post("/jobs/process", dependencies=[Depends(require_cron_secret)])
def process_jobs(
    max_jobs: int = Query(5, alias="max", ge=1, le=50),
    context: IngestionContext = Depends(get_context),
):
    """Run ready jobs inline; for cron triggers when workers are not running."""
    processed = context.scheduler.run_pending(max_jobs=max_jobs)
    return {
        "processed": len(processed),
        "jobs": [j.to_dict() for j in processed],
    }


@router.post("/jobs/{job_id}/cancel", dependencies=[Depends(require_cron_secret)])
def cancel_job(job_id: str, context: IngestionContext = Depends(get_context)):
    job = context.scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    if not context.scheduler.cancel(job_id):
        raise HTTPException(
            status_code=409,
            detail=f"Job {job_id} is {job.state.value}; only queued jobs can be cancelled",
        )
    return context.scheduler.get_job(job_id).to_dict()


# =============================================================================
# Sources
# =============================================================================


@router.get("/sources")
def list_sources(
    enabled: bool = Query(False, description="Only enabled sources"),
    context: IngestionContext = Depends(get_context),
):
    counts = context.listings.count_active_by_source()
    statuses = {s.source_id: s for s in context.registry.status_report(counts)}
    sources = context.registry.list_sources(enabled_only=enabled)
    return {
        "sources": [
            {**s.to_dict(), "health": statuses[s.id].to_dict()}
            for s in sources
        ],
        "parsers": supported_parsers(),
    }


@router.put("/sources/{source_id}", dependencies=[Depends(require_cron_secret)])
def upsert_source(
    source_id: str,
    body: SourceUpsertRequest,
    context: IngestionContext = Depends(get_context),
):
    """Create or replace a source definition."""
    data = body.model_dump()
    data["id"] = source_id
    config = SourceConfig.from_dict(data)
    context.registry.upsert_source(config)
    return {"message": f"Saved source {source_id}", "source": config.to_dict()}


# =============================================================================
# Status
# =============================================================================


@router.get("/stats")
def stats(context: IngestionContext = Depends(get_context)):
    """Listing totals and per-source health."""
    now = utcnow()
    listing_stats = context.listings.stats(now)
    counts = context.listings.count_active_by_source()

    sources = []
    for status in context.registry.status_report(counts):
        entry = status.to_dict()
        if not status.enabled:
            entry["status"] = "disabled"
        sources.append(entry)

    return {
        "generatedAt": now.isoformat(),
        "listings": {
            **listing_stats.to_dict(),
            "dedupRateDisplay": format_percent(listing_stats.dedup_rate),
        },
        "sources": sources,
        "queue": context.scheduler.queue_stats(),
    }


@router.get("/listings")
def listings(
    source_id: Optional[str] = Query(None, alias="sourceId"),
    borough: Optional[str] = None,
    neighborhood: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    beds: Optional[int] = Query(None, ge=0, description="Minimum bedrooms"),
    max_beds: Optional[int] = Query(None, alias="maxBeds", ge=0),
    baths: Optional[float] = Query(None, ge=0, description="Minimum bathrooms"),
    no_fee_only: bool = Query(False, alias="noFeeOnly"),
    status: str = Query("active"),
    since: Optional[datetime] = None,
    sort: str = Query("newest"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    context: IngestionContext = Depends(get_context),
):
    """Canonical listings matching the filters."""
    if sort not in SORT_OPTIONS:
        raise HTTPException(status_code=400, detail=f"sort must be one of {', '.join(SORT_OPTIONS)}")
    try:
        listing_status = None if status == "all" else ListingStatus(status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    query = ListingQuery(
        source_id=source_id,
        borough=borough,
        neighborhood=neighborhood,
        min_price=min_price,
        max_price=max_price,
        min_beds=beds,
        max_beds=max_beds,
        min_baths=baths,
        no_fee=True if no_fee_only else None,
        status=listing_status,
        seen_since=since,
        sort=sort,
        limit=limit,
        offset=offset,
    )
    records = context.listings.query_listings(query)
    return {
        "count": len(records),
        "offset": offset,
        "listings": [
            {**r.to_dict(), "priceDisplay": format_currency(r.price)}
            for r in records
        ],
    }
