"""
FastAPI routes for the generation pipeline orchestrator.

Cron Endpoints:
  POST /cron/sweep                             — Run one sweep over active instances

Project Endpoints:
  POST  /projects                              — Create instance (paid models charged up front)
  GET   /projects/{id}                         — Get instance + segments
  PATCH /projects/{id}/segments/{index}        — Regenerate a segment's frame / video
  POST  /projects/{id}/segments/{index}/approve — Approve a segment for video generation
  POST  /projects/{id}/download                — Record a download (free models charged once)

Credit Endpoints:
  GET /credits/{user_id}                       — Current balance
  GET /credits/{user_id}/transactions          — Ledger history, newest first
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from .context import PipelineContext
from .errors import PipelineError
from .models import (
    ApproveSegmentRequest,
    CreditBalanceResponse,
    CreditTransaction,
    DownloadRequest,
    DownloadResponse,
    ProjectCreateRequest,
    ProjectResponse,
    RegenerateSegmentRequest,
    SegmentStatusResponse,
    SweepResult,
)
from .project_service import ProjectService
from .segments import SegmentComposer
from .sweep import SweepScheduler

logger = logging.getLogger(__name__)


def _context(request: Request) -> PipelineContext:
    return request.app.state.context


def _http_error(e: PipelineError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


# ═════════════════════════════════════════════════════════════════════════════
# Cron Router
# ═════════════════════════════════════════════════════════════════════════════

cron_router = APIRouter(prefix="/cron", tags=["cron"])


@cron_router.post("/sweep", response_model=SweepResult)
async def run_sweep(request: Request):
    """Advance every due instance by one sweep. Called by an external timer."""
    try:
        return await SweepScheduler(_context(request)).run_sweep()
    except PipelineError as e:
        logger.error(f"Sweep aborted: {e.message}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Sweep crashed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


# ── A. Create ────────────────────────────────────────────────────────────────

@project_router.post("", response_model=ProjectResponse)
async def create_project(body: ProjectCreateRequest, request: Request):
    """
    Create a workflow instance; the next sweep picks it up.

    Errors:
      - 400: Missing inputs or segment prompts
      - 402: Insufficient credits
    """
    try:
        return await ProjectService(_context(request)).create_instance(body)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Project create failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ── B. Read ──────────────────────────────────────────────────────────────────

@project_router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str, request: Request, user_id: str = Query(...)):
    try:
        return await ProjectService(_context(request)).get_project(project_id, user_id)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Project fetch failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ── C. Segment Regeneration ──────────────────────────────────────────────────

@project_router.patch("/{project_id}/segments/{segment_index}", response_model=SegmentStatusResponse)
async def regenerate_segment(
    project_id: str,
    segment_index: int,
    body: RegenerateSegmentRequest,
    request: Request,
):
    """
    Regenerate one segment's first frame, video, or both.

    Errors:
      - 400: Video requested without a first frame
      - 402: Insufficient credits
      - 403: Not your project
      - 404: Project or segment not found
      - 409: Stage already running, or the previous continuation frame is missing
      - 500: Persistence failure (charges refunded)
    """
    try:
        return await SegmentComposer(_context(request)).regenerate_segment(project_id, segment_index, body)
    except PipelineError as e:
        logger.warning(f"[{project_id}] segment {segment_index} regenerate rejected: {e.message}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"[{project_id}] segment {segment_index} regenerate failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@project_router.post("/{project_id}/segments/{segment_index}/approve", response_model=SegmentStatusResponse)
async def approve_segment(project_id: str, segment_index: int, body: ApproveSegmentRequest, request: Request):
    """Allow the sweep to start this segment's video."""
    try:
        return await SegmentComposer(_context(request)).approve_segment_video(
            project_id, segment_index, body.user_id
        )
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"[{project_id}] segment {segment_index} approve failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ── D. Download ──────────────────────────────────────────────────────────────

@project_router.post("/{project_id}/download", response_model=DownloadResponse)
async def download_project(project_id: str, body: DownloadRequest, request: Request):
    """
    Return the final video URL, charging free-generation models on first download.

    Errors:
      - 400: Video not ready
      - 402: Insufficient credits
    """
    try:
        return await ProjectService(_context(request)).record_download(project_id, body.user_id)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"[{project_id}] download failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Credits Router
# ═════════════════════════════════════════════════════════════════════════════

credits_router = APIRouter(prefix="/credits", tags=["credits"])


@credits_router.get("/{user_id}", response_model=CreditBalanceResponse)
async def get_credit_balance(user_id: str, request: Request):
    try:
        balance = await _context(request).ledger.get_balance(user_id)
    except PipelineError as e:
        raise _http_error(e)
    return CreditBalanceResponse(user_id=user_id, balance=balance)


@credits_router.get("/{user_id}/transactions", response_model=list[CreditTransaction])
async def list_credit_transactions(user_id: str, request: Request, limit: int = Query(50, ge=1, le=200)):
    try:
        return await _context(request).ledger.list_transactions(user_id, limit)
    except PipelineError as e:
        raise _http_error(e)
