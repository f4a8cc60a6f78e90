"""Image generation router guarded by the entitlement core."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import get_db, get_session_maker
from models.generation_attempt import ATTEMPT_FAILED, ATTEMPT_SUCCEEDED
from routers.auth_scope import get_requester
from services.admission import DENIED_STORAGE, admit, get_entitlement_status
from services.allocation import CostClass
from services.block_list import is_blocked
from services.errors import StorageUnavailable
from services.identity import AuthenticatedRequester, RequesterIdentity, client_network_address, client_session_id
from services.image_generation import ImageGenerator, ImageInput, build_prompt, get_image_generator
from services.usage_ledger import record_attempt_end

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
GENERATION_MODES = {"text-to-image", "image-editing"}
LIMIT_REACHED_MESSAGE = "You have reached your generation limit. Sign in or buy credits to continue."


def _limit_response(remaining, is_authenticated: bool) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "message": LIMIT_REACHED_MESSAGE,
            "remaining": remaining,
            "is_authenticated": is_authenticated,
        },
    )


async def _read_image(upload: UploadFile) -> ImageInput:
    content_type = (upload.content_type or "").lower()
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid file type. Use JPEG, PNG, WebP or GIF.")
    content = await upload.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded image is empty.")
    if len(content) > settings.MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="Image too large. Maximum size is 10MB.")
    return upload.filename or "image.png", content, content_type


@router.get("/usage")
async def usage(
    identity: RequesterIdentity = Depends(get_requester),
    db: AsyncSession = Depends(get_db),
):
    status = await get_entitlement_status(identity, db)
    return status.as_dict()


@router.get("/block-status")
async def block_status(
    request: Request,
    identity: RequesterIdentity = Depends(get_requester),
    db: AsyncSession = Depends(get_db),
):
    """Only the caller's own identifiers are checked."""
    blocked = await is_blocked(identity, db, session_id=client_session_id(request))
    return {"blocked": blocked}


@router.post("/generate")
async def generate(
    request: Request,
    prompt: str = Form(...),
    mode: str = Form(default="text-to-image"),
    cost_class: CostClass = Form(default=CostClass.FULL),
    image1: Optional[UploadFile] = File(default=None),
    image2: Optional[UploadFile] = File(default=None),
    identity: RequesterIdentity = Depends(get_requester),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    generator: ImageGenerator = Depends(get_image_generator),
):
    prompt = prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt is required.")
    if len(prompt) > settings.MAX_PROMPT_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Prompt is too long. Maximum {settings.MAX_PROMPT_LENGTH} characters.",
        )
    if mode not in GENERATION_MODES:
        raise HTTPException(status_code=400, detail="Unsupported generation mode.")

    images: List[ImageInput] = []
    for upload in (image1, image2):
        if upload is not None and upload.filename:
            images.append(await _read_image(upload))
    if mode == "image-editing" and not images:
        raise HTTPException(status_code=400, detail="Image editing requires at least one image.")
    if cost_class == CostClass.HALF and not images:
        raise HTTPException(status_code=400, detail="Partial regeneration requires the previous image.")

    is_authenticated = isinstance(identity, AuthenticatedRequester)
    session_id = client_session_id(request)
    if await is_blocked(identity, db, session_id=session_id):
        logger.info("Blocked requester %s denied generation", identity.requester_key)
        return _limit_response(0, is_authenticated)

    try:
        decision = await admit(
            identity,
            cost_class,
            db,
            network_address=client_network_address(request),
            session_id=session_id,
            mode=mode,
            user_agent=request.headers.get("user-agent"),
        )
    except StorageUnavailable:
        logger.exception("Admission could not be recorded for %s", identity.requester_key)
        raise HTTPException(status_code=503, detail="Usage tracking is temporarily unavailable.")

    if not decision.allowed:
        if decision.denial_reason == DENIED_STORAGE:
            raise HTTPException(status_code=503, detail="Usage tracking is temporarily unavailable.")
        return _limit_response(decision.remaining, decision.is_authenticated)

    full_prompt = build_prompt(prompt, image_count=len(images), partial=cost_class == CostClass.HALF)
    try:
        result = await generator.generate(prompt=full_prompt, images=images)
    except asyncio.CancelledError:
        logger.warning("Generation %s cancelled by client disconnect", decision.attempt_id)
        await asyncio.shield(
            record_attempt_end(
                decision.attempt_id,
                ATTEMPT_FAILED,
                error_message="Client disconnected before completion.",
                session_maker=session_maker,
            )
        )
        raise
    except Exception as exc:
        logger.exception("Generation %s failed", decision.attempt_id)
        await record_attempt_end(
            decision.attempt_id,
            ATTEMPT_FAILED,
            error_message=str(exc),
            session_maker=session_maker,
        )
        raise HTTPException(status_code=500, detail="Image generation failed. Please try again.")

    await record_attempt_end(decision.attempt_id, ATTEMPT_SUCCEEDED, session_maker=session_maker)
    return {
        "url": result.url,
        "prompt": prompt,
        "description": result.description,
        "remaining": decision.remaining,
        "attempt_id": decision.attempt_id,
    }
