"""Admin router: moderation and dashboard."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import ADMIN_COOKIE_NAME, AdminContext, get_admin_context
from routers.rate_limit import rate_limit
from services.admin import authenticate_admin, get_dashboard_stats, list_users_with_usage
from services.block_list import block_account, block_identifiers, list_active_blocks, unblock_account
from services.session_token import create_admin_token

router = APIRouter()
logger = logging.getLogger(__name__)


class AdminLoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1, max_length=256)


class BlockRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class IdentifierBlockRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    session_id: Optional[str] = Field(default=None, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=500)


@router.post("/login")
async def admin_login(
    request: AdminLoginRequest,
    response: Response,
    _rate_limit: None = Depends(rate_limit("admin_login", limit=10, window_seconds=900)),
    db: AsyncSession = Depends(get_db),
):
    admin = await authenticate_admin(request.username.strip(), request.password, db)
    if not admin:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    session = create_admin_token(admin.id)
    response.set_cookie(
        ADMIN_COOKIE_NAME,
        session["token"],
        max_age=int(settings.ADMIN_SESSION_HOURS) * 3600,
        httponly=True,
        secure=settings.ENVIRONMENT.strip().lower() == "production",
        samesite="lax",
    )
    logger.info("Admin %s logged in", admin.username)
    return {
        "success": True,
        "token": session["token"],
        "expires_at": session["expires_at"],
        "admin": {"id": admin.id, "username": admin.username},
    }


@router.post("/logout")
async def admin_logout(response: Response):
    response.delete_cookie(ADMIN_COOKIE_NAME)
    return {"success": True}


@router.post("/users/{user_id}/block")
async def block_user(
    user_id: str,
    request: Optional[BlockRequest] = None,
    admin: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    entry = await block_account(
        user_id=user_id,
        admin_id=admin.admin_id,
        db=db,
        reason=request.reason if request else None,
    )
    return {"success": True, "block": entry}


@router.post("/users/{user_id}/unblock")
async def unblock_user(
    user_id: str,
    admin: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    deactivated = await unblock_account(user_id=user_id, admin_id=admin.admin_id, db=db)
    return {"success": True, "deactivated": deactivated}


@router.post("/blocks")
async def block_by_identifier(
    request: IdentifierBlockRequest,
    admin: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    entry = await block_identifiers(
        admin_id=admin.admin_id,
        db=db,
        email=request.email,
        session_id=request.session_id,
        reason=request.reason,
    )
    return {"success": True, "block": entry}


@router.get("/blocks")
async def active_blocks(
    limit: int = Query(default=100, ge=1, le=500),
    admin: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    return {"blocks": await list_active_blocks(db, limit=limit)}


@router.get("/users")
async def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    admin: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_users_with_usage(db, page=page, limit=limit)


@router.get("/stats")
async def stats(
    admin: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_dashboard_stats(db)
