"""Dependency injection for FastAPI endpoints"""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from dunning_scheduler.infrastructure.database.session import get_db
from dunning_scheduler.services.scheduler import EngineDependencies, NotificationScheduler


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_engine_dependencies(request: Request) -> EngineDependencies:
    """Engine collaborators created with the app"""
    return request.app.state.deps


def get_scheduler(
    db: Session = Depends(get_db),
    deps: EngineDependencies = Depends(get_engine_dependencies),
) -> NotificationScheduler:
    """Provide the scheduling engine bound to the request's session"""
    return NotificationScheduler(db, deps)


def verify_api_key(
    x_api_key: Optional[str] = Header(default=None),
    deps: EngineDependencies = Depends(get_engine_dependencies),
) -> None:
    """Reject requests without the configured X-API-Key (no-op when none is configured)"""
    expected = deps.settings.api_key
    if not expected:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
