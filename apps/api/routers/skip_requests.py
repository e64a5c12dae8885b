"""
Skip Requests API Router

Intercessors file requests; admins approve or reject them.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional

from core.auth import get_current_user, require_admin
from core.database import get_db
from models import Intercessor
from schemas import SkipRequestCreate, SkipRequestDecision, SkipRequestResponse
from services.skip_requests import decide_skip_request, list_skip_requests, submit_skip_request

router = APIRouter(prefix="/v1/skip-requests", tags=["Skip Requests"])


@router.post("", response_model=SkipRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_skip_request(
    body: SkipRequestCreate,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    return submit_skip_request(db, current_user.id, body.skip_days, body.reason, slot_id=body.slot_id)


@router.get("", response_model=List[SkipRequestResponse])
async def get_skip_requests(
    status_filter: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    """
    Own requests; admins see everyone's.
    """
    user_id = None if current_user.role == "admin" else current_user.id
    return list_skip_requests(db, user_id=user_id, status=status_filter)


@router.post("/{request_id}/decision", response_model=SkipRequestResponse)
async def decide(
    request_id: int,
    body: SkipRequestDecision,
    db: Session = Depends(get_db),
    admin: Intercessor = Depends(require_admin)
):
    return decide_skip_request(db, request_id, body.approve, admin_comment=body.admin_comment)
