"""Invitations API routes"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.security import require_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.projects import RespondInvitationRequest
from app.services.membership_service import list_pending_invitations, respond_to_invitation

router = APIRouter(prefix="/api/invitations", tags=["invitations"])
logger = logging.getLogger(__name__)


@router.get("")
def get_invitations(user: User = Depends(require_user), db: Session = Depends(get_db)):
    """Pending invitations addressed to the caller"""
    invitations = list_pending_invitations(user.id, db)
    return {"success": True, "invitations": invitations, "total_count": len(invitations)}


@router.post("/{project_id}/respond")
def respond_invitation(
    project_id: str,
    request_data: RespondInvitationRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    """Accept or decline an invitation"""
    membership = respond_to_invitation(project_id, user.id, request_data.action, db)
    return {
        "success": True,
        "message": f"Invitation {request_data.action}ed successfully",
        "membership": {
            "project_id": membership.project_id,
            "role": membership.role,
            "status": membership.status,
        }
    }
