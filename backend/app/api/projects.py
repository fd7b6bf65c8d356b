"""Projects and project members API routes"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.security import require_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.projects import CreateProjectRequest, InviteMemberRequest, UpdateMemberRoleRequest
from app.services.membership_service import (
    invite_member, list_members, remove_member, update_member_role
)
from app.services.project_service import (
    create_project, get_project_for_user, list_projects, serialize_project
)

router = APIRouter(prefix="/api/projects", tags=["projects"])
logger = logging.getLogger(__name__)


@router.post("")
def create_project_route(
    request_data: CreateProjectRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    """Create a project owned by the caller"""
    project = create_project(
        user.id, request_data.name, db,
        description=request_data.description,
        visibility=request_data.visibility
    )
    return {"success": True, "project": serialize_project(project, "admin")}


@router.get("")
def list_projects_route(user: User = Depends(require_user), db: Session = Depends(get_db)):
    """Projects the caller owns or has joined"""
    projects = list_projects(user.id, db)
    return {"success": True, "projects": projects, "total_count": len(projects)}


@router.get("/{project_id}")
def get_project_route(project_id: str, user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {"success": True, "project": get_project_for_user(project_id, user.id, db)}


# ============================================================================
# MEMBERS
# ============================================================================

@router.get("/{project_id}/members")
def list_members_route(project_id: str, user: User = Depends(require_user), db: Session = Depends(get_db)):
    """Members of a project, owner included"""
    return {"success": True, **list_members(project_id, user.id, db)}


@router.post("/{project_id}/members")
def invite_member_route(
    project_id: str,
    request_data: InviteMemberRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    """Invite a user by email"""
    membership = invite_member(project_id, user.id, request_data.email, request_data.role, db)
    return {
        "success": True,
        "message": "Invitation sent successfully",
        "invitation": {
            "id": membership.id,
            "project_id": membership.project_id,
            "user_id": membership.user_id,
            "role": membership.role,
            "status": membership.status,
        }
    }


@router.patch("/{project_id}/members/{member_user_id}")
def update_member_role_route(
    project_id: str,
    member_user_id: str,
    request_data: UpdateMemberRoleRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    membership = update_member_role(project_id, user.id, member_user_id, request_data.role, db)
    return {
        "success": True,
        "message": "Member role updated successfully",
        "member": {
            "user_id": membership.user_id,
            "role": membership.role,
            "status": membership.status,
        }
    }


@router.delete("/{project_id}/members/{member_user_id}")
def remove_member_route(
    project_id: str,
    member_user_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    remove_member(project_id, user.id, member_user_id, db)
    return {"success": True, "message": "Member removed successfully"}
