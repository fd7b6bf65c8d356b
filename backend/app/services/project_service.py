"""Project service - project creation and listing"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.models.project import Project, VISIBILITIES
from app.models.project_member import MemberStatus, ProjectMember
from app.services.access_service import get_project, require_role
from app.utils.timestamps import ensure_utc, isoformat

logger = logging.getLogger(__name__)


def serialize_project(project: Project, role: str) -> Dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "visibility": project.visibility,
        "owner_id": project.owner_id,
        "user_role": role,
        "created_at": isoformat(project.created_at),
        "updated_at": isoformat(project.updated_at),
    }


def create_project(
    owner_id: str,
    name: str,
    db: Session,
    description: Optional[str] = None,
    visibility: str = "private"
) -> Project:
    """Create a project owned by ``owner_id``"""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Project name is required")
    if visibility not in VISIBILITIES:
        raise ValidationError(f"Invalid visibility. Must be one of: {', '.join(VISIBILITIES)}")

    project = Project(
        owner_id=owner_id,
        name=name,
        description=description,
        visibility=visibility,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    logger.info(f"User {owner_id} created project {project.id}")
    return project


def list_projects(user_id: str, db: Session) -> List[Dict[str, Any]]:
    """Projects the user owns or has joined, most recently updated first"""
    owned = db.query(Project).filter(Project.owner_id == user_id).all()
    memberships = db.query(ProjectMember).filter(
        ProjectMember.user_id == user_id,
        ProjectMember.status == MemberStatus.ACCEPTED.value,
    ).all()

    entries = {project.id: (project, "admin") for project in owned}
    for membership in memberships:
        if membership.project_id in entries or membership.project is None:
            continue
        entries[membership.project_id] = (membership.project, membership.role)

    ordered = sorted(entries.values(), key=lambda e: ensure_utc(e[0].updated_at), reverse=True)
    return [serialize_project(project, role) for project, role in ordered]


def get_project_for_user(project_id: str, user_id: str, db: Session) -> Dict[str, Any]:
    """Project details for anyone with a role on it"""
    project = get_project(project_id, db)
    grant = require_role(
        project, user_id, "viewer", db,
        message="Access denied: You are not a member of this project"
    )
    return serialize_project(project, grant.role)
