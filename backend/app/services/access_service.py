"""Access service - effective role resolution for projects

Every membership and project operation goes through ``resolve_access``. The
owner is never stored as a member row, so ownership and membership are
modelled as separate grant types and resolved in one place.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from app.core.errors import AuthorizationError, NotFoundError
from app.models.project import Project
from app.models.project_member import MemberStatus, ProjectMember

logger = logging.getLogger(__name__)

ROLE_NONE = "none"
ROLE_RANK = {ROLE_NONE: 0, "viewer": 1, "editor": 2, "admin": 3}


@dataclass(frozen=True)
class OwnerGrant:
    """The caller owns the project"""
    project: Project

    @property
    def role(self) -> str:
        return "admin"


@dataclass(frozen=True)
class MemberGrant:
    """The caller holds an accepted membership row"""
    project: Project
    membership: ProjectMember

    @property
    def role(self) -> str:
        return self.membership.role


@dataclass(frozen=True)
class NoAccess:
    project: Project

    @property
    def role(self) -> str:
        return ROLE_NONE


Grant = Union[OwnerGrant, MemberGrant, NoAccess]


def get_project(project_id: str, db: Session, for_update: bool = False) -> Project:
    """Load a project or raise NotFoundError"""
    query = db.query(Project).filter(Project.id == project_id)
    if for_update:
        query = query.with_for_update()
    project = query.first()
    if not project:
        raise NotFoundError("Project not found")
    return project


def resolve_access(project: Project, user_id: str, db: Session, for_update: bool = False) -> Grant:
    """Work out what ``user_id`` is allowed to do on ``project``.

    Re-reads the store on every call. With ``for_update`` the caller's membership
    row is locked until the surrounding transaction ends, so a concurrent role
    change or removal cannot slip in between the check and the write.
    """
    if user_id == project.owner_id:
        return OwnerGrant(project)

    query = db.query(ProjectMember).filter(
        ProjectMember.project_id == project.id,
        ProjectMember.user_id == user_id,
    )
    if for_update:
        query = query.with_for_update()
    membership = query.first()

    if membership and membership.status == MemberStatus.ACCEPTED.value:
        return MemberGrant(project, membership)
    return NoAccess(project)


def resolve_role(project: Project, user_id: str, db: Session) -> str:
    """Effective role: 'admin', 'editor', 'viewer' or 'none'"""
    return resolve_access(project, user_id, db).role


def has_role(grant: Grant, minimum: str) -> bool:
    return ROLE_RANK.get(grant.role, 0) >= ROLE_RANK[minimum]


def require_role(
    project: Project,
    user_id: str,
    minimum: str,
    db: Session,
    for_update: bool = False,
    message: Optional[str] = None
) -> Grant:
    """Resolve the caller's grant and raise AuthorizationError below ``minimum``"""
    grant = resolve_access(project, user_id, db, for_update=for_update)
    if not has_role(grant, minimum):
        logger.info(
            f"User {user_id} denied on project {project.id}: "
            f"role {grant.role}, needs {minimum}"
        )
        raise AuthorizationError(message or "Insufficient permissions for this project")
    return grant
