"""Membership service - invitations and project membership state machine

Invitations and memberships share the ``project_members`` table:

    pending -> accepted | declined
    accepted -> (row deleted on removal)

Each operation authorizes and writes inside one transaction. Transitions are
conditional UPDATE/DELETE statements keyed on the expected prior status; a
zero row count means someone else moved the row first.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError
)
from app.core.metrics import membership_actions_counter
from app.models.project import Project
from app.models.project_member import MemberRole, MemberStatus, ProjectMember
from app.services.access_service import get_project, require_role, resolve_access, has_role
from app.services.user_service import describe_user, get_user_by_email
from app.utils.timestamps import ensure_utc, isoformat

logger = logging.getLogger(__name__)

ROLES = tuple(r.value for r in MemberRole)
RESPONSE_ACTIONS = ("accept", "decline")


def validate_role(role: Optional[str]) -> str:
    if role not in ROLES:
        raise ValidationError("Invalid role specified")
    return role


def _count(action: str, outcome: str):
    membership_actions_counter.labels(action=action, outcome=outcome).inc()


def _find_membership(project_id: str, user_id: str, db: Session) -> Optional[ProjectMember]:
    return db.query(ProjectMember).filter(
        ProjectMember.project_id == project_id,
        ProjectMember.user_id == user_id,
    ).first()


# ============================================================================
# INVITE
# ============================================================================

def invite_member(project_id: str, inviter_id: str, email: str, role: str, db: Session) -> ProjectMember:
    """Invite a user (by email) to a project with the given role.

    Requires the inviter to resolve to admin. A declined invitation is reopened
    as pending with the new role; a pending or accepted row is a conflict.

    Raises:
        ValidationError: invalid role
        NotFoundError: project or invitee missing
        AuthorizationError: inviter is not an admin
        ConflictError: invitee already a member or already invited
    """
    try:
        project = get_project(project_id, db)
        require_role(
            project, inviter_id, "admin", db, for_update=True,
            message="Access denied: You do not have permission to invite members"
        )
        validate_role(role)

        invitee = get_user_by_email(email, db)
        if not invitee:
            raise NotFoundError("User not found with the provided email address")

        if invitee.id == project.owner_id:
            raise ConflictError("User is already a member of this project")

        existing = _find_membership(project.id, invitee.id, db)
        if existing and existing.status == MemberStatus.ACCEPTED.value:
            raise ConflictError("User is already a member of this project")
        if existing and existing.status == MemberStatus.PENDING.value:
            raise ConflictError("User already has a pending invitation to this project")

        if existing:
            # Declined: reopen only if nobody else touched it meanwhile
            updated = db.query(ProjectMember).filter(
                ProjectMember.id == existing.id,
                ProjectMember.status == MemberStatus.DECLINED.value,
            ).update({
                ProjectMember.status: MemberStatus.PENDING.value,
                ProjectMember.role: role,
                ProjectMember.invited_by_user_id: inviter_id,
            }, synchronize_session="fetch")
            if updated == 0:
                raise ConflictError("User already has a pending invitation to this project")
            membership = existing
        else:
            membership = ProjectMember(
                project_id=project.id,
                user_id=invitee.id,
                role=role,
                status=MemberStatus.PENDING.value,
                invited_by_user_id=inviter_id,
            )
            db.add(membership)
            db.flush()

        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent invite for the same user
        db.rollback()
        _count("invite", "conflict")
        raise ConflictError("User already has a pending invitation to this project")
    except Exception as e:
        db.rollback()
        _count("invite", type(e).__name__)
        raise

    db.refresh(membership)
    _count("invite", "success")
    logger.info(f"User {inviter_id} invited {membership.user_id} to project {project_id} as {role}")
    return membership


# ============================================================================
# RESPOND
# ============================================================================

def respond_to_invitation(project_id: str, responder_id: str, action: str, db: Session) -> ProjectMember:
    """Accept or decline the caller's own pending invitation.

    Not idempotent: once answered there is no pending row left, so a second
    response fails with NotFoundError.
    """
    if action not in RESPONSE_ACTIONS:
        raise ValidationError('Invalid action. Must be "accept" or "decline"')

    new_status = MemberStatus.ACCEPTED.value if action == "accept" else MemberStatus.DECLINED.value
    try:
        updated = db.query(ProjectMember).filter(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == responder_id,
            ProjectMember.status == MemberStatus.PENDING.value,
        ).update({ProjectMember.status: new_status}, synchronize_session="fetch")
        if updated == 0:
            raise NotFoundError("No pending invitation found for this project")
        db.commit()
    except Exception as e:
        db.rollback()
        _count(action, type(e).__name__)
        raise

    membership = _find_membership(project_id, responder_id, db)
    if membership is None:
        # Removed between the commit and the re-read
        _count(action, "NotFoundError")
        raise NotFoundError("No pending invitation found for this project")
    _count(action, "success")
    logger.info(f"User {responder_id} {action}ed invitation to project {project_id}")
    return membership


# ============================================================================
# LIST
# ============================================================================

def _member_entry(membership: ProjectMember, requester_id: str) -> Dict[str, Any]:
    user = membership.user
    return {
        "id": membership.id,
        "user_id": membership.user_id,
        "email": user.email if user else None,
        "display_name": user.label if user else "Unknown User",
        "avatar_url": user.avatar_url if user else None,
        "role": membership.role,
        "status": membership.status,
        "joined_at": isoformat(membership.created_at),
        "updated_at": isoformat(membership.updated_at),
        "is_current_user": membership.user_id == requester_id,
        "_sort_key": ensure_utc(membership.created_at),
    }


def _owner_entry(project: Project, requester_id: str) -> Dict[str, Any]:
    owner = project.owner
    return {
        "id": "owner",
        "user_id": project.owner_id,
        "email": owner.email if owner else None,
        "display_name": owner.label if owner else "Unknown User",
        "avatar_url": owner.avatar_url if owner else None,
        "role": MemberRole.ADMIN.value,
        "status": MemberStatus.ACCEPTED.value,
        "joined_at": isoformat(project.created_at),
        "updated_at": isoformat(project.updated_at),
        "is_current_user": project.owner_id == requester_id,
        "_sort_key": ensure_utc(project.created_at),
    }


def list_members(project_id: str, requester_id: str, db: Session) -> Dict[str, Any]:
    """All membership rows of a project plus the implicit owner entry, oldest first.

    Any role other than 'none' may list.
    """
    project = get_project(project_id, db)
    grant = require_role(
        project, requester_id, "viewer", db,
        message="Access denied: You are not a member of this project"
    )

    rows = db.query(ProjectMember).filter(ProjectMember.project_id == project.id).all()
    entries = [_member_entry(row, requester_id) for row in rows]
    if not any(row.user_id == project.owner_id for row in rows):
        entries.append(_owner_entry(project, requester_id))

    entries.sort(key=lambda e: e["_sort_key"])
    for entry in entries:
        del entry["_sort_key"]

    return {
        "members": entries,
        "user_role": grant.role,
        "total_count": len(entries),
    }


def list_pending_invitations(user_id: str, db: Session) -> List[Dict[str, Any]]:
    """Pending invitations addressed to the user, newest first.

    Project and inviter details are best-effort and fall back to placeholders.
    """
    rows = db.query(ProjectMember).filter(
        ProjectMember.user_id == user_id,
        ProjectMember.status == MemberStatus.PENDING.value,
    ).order_by(ProjectMember.created_at.desc()).all()

    invitations = []
    for row in rows:
        project_name = "Unknown Project"
        project_description = None
        try:
            project = db.query(Project).filter(Project.id == row.project_id).first()
            if project:
                project_name = project.name
                project_description = project.description
        except Exception as e:
            logger.warning(f"Could not load project {row.project_id} for invitation {row.id}: {e}")

        invitations.append({
            "id": row.id,
            "project_id": row.project_id,
            "project_name": project_name,
            "project_description": project_description,
            "role": row.role,
            "status": row.status,
            "invited_by": describe_user(row.invited_by_user_id, db),
            "invited_at": isoformat(row.created_at),
        })
    return invitations


# ============================================================================
# UPDATE ROLE / REMOVE
# ============================================================================

def update_member_role(
    project_id: str,
    actor_id: str,
    target_user_id: str,
    new_role: str,
    db: Session
) -> ProjectMember:
    """Change an accepted member's role. Admins only; the owner's role is fixed."""
    try:
        project = get_project(project_id, db)
        require_role(
            project, actor_id, "admin", db, for_update=True,
            message="Access denied: You do not have permission to update member roles"
        )
        validate_role(new_role)
        if target_user_id == project.owner_id:
            raise ValidationError("Cannot change the role of the project owner")

        updated = db.query(ProjectMember).filter(
            ProjectMember.project_id == project.id,
            ProjectMember.user_id == target_user_id,
            ProjectMember.status == MemberStatus.ACCEPTED.value,
        ).update({ProjectMember.role: new_role}, synchronize_session="fetch")
        if updated == 0:
            raise NotFoundError("Member not found in this project")
        db.commit()
    except Exception as e:
        db.rollback()
        _count("update_role", type(e).__name__)
        raise

    membership = _find_membership(project_id, target_user_id, db)
    if membership is None:
        _count("update_role", "NotFoundError")
        raise NotFoundError("Member not found in this project")
    _count("update_role", "success")
    logger.info(f"User {actor_id} set role of {target_user_id} on project {project_id} to {new_role}")
    return membership


def remove_member(project_id: str, actor_id: str, target_user_id: str, db: Session) -> None:
    """Delete a membership row, pending invitations included.

    Admins may remove anyone but the owner; anyone may remove themselves.
    """
    try:
        project = get_project(project_id, db)
        if actor_id != target_user_id:
            grant = resolve_access(project, actor_id, db, for_update=True)
            if not has_role(grant, "admin"):
                raise AuthorizationError("Access denied: You do not have permission to remove this member")
        if target_user_id == project.owner_id:
            raise ValidationError("Cannot remove the project owner")

        deleted = db.query(ProjectMember).filter(
            ProjectMember.project_id == project.id,
            ProjectMember.user_id == target_user_id,
        ).delete(synchronize_session="fetch")
        if deleted == 0:
            raise NotFoundError("Member not found in this project")
        db.commit()
    except Exception as e:
        db.rollback()
        _count("remove", type(e).__name__)
        raise

    _count("remove", "success")
    logger.info(f"User {actor_id} removed {target_user_id} from project {project_id}")
