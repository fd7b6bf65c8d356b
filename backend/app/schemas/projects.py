"""Pydantic schemas for projects, members and invitations"""
from pydantic import BaseModel, EmailStr, Field
from typing import Optional


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    visibility: str = "private"  # 'private', 'team', 'public'


class InviteMemberRequest(BaseModel):
    email: EmailStr
    role: str  # 'admin', 'editor', 'viewer'


class UpdateMemberRoleRequest(BaseModel):
    role: str


class RespondInvitationRequest(BaseModel):
    action: str  # 'accept' or 'decline'
