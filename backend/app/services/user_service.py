"""User service - profile lookups"""
import logging
from typing import Optional
from sqlalchemy.orm import Session

from app.models.user import User

logger = logging.getLogger(__name__)


def get_user_by_id(user_id: str, db: Session) -> Optional[User]:
    """Get user by ID"""
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    """Get user by email (case-insensitive)"""
    if not email:
        return None
    return db.query(User).filter(User.email == email.strip().lower()).first()


def create_user(
    email: str,
    db: Session,
    user_id: Optional[str] = None,
    display_name: Optional[str] = None,
    avatar_url: Optional[str] = None
) -> User:
    """Create a user profile.

    Args:
        email: User email (must be unique)
        db: Database session
        user_id: Identity provider subject (generated when omitted)
        display_name: Name shown to collaborators
        avatar_url: Profile picture URL

    Raises:
        ValueError: If the email is already registered
    """
    email = email.strip().lower()
    if get_user_by_email(email, db):
        raise ValueError("Email already registered")

    user = User(email=email, display_name=display_name, avatar_url=avatar_url)
    if user_id:
        user.id = user_id
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {user.id}")
    return user


def describe_user(user_id: Optional[str], db: Session, fallback: str = "Unknown") -> str:
    """Best-effort display label for a user. Lookup failures degrade to the fallback."""
    if not user_id:
        return fallback
    try:
        user = get_user_by_id(user_id, db)
    except Exception as e:
        logger.warning(f"Could not look up user {user_id}: {e}")
        return fallback
    if not user:
        return fallback
    return user.label or fallback
