"""Shared API dependencies."""
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session
from typing import Optional

from app.database import get_db
from app.models.user import User
from app.services.mail_transport import TransportFactory, build_mail_transport
from app.services.user_service import UserService


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> User:
    """
    Get the user making the request from the X-User-Id header.

    Raises:
        HTTPException: 401 if the header is missing or names no user
    """
    user = UserService(db).find_user(x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def get_transport_factory() -> TransportFactory:
    """Mail transport factory; overridden in tests."""
    return build_mail_transport
