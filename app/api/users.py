"""Current-user routes."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.schemas import EmailPreferenceUpdate, UserResponse
from app.services.user_service import UserService
from app.api.deps import get_current_user


# Create router
router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
def get_me(user: User = Depends(get_current_user)):
    return UserResponse.model_validate(user)


@router.put("/me/email-preference", response_model=UserResponse)
def update_email_preference(
    body: EmailPreferenceUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Change the preference used for new requests; existing requests keep theirs."""
    updated = UserService(db).set_email_preference(user.id, body.email_preference)
    return UserResponse.model_validate(updated)
