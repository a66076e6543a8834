from typing import Optional

from sqlalchemy.orm import Session

from pettrack_payments.models import User


def find_active_user(db: Session, user_id: str) -> Optional[User]:
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user
