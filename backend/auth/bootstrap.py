import logging

from sqlalchemy.orm import Session, sessionmaker

from auth.utils import hash_password, normalize_username
from config import settings
from db.database import SessionLocal
from db.models import User

logger = logging.getLogger(__name__)


def ensure_admin_account(session_factory: sessionmaker = SessionLocal) -> None:
    admin_username_raw = " ".join((settings.ADMIN_USERNAME or "").strip().split()) or "kitchenadmin"
    admin_username_normalized = normalize_username(admin_username_raw)
    admin_display_name = (settings.ADMIN_DISPLAY_NAME or "Kitchen Admin").strip() or "Kitchen Admin"

    db: Session = session_factory()
    try:
        admin_user = (
            db.query(User)
            .filter(User.role == "admin")
            .order_by(User.created_at, User.id)
            .first()
        )
        if admin_user:
            return

        # If the username is already taken by a non-admin account, create a suffixed admin username.
        final_username = admin_username_raw
        final_normalized = admin_username_normalized
        if db.query(User).filter(User.username_normalized == final_normalized).first():
            suffix = 2
            while True:
                candidate = f"{admin_username_raw}_{suffix}"
                candidate_norm = normalize_username(candidate)
                if not db.query(User).filter(User.username_normalized == candidate_norm).first():
                    final_username = candidate
                    final_normalized = candidate_norm
                    break
                suffix += 1

        db.add(
            User(
                username=final_username,
                username_normalized=final_normalized,
                password_hash=hash_password(settings.ADMIN_PASSWORD),
                display_name=admin_display_name,
                role="admin",
                token_version=0,
            )
        )
        db.commit()
        logger.info("Created admin account %s", final_username)
    finally:
        db.close()
