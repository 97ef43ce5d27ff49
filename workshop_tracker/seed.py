"""Default pipeline and administrator for a fresh database."""
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .auth import hash_password
from .models import Role, Stage, User

logger = logging.getLogger(__name__)

DEFAULT_STAGES = (
    "Received",
    "Design",
    "Cutting",
    "Assembly",
    "Finishing",
    "Quality Check",
    "Completed",
)

DEFAULT_ADMIN = {
    "username": "admin",
    "email": "admin@workshop.com",
    "name": "Administrator",
}


def seed_defaults(db: Session, admin_password: str) -> None:
    """Insert the default stages and admin account when their tables are empty."""
    if db.query(Stage).first() is None:
        db.add_all(Stage(title=title, position=index) for index, title in enumerate(DEFAULT_STAGES))
        logger.info("seeded %d default stages", len(DEFAULT_STAGES))
    has_admin = db.query(User.id).filter(or_(User.role == Role.ADMIN, User.username == DEFAULT_ADMIN["username"])).first()
    if has_admin is None:
        db.add(User(role=Role.ADMIN, password_hash=hash_password(admin_password), **DEFAULT_ADMIN))
        logger.warning("created default admin account '%s'; change its password", DEFAULT_ADMIN["username"])
    db.commit()
