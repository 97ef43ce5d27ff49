import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import policy, schemas
from .alerts import compute_alert, due_status
from .auth import hash_password, verify_password
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Note, Order, Stage, StagePermission, User, Workman
from .utils import clean_text, like_pattern

logger = logging.getLogger(__name__)

DUPLICATE_USER = "Username or email already exists"


# -------------------- Users --------------------

def authenticate(db: Session, username: str, password: str) -> Optional[User]:
    user = db.query(User).filter(User.username == username).first()
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


def _check_stage_ids(db: Session, stage_ids: Iterable[int]) -> List[int]:
    stage_ids = sorted(set(stage_ids))
    if not stage_ids:
        return stage_ids
    found = {sid for (sid,) in db.query(Stage.id).filter(Stage.id.in_(stage_ids))}
    missing = [sid for sid in stage_ids if sid not in found]
    if missing:
        raise ValidationError(f"unknown stage id(s): {', '.join(str(m) for m in missing)}")
    return stage_ids


def _check_unique(db: Session, username: str, email: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(User.id).filter(or_(User.username == username, User.email == email))
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(DUPLICATE_USER)


def _commit_user(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        # a concurrent insert won the unique constraint
        db.rollback()
        raise ConflictError(DUPLICATE_USER) from e


def create_user(db: Session, user: schemas.UserCreate) -> User:
    """Create an account together with its stage permissions in one transaction."""
    stage_ids = _check_stage_ids(db, user.visible_stage_ids)
    _check_unique(db, user.username, user.email)

    db_user = User(
        username=user.username,
        email=user.email,
        password_hash=hash_password(user.password),
        role=user.role,
        name=user.name,
    )
    db_user.stage_permissions = [StagePermission(stage_id=sid) for sid in stage_ids]
    db.add(db_user)
    _commit_user(db)
    db.refresh(db_user)
    logger.info("user %s (%s) created", db_user.username, db_user.role.value, extra={"user_id": db_user.id})
    return db_user


def list_users(db: Session) -> List[User]:
    return db.query(User).order_by(User.created_at.desc(), User.id.desc()).all()


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)


def update_user(db: Session, user_id: int, payload: schemas.UserUpdate) -> Optional[User]:
    """Replace an account's fields and stage permissions; the password only when given."""
    user = db.get(User, user_id)
    if not user:
        return None
    stage_ids = _check_stage_ids(db, payload.visible_stage_ids)
    _check_unique(db, payload.username, payload.email, exclude_id=user_id)

    user.username = payload.username
    user.email = payload.email
    user.role = payload.role
    user.name = payload.name
    if payload.password:
        user.password_hash = hash_password(payload.password)

    current = {p.stage_id: p for p in user.stage_permissions}
    user.stage_permissions = [current.get(sid) or StagePermission(stage_id=sid) for sid in stage_ids]
    _commit_user(db)
    db.refresh(user)
    logger.info("user %s updated", user.username, extra={"user_id": user.id})
    return user


def delete_user(db: Session, user_id: int, acting_user_id: int) -> bool:
    if user_id == acting_user_id:
        raise ValidationError("Cannot delete your own account")
    user = db.get(User, user_id)
    if not user:
        return False
    # notes outlive their author
    db.execute(
        update(Note).where(Note.created_by == user_id).values(created_by=None)
        .execution_options(synchronize_session=False)
    )
    db.delete(user)
    db.commit()
    db.expire_all()
    logger.info("user %s deleted", user_id, extra={"user_id": user_id})
    return True


# -------------------- Workmen --------------------

def list_workmen(db: Session) -> List[Workman]:
    return db.query(Workman).order_by(Workman.name, Workman.id).all()


def get_workman(db: Session, workman_id: int) -> Optional[Workman]:
    return db.get(Workman, workman_id)


def create_workman(db: Session, workman: schemas.WorkmanCreate) -> Workman:
    name = clean_text(workman.name)
    if not name:
        raise ValidationError("name is required")
    db_workman = Workman(name=name, email=workman.email, phone=workman.phone)
    db.add(db_workman)
    db.commit()
    db.refresh(db_workman)
    return db_workman


def update_workman(db: Session, workman_id: int, workman: schemas.WorkmanCreate) -> Optional[Workman]:
    db_workman = db.get(Workman, workman_id)
    if not db_workman:
        return None
    name = clean_text(workman.name)
    if not name:
        raise ValidationError("name is required")
    db_workman.name = name
    db_workman.email = workman.email
    db_workman.phone = workman.phone
    db.commit()
    db.refresh(db_workman)
    return db_workman


def delete_workman(db: Session, workman_id: int) -> bool:
    """Delete a workman; orders assigned to them become unassigned."""
    db_workman = db.get(Workman, workman_id)
    if not db_workman:
        return False
    db.execute(
        update(Order).where(Order.workman_id == workman_id).values(workman_id=None)
        .execution_options(synchronize_session=False)
    )
    db.delete(db_workman)
    db.commit()
    db.expire_all()
    logger.info("workman %s deleted", workman_id)
    return True


# -------------------- Orders --------------------

SORT_COLUMNS = {
    "client_name": func.lower(Order.client_name),
    "received_date": Order.received_date,
    "due_date": Order.due_date,
    "priority": Order.priority,
    "stage": Stage.title,
    "workman": Workman.name,
}


def _orders_query(db: Session):
    return (
        db.query(Order, func.count(Note.id))
        .outerjoin(Stage, Order.stage_id == Stage.id)
        .outerjoin(Workman, Order.workman_id == Workman.id)
        .outerjoin(Note, Note.order_id == Order.id)
        .group_by(Order.id, Stage.id, Workman.id)
    )


def list_orders(
    db: Session,
    principal: policy.Principal,
    search: Optional[str] = None,
    stage_id: Optional[int] = None,
    status: Optional[str] = None,
    sort: Optional[str] = None,
    direction: str = "asc",
) -> List[Tuple[Order, int]]:
    """Orders visible to ``principal`` with their note counts.

    Default order is priority descending, newest first. ``sort`` names one
    of ``SORT_COLUMNS``.
    """
    query = _orders_query(db).filter(*policy.order_filter(principal))

    pattern = like_pattern(search)
    if pattern:
        query = query.filter(or_(
            Order.client_name.ilike(pattern, escape="\\"),
            Order.description.ilike(pattern, escape="\\"),
            Workman.name.ilike(pattern, escape="\\"),
        ))
    if stage_id is not None:
        query = query.filter(Order.stage_id == stage_id)
    if status:
        query = query.filter(Order.status == status)

    if sort:
        column = SORT_COLUMNS.get(sort)
        if column is None:
            raise ValidationError(f"cannot sort by '{sort}'")
        if direction not in ("asc", "desc"):
            raise ValidationError("direction must be 'asc' or 'desc'")
        query = query.order_by(column.desc() if direction == "desc" else column.asc(), Order.id)
    else:
        query = query.order_by(Order.priority.desc(), Order.created_at.desc(), Order.id.desc())
    return query.all()


def get_order_with_count(db: Session, order_id: int) -> Optional[Tuple[Order, int]]:
    return _orders_query(db).filter(Order.id == order_id).first()


def annotate_order(order: Order, notes_count: int = 0, now: Optional[datetime] = None) -> schemas.OrderRead:
    """Build the read model with the derived ``notes_count``, ``alert`` and ``due_status`` fields."""
    read = schemas.OrderRead.model_validate(order)
    return read.model_copy(update={
        "notes_count": notes_count,
        "alert": compute_alert(order.last_updated, now),
        "due_status": due_status(order.due_date, now.date() if now else None),
    })


def delete_order(db: Session, order_id: int) -> bool:
    order = db.get(Order, order_id)
    if not order:
        return False
    db.query(Note).filter(Note.order_id == order_id).delete(synchronize_session=False)
    db.delete(order)
    db.commit()
    logger.info("order %s deleted", order_id, extra={"order_id": order_id})
    return True


# -------------------- Notes --------------------

def list_notes(db: Session, order_id: int) -> List[Note]:
    return (
        db.query(Note)
        .filter(Note.order_id == order_id)
        .order_by(Note.created_at.desc(), Note.id.desc())
        .all()
    )


def create_note(db: Session, order_id: int, content: str, author_id: Optional[int]) -> Note:
    """Attach a note to an order. Does not touch the order's ``last_updated``."""
    if db.get(Order, order_id) is None:
        raise NotFoundError("Order", order_id)
    text = clean_text(content)
    if not text:
        raise ValidationError("content is required")
    note = Note(order_id=order_id, content=text, created_by=author_id)
    db.add(note)
    db.commit()
    db.refresh(note)
    return note


def get_note(db: Session, note_id: int) -> Optional[Note]:
    return db.get(Note, note_id)


def delete_note(db: Session, note: Note) -> None:
    db.delete(note)
    db.commit()
