"""Stage ordering: positions of the kanban columns."""
import logging
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .batch import BatchResult
from .errors import ConflictError, NotFoundError, StoreError, ValidationError
from .models import Order, Stage
from .utils import clean_text

logger = logging.getLogger(__name__)


def list_stages(db: Session) -> List[Stage]:
    return db.query(Stage).order_by(Stage.position, Stage.id).all()


def next_position(db: Session) -> int:
    highest = db.query(func.max(Stage.position)).scalar()
    return 0 if highest is None else highest + 1


def _title(value: Optional[str]) -> str:
    title = clean_text(value)
    if not title:
        raise ValidationError("title is required")
    return title


def _position(value: Optional[int]) -> None:
    if value is not None and value < 0:
        raise ValidationError("position must be a non-negative integer")


def create_stage(db: Session, title: str, position: Optional[int] = None) -> Stage:
    """Append a stage after the current last one unless ``position`` is given."""
    _position(position)
    stage = Stage(title=_title(title), position=next_position(db) if position is None else position)
    db.add(stage)
    db.commit()
    db.refresh(stage)
    logger.info("stage %s '%s' created at position %s", stage.id, stage.title, stage.position, extra={"stage_id": stage.id})
    return stage


def update_stage(db: Session, stage_id: int, title: str, position: Optional[int] = None) -> Stage:
    stage = db.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError("Stage", stage_id)
    _position(position)
    stage.title = _title(title)
    if position is not None:
        stage.position = position
    db.commit()
    db.refresh(stage)
    return stage


def reorder_stages(db: Session, stage_ids: Sequence[int]) -> BatchResult:
    """Set each listed stage's position to its index in ``stage_ids``.

    A full overwrite, one row at a time. Unknown ids are reported as failed
    items; earlier writes are kept.
    """
    if len(set(stage_ids)) != len(stage_ids):
        raise ValidationError("stage ids must be unique")

    result = BatchResult()
    for index, stage_id in enumerate(stage_ids):
        try:
            changed = db.execute(
                update(Stage)
                .where(Stage.id == stage_id)
                .values(position=index)
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed == 0:
                db.rollback()
                result.failed_with(stage_id, NotFoundError("Stage", stage_id))
                continue
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("could not reposition stage %s", stage_id)
            result.failed_with(stage_id, StoreError())
        else:
            result.succeeded(stage_id)

    # positions were written with bulk updates; drop stale instances
    db.expire_all()
    logger.info("stages reordered: %s", list(stage_ids))
    return result


def ids_from_positions(stages: Iterable) -> List[int]:
    """Turn ``[{id, position}, ...]`` items into an id sequence (position, then list order)."""
    indexed = list(enumerate(stages))
    indexed.sort(key=lambda pair: (pair[1].position, pair[0]))
    return [stage.id for _, stage in indexed]


def delete_stage(db: Session, stage_id: int) -> None:
    """Delete a stage; refused while any order still sits in it."""
    stage = db.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError("Stage", stage_id)
    in_use = db.query(func.count(Order.id)).filter(Order.stage_id == stage_id).scalar()
    if in_use:
        raise ConflictError("Cannot delete stage with existing orders")
    db.delete(stage)
    db.commit()
    logger.info("stage %s deleted", stage_id, extra={"stage_id": stage_id})
