"""
Order transitions: moving orders between stages, reassigning them and
reordering them inside a kanban column.

``move_order`` and ``update_order`` are full replaces: every field they
own is written in one UPDATE, whether or not it changed. Callers pass
unchanged values through.

Column order is derived from priority (higher first, lower id breaking
ties). Reordering a column rewrites priorities as N-1 .. 0 from top to
bottom, so a column of more than four orders holds priorities above the
Urgent level; they remain valid ordering keys.
"""
import logging
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .batch import BatchResult
from .errors import NotFoundError, StoreError, ValidationError, WorkshopError
from .models import Order, OrderStatus, Stage, Workman, utcnow
from .utils import clean_text

logger = logging.getLogger(__name__)


class Move(NamedTuple):
    order_id: int
    stage_id: int
    workman_id: Optional[int]
    priority: int


def _check_priority(priority: int, upper: Optional[int] = None) -> None:
    if priority is None or priority < models.MIN_PRIORITY:
        raise ValidationError("priority must be a non-negative integer")
    if upper is not None and priority > upper:
        raise ValidationError(f"priority must be between {models.MIN_PRIORITY} and {upper}")


def _check_references(db: Session, stage_id: int, workman_id: Optional[int]) -> None:
    if db.get(Stage, stage_id) is None:
        raise NotFoundError("Stage", stage_id)
    if workman_id is not None and db.get(Workman, workman_id) is None:
        raise ValidationError("workman does not exist")


def move_order(
    db: Session,
    order_id: int,
    stage_id: int,
    workman_id: Optional[int],
    priority: int,
    now: Optional[datetime] = None,
) -> Order:
    """Set stage, assignee and priority of an order and refresh ``last_updated``.

    All four columns are written by a single UPDATE statement.
    """
    if db.get(Order, order_id) is None:
        raise NotFoundError("Order", order_id)
    _check_priority(priority)
    _check_references(db, stage_id, workman_id)

    stmt = (
        update(Order)
        .where(Order.id == order_id)
        .values(
            stage_id=stage_id,
            workman_id=workman_id,
            priority=priority,
            last_updated=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        # deleted between the existence check and the write
        db.rollback()
        raise NotFoundError("Order", order_id)
    db.commit()

    order = db.get(Order, order_id)
    db.refresh(order)
    logger.info(
        "order %s moved to stage %s (workman=%s, priority=%s)",
        order_id, stage_id, workman_id, priority,
        extra={"order_id": order_id, "stage_id": stage_id},
    )
    return order


def apply_moves(db: Session, moves: Iterable[Move], now: Optional[datetime] = None) -> BatchResult:
    """Run each move as its own write and collect per-order results.

    Earlier moves stay applied when a later one fails.
    """
    result = BatchResult()
    for move in moves:
        try:
            move_order(db, move.order_id, move.stage_id, move.workman_id, move.priority, now=now)
        except WorkshopError as exc:
            result.failed_with(move.order_id, exc)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("move of order %s failed", move.order_id)
            result.failed_with(move.order_id, StoreError())
        else:
            result.succeeded(move.order_id)
    if not result.ok:
        logger.warning("%d of %d moves failed", len(result.failures), len(result))
    return result


def sort_column(orders: Iterable) -> list:
    """Top-to-bottom display order of a column: priority descending, then id ascending."""
    return sorted(orders, key=lambda o: (-o.priority, o.id))


def priority_moves(ordered: Sequence) -> List[Move]:
    """Moves that give ``ordered`` priorities N-1 .. 0, skipping orders already correct."""
    count = len(ordered)
    moves = []
    for index, order in enumerate(ordered):
        priority = count - index - 1
        if order.priority != priority:
            moves.append(Move(order.id, order.stage_id, order.workman_id, priority))
    return moves


def plan_column_reorder(column_orders: Iterable, active_id: int, over_id: int) -> List[Move]:
    """Plan the moves for dragging ``active_id`` onto ``over_id`` within one column."""
    ordered = sort_column(column_orders)
    ids = [o.id for o in ordered]
    if active_id not in ids or over_id not in ids:
        return []
    old_index, new_index = ids.index(active_id), ids.index(over_id)
    if old_index == new_index:
        return []
    ordered.insert(new_index, ordered.pop(old_index))
    return priority_moves(ordered)


def plan_drop(
    orders: Sequence,
    active_id: int,
    target_stage_id: Optional[int] = None,
    target_order_id: Optional[int] = None,
) -> List[Move]:
    """Resolve a board drop into moves.

    - onto another stage's column: move there, keeping workman and priority
    - onto a card in another stage: same as dropping on that column
    - onto a card in the same stage: reorder the column
    - onto its own column or an unknown target: nothing
    """
    by_id = {o.id: o for o in orders}
    dragged = by_id.get(active_id)
    if dragged is None:
        return []

    if target_stage_id is not None:
        if target_stage_id == dragged.stage_id:
            return []
        return [Move(dragged.id, target_stage_id, dragged.workman_id, dragged.priority)]

    target = by_id.get(target_order_id) if target_order_id is not None else None
    if target is None:
        return []
    if target.stage_id != dragged.stage_id:
        return [Move(dragged.id, target.stage_id, dragged.workman_id, dragged.priority)]
    column = [o for o in orders if o.stage_id == dragged.stage_id]
    return plan_column_reorder(column, active_id, target_order_id)


def reprioritize_column(
    db: Session,
    stage_id: int,
    ordered_ids: Sequence[int],
    now: Optional[datetime] = None,
) -> BatchResult:
    """Give the orders of a stage priorities matching ``ordered_ids`` (top first).

    ``ordered_ids`` must name every order in the stage exactly once.
    """
    if db.get(Stage, stage_id) is None:
        raise NotFoundError("Stage", stage_id)
    column = db.query(Order).filter(Order.stage_id == stage_id).all()
    by_id = {o.id: o for o in column}
    if len(set(ordered_ids)) != len(ordered_ids) or set(ordered_ids) != set(by_id):
        raise ValidationError("order_ids must list every order in the stage exactly once")
    moves = priority_moves([by_id[i] for i in ordered_ids])
    return apply_moves(db, moves, now=now)


def create_order(db: Session, payload, now: Optional[datetime] = None) -> Order:
    stage_id = payload.stage_id
    if stage_id is None:
        first = db.query(Stage).order_by(Stage.position, Stage.id).first()
        if first is None:
            raise ValidationError("no stages defined")
        stage_id = first.id
    _check_priority(payload.priority, models.MAX_PRIORITY)
    _check_references(db, stage_id, payload.workman_id)

    stamp = now or utcnow()
    order = Order(
        client_name=_required_text(payload.client_name, "client_name"),
        description=_required_text(payload.description, "description"),
        received_date=payload.received_date,
        due_date=payload.due_date,
        stage_id=stage_id,
        workman_id=payload.workman_id,
        priority=payload.priority,
        status=OrderStatus(payload.status),
        last_updated=stamp,
        created_at=stamp,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("order %s created in stage %s", order.id, stage_id, extra={"order_id": order.id})
    return order


def update_order(db: Session, order_id: int, payload, now: Optional[datetime] = None) -> Order:
    """Replace every mutable field of an order and refresh ``last_updated``."""
    if db.get(Order, order_id) is None:
        raise NotFoundError("Order", order_id)
    _check_priority(payload.priority)
    _check_references(db, payload.stage_id, payload.workman_id)

    stmt = (
        update(Order)
        .where(Order.id == order_id)
        .values(
            client_name=_required_text(payload.client_name, "client_name"),
            description=_required_text(payload.description, "description"),
            received_date=payload.received_date,
            due_date=payload.due_date,
            stage_id=payload.stage_id,
            workman_id=payload.workman_id,
            priority=payload.priority,
            status=OrderStatus(payload.status),
            last_updated=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount == 0:
        db.rollback()
        raise NotFoundError("Order", order_id)
    db.commit()

    order = db.get(Order, order_id)
    db.refresh(order)
    logger.info("order %s updated", order_id, extra={"order_id": order_id})
    return order


def _required_text(value: Optional[str], field: str) -> str:
    cleaned = clean_text(value)
    if not cleaned:
        raise ValidationError(f"{field} is required")
    return cleaned
