from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import event

from workshop_tracker import schemas, transitions
from workshop_tracker.errors import NotFoundError, ValidationError
from workshop_tracker.models import Order, OrderStatus
from workshop_tracker.transitions import Move

NOW = datetime(2024, 3, 20, 12, 0, 0)


def card(id, priority, stage_id=1, workman_id=None):
    return SimpleNamespace(id=id, priority=priority, stage_id=stage_id, workman_id=workman_id)


# -------------------- move_order --------------------

def test_move_writes_all_fields_in_one_update(db_session, engine, stages, make_workman, make_order):
    received, cutting, _ = stages
    bob = make_workman("Bob")
    order = make_order(received, priority=1, last_updated=NOW - timedelta(days=9))

    updates = []

    def count_updates(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("UPDATE"):
            updates.append(statement)

    event.listen(engine, "before_cursor_execute", count_updates)
    try:
        moved = transitions.move_order(db_session, order.id, cutting.id, bob.id, 2, now=NOW)
    finally:
        event.remove(engine, "before_cursor_execute", count_updates)

    assert len(updates) == 1
    assert (moved.stage_id, moved.workman_id, moved.priority) == (cutting.id, bob.id, 2)
    assert moved.last_updated == NOW


def test_move_can_unassign(db_session, stages, make_workman, make_order):
    order = make_order(stages[0], make_workman("Bob"))
    moved = transitions.move_order(db_session, order.id, stages[0].id, None, 0)
    assert moved.workman_id is None


def test_move_rejects_bad_references(db_session, stages, make_order):
    order = make_order(stages[0])
    with pytest.raises(NotFoundError):
        transitions.move_order(db_session, 999, stages[1].id, None, 0)
    with pytest.raises(NotFoundError):
        transitions.move_order(db_session, order.id, 999, None, 0)
    with pytest.raises(ValidationError):
        transitions.move_order(db_session, order.id, stages[1].id, 999, 0)
    with pytest.raises(ValidationError):
        transitions.move_order(db_session, order.id, stages[1].id, None, -1)
    db_session.refresh(order)
    assert order.stage_id == stages[0].id


def test_move_accepts_priority_above_urgent(db_session, stages, make_order):
    order = make_order(stages[0])
    moved = transitions.move_order(db_session, order.id, stages[0].id, None, 6)
    assert moved.priority == 6


# -------------------- planning --------------------

def test_sort_column_breaks_ties_by_id():
    ordered = transitions.sort_column([card(4, 1), card(2, 3), card(3, 1), card(1, 0)])
    assert [c.id for c in ordered] == [2, 3, 4, 1]


def test_reorder_emits_only_changed_moves():
    column = [card(10, 3), card(11, 2), card(12, 1), card(13, 0)]
    # drag the third card to the top
    moves = transitions.plan_column_reorder(column, active_id=12, over_id=10)
    assert moves == [Move(12, 1, None, 3), Move(10, 1, None, 2), Move(11, 1, None, 1)]

    applied = {m.order_id: m.priority for m in moves}
    after = [card(c.id, applied.get(c.id, c.priority)) for c in column]
    assert [c.id for c in transitions.sort_column(after)] == [12, 10, 11, 13]
    assert [c.priority for c in transitions.sort_column(after)] == [3, 2, 1, 0]
    assert transitions.priority_moves(transitions.sort_column(after)) == []


def test_reorder_onto_itself_or_unknown_is_noop():
    column = [card(1, 1), card(2, 0)]
    assert transitions.plan_column_reorder(column, 1, 1) == []
    assert transitions.plan_column_reorder(column, 1, 99) == []


def test_reorder_of_long_column_goes_past_urgent():
    column = [card(i, 0) for i in range(1, 7)]
    moves = transitions.plan_column_reorder(column, 6, 1)
    assert max(m.priority for m in moves) == 5


def test_drop_on_other_stage_keeps_workman_and_priority():
    orders = [card(1, 2, stage_id=1, workman_id=5), card(2, 0, stage_id=2)]
    assert transitions.plan_drop(orders, 1, target_stage_id=2) == [Move(1, 2, 5, 2)]
    assert transitions.plan_drop(orders, 1, target_order_id=2) == [Move(1, 2, 5, 2)]


def test_drop_on_own_column_or_nowhere_is_noop():
    orders = [card(1, 2, stage_id=1), card(2, 0, stage_id=2)]
    assert transitions.plan_drop(orders, 1, target_stage_id=1) == []
    assert transitions.plan_drop(orders, 1, target_order_id=42) == []
    assert transitions.plan_drop(orders, 42, target_stage_id=2) == []


def test_drop_on_card_in_same_column_reorders():
    orders = [card(1, 1, stage_id=1), card(2, 0, stage_id=1), card(3, 9, stage_id=2)]
    assert transitions.plan_drop(orders, 2, target_order_id=1) == [Move(2, 1, None, 1), Move(1, 1, None, 0)]


# -------------------- batches --------------------

def test_apply_moves_reports_each_item(db_session, stages, make_order):
    first, second = make_order(stages[0]), make_order(stages[0])
    moves = [Move(first.id, stages[1].id, None, 1), Move(second.id, 999, None, 0)]

    result = transitions.apply_moves(db_session, moves)

    assert not result.ok
    assert [(r.key, r.ok) for r in result] == [(first.id, True), (second.id, False)]
    assert result.failures[0].message == "Stage not found"
    # earlier moves stay applied
    assert db_session.get(Order, first.id).stage_id == stages[1].id
    with pytest.raises(NotFoundError):
        result.raise_for_failures()


def test_reprioritize_column(db_session, stages, make_order):
    a, b, c, d = (make_order(stages[0], priority=p) for p in (3, 2, 1, 0))
    result = transitions.reprioritize_column(db_session, stages[0].id, [c.id, a.id, b.id, d.id])
    assert result.ok
    assert sorted(r.key for r in result) == sorted([a.id, b.id, c.id])

    db_session.expire_all()
    priorities = {o.id: o.priority for o in db_session.query(Order)}
    assert priorities == {c.id: 3, a.id: 2, b.id: 1, d.id: 0}

    again = transitions.reprioritize_column(db_session, stages[0].id, [c.id, a.id, b.id, d.id])
    assert len(again) == 0


def test_reprioritize_requires_whole_column(db_session, stages, make_order):
    a, b = make_order(stages[0]), make_order(stages[0])
    other = make_order(stages[1])
    with pytest.raises(ValidationError):
        transitions.reprioritize_column(db_session, stages[0].id, [a.id])
    with pytest.raises(ValidationError):
        transitions.reprioritize_column(db_session, stages[0].id, [a.id, b.id, other.id])
    with pytest.raises(ValidationError):
        transitions.reprioritize_column(db_session, stages[0].id, [a.id, a.id, b.id])
    with pytest.raises(NotFoundError):
        transitions.reprioritize_column(db_session, 999, [])


# -------------------- create / update --------------------

def order_payload(**overrides):
    fields = dict(
        client_name="Acme",
        description="Oak table",
        received_date=date(2024, 1, 1),
        due_date=date(2024, 1, 31),
    )
    fields.update(overrides)
    return fields


def test_create_order_defaults_to_first_stage(db_session, make_stage):
    make_stage("Later", position=5)
    first = make_stage("First", position=0)
    order = transitions.create_order(db_session, schemas.OrderCreate(**order_payload()), now=NOW)
    assert order.stage_id == first.id
    assert order.status is OrderStatus.ACTIVE
    assert order.last_updated == NOW


def test_create_order_needs_a_stage(db_session):
    with pytest.raises(ValidationError):
        transitions.create_order(db_session, schemas.OrderCreate(**order_payload()))


def test_create_order_strips_markup(db_session, stages):
    payload = schemas.OrderCreate(**order_payload(client_name="<b>Acme</b> & Sons"))
    order = transitions.create_order(db_session, payload)
    assert order.client_name == "Acme & Sons"


def test_create_order_rejects_markup_only_text(db_session, stages):
    payload = schemas.OrderCreate(**order_payload(description="<script></script>"))
    with pytest.raises(ValidationError):
        transitions.create_order(db_session, payload)


def test_update_order_replaces_everything(db_session, stages, make_workman, make_order):
    order = make_order(stages[0], make_workman("Bob"), priority=1, last_updated=NOW - timedelta(days=10))
    payload = schemas.OrderUpdate(**order_payload(
        client_name="Globex",
        stage_id=stages[2].id,
        workman_id=None,
        priority=5,
        status="on-hold",
    ))
    updated = transitions.update_order(db_session, order.id, payload, now=NOW)
    assert updated.client_name == "Globex"
    assert updated.stage_id == stages[2].id
    assert updated.workman_id is None
    assert updated.priority == 5
    assert updated.status is OrderStatus.ON_HOLD
    assert updated.last_updated == NOW


def test_update_missing_order(db_session, stages):
    payload = schemas.OrderUpdate(**order_payload(stage_id=stages[0].id, priority=0))
    with pytest.raises(NotFoundError):
        transitions.update_order(db_session, 999, payload)
