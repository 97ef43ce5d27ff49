import pytest

from workshop_tracker import ordering, schemas
from workshop_tracker.errors import ConflictError, NotFoundError, ValidationError
from workshop_tracker.models import Order, Stage


def test_create_stage_appends(db_session):
    first = ordering.create_stage(db_session, "Received")
    second = ordering.create_stage(db_session, "  Cutting ")
    assert (first.position, second.position) == (0, 1)
    assert second.title == "Cutting"


def test_create_stage_at_position(db_session):
    stage = ordering.create_stage(db_session, "Design", position=4)
    assert stage.position == 4
    assert ordering.next_position(db_session) == 5


def test_create_stage_requires_title(db_session):
    with pytest.raises(ValidationError):
        ordering.create_stage(db_session, "<i></i>")
    with pytest.raises(ValidationError):
        ordering.create_stage(db_session, "Design", position=-1)


def test_reorder_stages(db_session, stages):
    s1, s2, s3 = stages
    result = ordering.reorder_stages(db_session, [s3.id, s1.id, s2.id])
    assert result.ok
    positions = {s.id: s.position for s in db_session.query(Stage)}
    assert positions == {s3.id: 0, s1.id: 1, s2.id: 2}
    assert [s.id for s in ordering.list_stages(db_session)] == [s3.id, s1.id, s2.id]


def test_reorder_reports_unknown_ids(db_session, stages):
    s1, s2, _ = stages
    result = ordering.reorder_stages(db_session, [s2.id, 999, s1.id])
    assert [(r.key, r.ok) for r in result] == [(s2.id, True), (999, False), (s1.id, True)]
    assert result.failures[0].message == "Stage not found"
    assert db_session.get(Stage, s1.id).position == 2
    with pytest.raises(NotFoundError):
        result.raise_for_failures()


def test_reorder_rejects_duplicates_before_writing(db_session, stages):
    s1, s2, _ = stages
    with pytest.raises(ValidationError):
        ordering.reorder_stages(db_session, [s2.id, s2.id, s1.id])
    assert db_session.get(Stage, s2.id).position == 1


def test_positions_payload_is_sorted():
    payload = schemas.StageReorder(stages=[{"id": 5, "position": 2}, {"id": 7, "position": 0}, {"id": 6, "position": 1}])
    assert ordering.ids_from_positions(payload.stages) == [7, 6, 5]


def test_list_stages_breaks_position_ties_by_id(db_session, make_stage):
    b = make_stage("B", position=1)
    a = make_stage("A", position=1)
    c = make_stage("C", position=0)
    assert [s.id for s in ordering.list_stages(db_session)] == [c.id, b.id, a.id]


def test_update_stage(db_session, stages):
    stage = ordering.update_stage(db_session, stages[0].id, "Intake", position=9)
    assert (stage.title, stage.position) == ("Intake", 9)
    kept = ordering.update_stage(db_session, stages[1].id, "Saw")
    assert kept.position == 1
    with pytest.raises(NotFoundError):
        ordering.update_stage(db_session, 999, "Nope")


def test_delete_stage_with_orders_conflicts(db_session, stages, make_order):
    order = make_order(stages[1])
    with pytest.raises(ConflictError) as exc:
        ordering.delete_stage(db_session, stages[1].id)
    assert exc.value.message == "Cannot delete stage with existing orders"
    assert db_session.get(Stage, stages[1].id) is not None
    assert db_session.get(Order, order.id).stage_id == stages[1].id


def test_delete_empty_stage(db_session, stages):
    ordering.delete_stage(db_session, stages[2].id)
    assert db_session.get(Stage, stages[2].id) is None
    with pytest.raises(NotFoundError):
        ordering.delete_stage(db_session, stages[2].id)
