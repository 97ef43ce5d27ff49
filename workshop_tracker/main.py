import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

import jwt
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from . import crud, ordering, policy, schemas, transitions
from .auth import create_access_token, decode_access_token
from .config import Settings, get_settings
from .db import init_db, make_engine, make_session_factory
from .errors import AuthenticationError, NotFoundError, register_error_handlers
from .logging_config import configure_logging
from .models import OrderStatus, User
from .policy import Principal
from .seed import seed_defaults

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# Dependency to get DB session per request

def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Principal:
    if credentials is None:
        raise AuthenticationError("Access token required")
    try:
        payload = decode_access_token(credentials.credentials)
        user_id = int(payload["sub"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except (jwt.PyJWTError, KeyError, ValueError):
        raise AuthenticationError("Invalid token")
    # role and stage grants are re-read so admin edits apply immediately
    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError("Account no longer exists")
    return Principal.from_user(user)


def get_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    policy.require_admin(principal)
    return principal


router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok"}


# -------------------- Auth & users --------------------

@router.post("/auth/login", response_model=schemas.TokenResponse)
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = crud.authenticate(db, payload.username, payload.password)
    if user is None:
        raise AuthenticationError("Invalid credentials")
    token = create_access_token(user.id, user.username, user.role.value, user.name, user.visible_stage_ids)
    logger.info("user %s logged in", user.username, extra={"user_id": user.id})
    return {"token": token, "user": user}


@router.post("/auth/register", response_model=schemas.UserRead, status_code=201)
def register(payload: schemas.UserCreate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    return crud.create_user(db, payload)


@router.get("/auth/me", response_model=schemas.UserRead)
def me(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return crud.get_user(db, principal.id)


@router.get("/users", response_model=List[schemas.UserRead])
def list_users(db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    return crud.list_users(db)


@router.get("/users/{user_id}", response_model=schemas.UserRead)
def get_user(user_id: int, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    user = crud.get_user(db, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return user


@router.put("/users/{user_id}", response_model=schemas.UserRead)
def update_user(user_id: int, payload: schemas.UserUpdate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    user = crud.update_user(db, user_id, payload)
    if not user:
        raise NotFoundError("User", user_id)
    return user


@router.delete("/users/{user_id}", response_model=schemas.Message)
def delete_user(user_id: int, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    if not crud.delete_user(db, user_id, acting_user_id=admin.id):
        raise NotFoundError("User", user_id)
    return {"message": "User deleted"}


# -------------------- Workmen --------------------

@router.get("/workmen", response_model=List[schemas.WorkmanRead])
def list_workmen(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    return crud.list_workmen(db)


@router.get("/workmen/{workman_id}", response_model=schemas.WorkmanRead)
def get_workman(workman_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    workman = crud.get_workman(db, workman_id)
    if not workman:
        raise NotFoundError("Workman", workman_id)
    return workman


@router.post("/workmen", response_model=schemas.WorkmanRead, status_code=201)
def create_workman(payload: schemas.WorkmanCreate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    return crud.create_workman(db, payload)


@router.put("/workmen/{workman_id}", response_model=schemas.WorkmanRead)
def update_workman(workman_id: int, payload: schemas.WorkmanCreate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    workman = crud.update_workman(db, workman_id, payload)
    if not workman:
        raise NotFoundError("Workman", workman_id)
    return workman


@router.delete("/workmen/{workman_id}", response_model=schemas.Message)
def delete_workman(workman_id: int, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    if not crud.delete_workman(db, workman_id):
        raise NotFoundError("Workman", workman_id)
    return {"message": "Workman deleted"}


# -------------------- Stages --------------------

def _visible_board(request: Request, db: Session, principal: Principal):
    orders = [crud.annotate_order(o, n) for o, n in crud.list_orders(db, principal)]
    stages = policy.visible_stages(
        principal.role,
        ordering.list_stages(db),
        principal.visible_stage_ids,
        orders,
        fallback_from_activity=request.app.state.settings.stage_fallback_from_activity,
    )
    return stages, orders


@router.get("/stages", response_model=List[schemas.StageRead])
def list_stages(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    return ordering.list_stages(db)


@router.get("/stages/visible", response_model=List[schemas.StageRead])
def list_visible_stages(request: Request, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    stages, _ = _visible_board(request, db, principal)
    return stages


@router.post("/stages", response_model=schemas.StageRead, status_code=201)
def create_stage(payload: schemas.StageCreate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    return ordering.create_stage(db, payload.title, payload.position)


# declared before /stages/{stage_id} so "reorder" is not parsed as an id
@router.put("/stages/reorder", response_model=schemas.BatchResultRead)
def reorder_stages(payload: schemas.StageReorder, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    if payload.stage_ids is not None:
        stage_ids = payload.stage_ids
    else:
        stage_ids = ordering.ids_from_positions(payload.stages)
    result = ordering.reorder_stages(db, stage_ids)
    result.raise_for_failures()
    return schemas.BatchResultRead.from_batch(result)


@router.put("/stages/{stage_id}", response_model=schemas.StageRead)
def update_stage(stage_id: int, payload: schemas.StageUpdate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    return ordering.update_stage(db, stage_id, payload.title, payload.position)


@router.delete("/stages/{stage_id}", response_model=schemas.Message)
def delete_stage(stage_id: int, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    ordering.delete_stage(db, stage_id)
    return {"message": "Stage deleted"}


@router.put("/stages/{stage_id}/orders/reorder", response_model=schemas.BatchResultRead)
def reorder_column(stage_id: int, payload: schemas.ColumnReorder, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    result = transitions.reprioritize_column(db, stage_id, payload.order_ids)
    result.raise_for_failures()
    return schemas.BatchResultRead.from_batch(result)


# -------------------- Orders --------------------

@router.get("/board", response_model=schemas.BoardRead)
def board(request: Request, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    """Kanban snapshot: the caller's columns, each column's orders top to bottom."""
    stages, orders = _visible_board(request, db, principal)
    position = {s.id: index for index, s in enumerate(stages)}
    columns = [o for o in orders if o.stage_id in position]
    columns = sorted(transitions.sort_column(columns), key=lambda o: position[o.stage_id])
    return {"stages": stages, "orders": columns}


@router.get("/orders", response_model=List[schemas.OrderRead])
def list_orders(
    search: Optional[str] = Query(default=None, max_length=100),
    stage_id: Optional[int] = None,
    status: Optional[OrderStatus] = None,
    sort: Optional[str] = None,
    direction: str = "asc",
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    rows = crud.list_orders(db, principal, search=search, stage_id=stage_id, status=status, sort=sort, direction=direction)
    return [crud.annotate_order(order, count) for order, count in rows]


def _visible_order(db: Session, principal: Principal, order_id: int):
    row = crud.get_order_with_count(db, order_id)
    # hidden orders read as missing
    if row is None or not policy.can_view_order(principal, row[0]):
        raise NotFoundError("Order", order_id)
    return row


@router.get("/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    order, count = _visible_order(db, principal, order_id)
    return crud.annotate_order(order, count)


@router.post("/orders", response_model=schemas.OrderRead, status_code=201)
def create_order(payload: schemas.OrderCreate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    return crud.annotate_order(transitions.create_order(db, payload))


@router.post("/orders/drop", response_model=schemas.BatchResultRead)
def drop_order(payload: schemas.OrderDrop, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    """Apply a board drag-and-drop: a stage change or a reorder within the column."""
    orders = [order for order, _ in crud.list_orders(db, admin)]
    if payload.order_id not in {o.id for o in orders}:
        raise NotFoundError("Order", payload.order_id)
    moves = transitions.plan_drop(orders, payload.order_id, payload.target_stage_id, payload.target_order_id)
    result = transitions.apply_moves(db, moves)
    result.raise_for_failures()
    return schemas.BatchResultRead.from_batch(result)


@router.put("/orders/{order_id}", response_model=schemas.OrderRead)
def update_order(order_id: int, payload: schemas.OrderUpdate, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    order = transitions.update_order(db, order_id, payload)
    return crud.annotate_order(order, len(order.notes))


@router.put("/orders/{order_id}/move", response_model=schemas.OrderRead)
def move_order(order_id: int, payload: schemas.OrderMove, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    order = transitions.move_order(db, order_id, payload.stage_id, payload.workman_id, payload.priority)
    return crud.annotate_order(order, len(order.notes))


@router.delete("/orders/{order_id}", response_model=schemas.Message)
def delete_order(order_id: int, db: Session = Depends(get_db), admin: Principal = Depends(get_admin)):
    if not crud.delete_order(db, order_id):
        raise NotFoundError("Order", order_id)
    return {"message": "Order deleted"}


# -------------------- Notes --------------------

@router.get("/orders/{order_id}/notes", response_model=List[schemas.NoteRead])
def list_notes(order_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    _visible_order(db, principal, order_id)
    return crud.list_notes(db, order_id)


@router.post("/orders/{order_id}/notes", response_model=schemas.NoteRead, status_code=201)
def create_note(order_id: int, payload: schemas.NoteCreate, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    _visible_order(db, principal, order_id)
    return crud.create_note(db, order_id, payload.content, principal.id)


@router.delete("/notes/{note_id}", response_model=schemas.Message)
def delete_note(note_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    note = crud.get_note(db, note_id)
    if not note:
        raise NotFoundError("Note", note_id)
    policy.require_note_owner(principal, note)
    crud.delete_note(db, note)
    return {"message": "Note deleted"}


# -------------------- App --------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    # Create tables if not existing. Schema changes of existing files go through migration/.
    init_db(app.state.engine)
    if settings.seed_defaults:
        with app.state.session_factory() as db:
            seed_defaults(db, settings.admin_password)
    logger.info("workshop tracker started (database=%s)", app.state.engine.url.render_as_string(hide_password=True))
    yield
    if app.state.owns_engine:
        app.state.engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    """Build the API with an explicitly constructed store.

    Pass ``engine`` (and optionally ``session_factory``) to run against an
    existing database, e.g. an in-memory one in tests.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(title="Workshop Tracker", lifespan=lifespan)
    app.state.settings = settings
    app.state.owns_engine = engine is None
    app.state.engine = engine or make_engine(settings.database_url)
    app.state.session_factory = session_factory or make_session_factory(app.state.engine)

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            "%s %s -> %s (%.0fms)", request.method, request.url.path, response.status_code, duration_ms,
            extra={"method": request.method, "path": request.url.path, "status": response.status_code},
        )
        return response

    register_error_handlers(app)
    app.include_router(router)
    # the dashboard calls the same routes under /api
    app.include_router(router, prefix="/api", include_in_schema=False)
    return app


app = create_app()
