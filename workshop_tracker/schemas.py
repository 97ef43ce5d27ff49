from datetime import date, datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic.config import ConfigDict

from .models import MAX_PRIORITY, MIN_PRIORITY, OrderStatus, Role

MIN_PASSWORD_LENGTH = 6


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


def _stage_ids_field():
    # the dashboard sends camelCase "visibleStages"
    return Field(
        default_factory=list,
        validation_alias=AliasChoices("visible_stage_ids", "visibleStages"),
    )


class _UserFields(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=200)
    role: Role
    name: str = Field(..., min_length=1, max_length=100)
    visible_stage_ids: List[int] = _stage_ids_field()

    @field_validator("email")
    def email_shape(cls, v: str):
        if "@" not in v:
            raise ValueError("invalid email address")
        return v.strip()

    @field_validator("visible_stage_ids")
    def unique_stage_ids(cls, v: List[int]):
        return sorted(set(v))

    @model_validator(mode="after")
    def client_needs_stages(self):
        if self.role is Role.CLIENT and not self.visible_stage_ids:
            raise ValueError("Client users must have at least one visible stage")
        return self


class UserCreate(_UserFields):
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


class UserUpdate(_UserFields):
    # empty or missing keeps the current password
    password: Optional[str] = None

    @field_validator("password")
    def password_length(cls, v: Optional[str]):
        if v and len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v or None


class UserRead(BaseModel):
    id: int
    username: str
    email: str
    role: Role
    name: str
    visible_stage_ids: List[int] = []
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserRead


class WorkmanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email", "phone")
    def blank_is_none(cls, v: Optional[str]):
        if v is None or not v.strip():
            return None
        return v.strip()


class WorkmanRead(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class StageCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    position: Optional[int] = Field(default=None, ge=0)


class StageUpdate(StageCreate):
    pass


class StageRead(BaseModel):
    id: int
    title: str
    position: int

    model_config = ConfigDict(from_attributes=True)


class StagePosition(BaseModel):
    id: int
    position: int = Field(..., ge=0)


class StageReorder(BaseModel):
    """Either the new id sequence, or ``{id, position}`` pairs as the dashboard sends them."""

    stage_ids: Optional[List[int]] = None
    stages: Optional[List[StagePosition]] = None

    @model_validator(mode="after")
    def one_form(self):
        if self.stage_ids is None and self.stages is None:
            raise ValueError("stage_ids or stages is required")
        return self


class OrderCreate(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    received_date: date
    due_date: date
    stage_id: Optional[int] = None
    workman_id: Optional[int] = None
    priority: int = Field(default=0, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    status: OrderStatus = OrderStatus.ACTIVE


class OrderUpdate(BaseModel):
    """Full replacement of an order's mutable fields."""

    client_name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    received_date: date
    due_date: date
    stage_id: int
    workman_id: Optional[int] = None
    # column reordering can push priorities past Urgent; quick edits pass them through
    priority: int = Field(..., ge=MIN_PRIORITY)
    status: OrderStatus = OrderStatus.ACTIVE


class OrderMove(BaseModel):
    stage_id: int
    workman_id: Optional[int] = None
    priority: int = Field(default=0, ge=MIN_PRIORITY)


class OrderDrop(BaseModel):
    order_id: int
    target_stage_id: Optional[int] = None
    target_order_id: Optional[int] = None

    @model_validator(mode="after")
    def one_target(self):
        if (self.target_stage_id is None) == (self.target_order_id is None):
            raise ValueError("exactly one of target_stage_id or target_order_id is required")
        return self


class ColumnReorder(BaseModel):
    order_ids: List[int]


class OrderRead(BaseModel):
    id: int
    client_name: str
    description: str
    received_date: date
    due_date: date
    stage_id: int
    stage_title: Optional[str] = None
    workman_id: Optional[int] = None
    workman_name: Optional[str] = None
    priority: int
    status: OrderStatus
    last_updated: datetime
    created_at: datetime
    notes_count: int = 0
    alert: bool = False
    due_status: str = "normal"

    model_config = ConfigDict(from_attributes=True)


class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1)


class NoteRead(BaseModel):
    id: int
    order_id: int
    content: str
    created_by: Optional[int] = None
    created_by_name: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ItemResultRead(BaseModel):
    id: int
    ok: bool
    error: Optional[str] = None


class BatchResultRead(BaseModel):
    ok: bool
    results: List[ItemResultRead] = []

    @classmethod
    def from_batch(cls, batch) -> "BatchResultRead":
        return cls(
            ok=batch.ok,
            results=[ItemResultRead(id=r.key, ok=r.ok, error=r.message) for r in batch],
        )


class BoardRead(BaseModel):
    stages: List[StageRead]
    orders: List[OrderRead]


class Message(BaseModel):
    message: str
