import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, enum.Enum):
    ADMIN = "admin"
    CLIENT = "client"
    USER = "user"


class OrderStatus(str, enum.Enum):
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# 0=Low .. 3=Urgent
PRIORITY_LABELS = ("Low", "Medium", "High", "Urgent")
MIN_PRIORITY = 0
MAX_PRIORITY = len(PRIORITY_LABELS) - 1


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    role = Column(Enum(Role, values_callable=_enum_values, name="user_role"), nullable=False, default=Role.USER, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    stage_permissions = relationship("StagePermission", back_populates="user", cascade="all, delete-orphan")
    notes = relationship("Note", back_populates="author", passive_deletes=True)

    @property
    def visible_stage_ids(self) -> list[int]:
        return sorted(p.stage_id for p in self.stage_permissions)


class Workman(Base):
    __tablename__ = "workmen"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    orders = relationship("Order", back_populates="workman", passive_deletes=True)


class Stage(Base):
    __tablename__ = "stages"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    # ordering key; contiguous 0..n-1 only right after a reorder
    position = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    orders = relationship("Order", back_populates="stage")
    permissions = relationship("StagePermission", back_populates="stage", cascade="all, delete-orphan")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    client_name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False)
    received_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    stage_id = Column(Integer, ForeignKey("stages.id"), nullable=False, index=True)
    workman_id = Column(Integer, ForeignKey("workmen.id", ondelete="SET NULL"), nullable=True, index=True)
    priority = Column(Integer, nullable=False, default=0)
    status = Column(
        Enum(OrderStatus, values_callable=_enum_values, name="order_status"),
        nullable=False,
        default=OrderStatus.ACTIVE,
    )
    last_updated = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    stage = relationship("Stage", back_populates="orders")
    workman = relationship("Workman", back_populates="orders")
    notes = relationship("Note", back_populates="order", order_by="Note.created_at.desc()")

    @property
    def stage_title(self) -> str | None:
        return self.stage.title if self.stage is not None else None

    @property
    def workman_name(self) -> str | None:
        # a dangling workman reference reads as unassigned
        return self.workman.name if self.workman is not None else None


class Note(Base):
    __tablename__ = "notes"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="notes")
    author = relationship("User", back_populates="notes")

    @property
    def created_by_name(self) -> str | None:
        return self.author.name if self.author is not None else None


class StagePermission(Base):
    __tablename__ = "user_stage_permissions"
    __table_args__ = (UniqueConstraint("user_id", "stage_id", name="uq_user_stage"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id = Column(Integer, ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="stage_permissions")
    stage = relationship("Stage", back_populates="permissions")
