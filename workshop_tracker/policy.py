"""
Access policy: which stages and orders an account may see, and which
operations it may perform.

Every visibility and authorization decision in the app goes through this
module. The list filters (``visible_stages`` / ``visible_orders``) work on
plain objects so the board can be computed in memory, and ``order_filter``
expresses the same order rule as SQL conditions for ``GET /orders``.

Rules:
    admin   sees every stage and every order.
    client  sees the stages it was granted and every order in them,
            whoever the assignee is.
    user    sees only orders assigned to a workman with the same name as
            the account, narrowed to its granted stages when it has any.
            Without grants it sees the stages that currently hold orders.
"""
from typing import Iterable, NamedTuple, Optional, Sequence, TypeVar

from sqlalchemy import false

from .errors import AuthorizationError
from .models import Order, Role, Workman

T = TypeVar("T")


class Principal(NamedTuple):
    """The authenticated account a request acts for."""

    id: int
    username: str
    role: Role
    name: str
    visible_stage_ids: frozenset

    @classmethod
    def from_user(cls, user) -> "Principal":
        return cls(
            id=user.id,
            username=user.username,
            role=Role(user.role),
            name=user.name,
            visible_stage_ids=frozenset(user.visible_stage_ids),
        )

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def visible_stages(
    role: Role,
    all_stages: Sequence[T],
    user_visible_ids: Iterable[int],
    orders: Iterable = (),
    fallback_from_activity: bool = True,
) -> list[T]:
    """Return the subset of ``all_stages`` (order preserved) the role may see.

    ``orders`` is only consulted for the activity fallback of ``user``
    accounts without explicit grants; pass the orders already visible to
    that account.
    """
    role = Role(role)
    granted = set(user_visible_ids)
    if role is Role.ADMIN:
        return list(all_stages)
    if role is Role.CLIENT or granted:
        return [s for s in all_stages if s.id in granted]
    if not fallback_from_activity:
        return []
    active = {o.stage_id for o in orders}
    return [s for s in all_stages if s.id in active]


def visible_orders(role: Role, principal: Optional[Principal], all_orders: Sequence[T]) -> list[T]:
    """Return the subset of ``all_orders`` (order preserved) visible to ``principal``.

    Orders must expose ``stage_id`` and ``workman_name``.
    """
    role = Role(role)
    if role is Role.ADMIN:
        return list(all_orders)
    granted = set(principal.visible_stage_ids) if principal is not None else set()
    if role is Role.CLIENT:
        return [o for o in all_orders if o.stage_id in granted]
    name = principal.name if principal is not None else None
    return [
        o for o in all_orders
        if o.workman_name is not None
        and o.workman_name == name
        and (not granted or o.stage_id in granted)
    ]


def order_filter(principal: Principal) -> list:
    """SQL conditions equivalent to ``visible_orders``.

    The query they are applied to must outer-join ``Workman`` on
    ``Order.workman_id``.
    """
    if principal.is_admin:
        return []
    granted = sorted(principal.visible_stage_ids)
    if principal.role is Role.CLIENT:
        if not granted:
            return [false()]
        return [Order.stage_id.in_(granted)]
    conditions = [Workman.name == principal.name]
    if granted:
        conditions.append(Order.stage_id.in_(granted))
    return conditions


def can_view_order(principal: Principal, order) -> bool:
    return bool(visible_orders(principal.role, principal, [order]))


def require_admin(principal: Principal, message: str = "Admin access required") -> None:
    if not principal.is_admin:
        raise AuthorizationError(message)


def can_delete_note(principal: Principal, note) -> bool:
    return principal.is_admin or note.created_by == principal.id


def require_note_owner(principal: Principal, note) -> None:
    if not can_delete_note(principal, note):
        raise AuthorizationError("Not authorized")
