"""
Transaction Module - Service Layer
====================================
The customer's order history: filtered, paginated listing with an
aggregate summary, plus the cancel / reorder lifecycle actions.

Every query is scoped to the calling user. Sort columns come from an
allow-list; a client-supplied name is never used as a column directly.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from common.exceptions import ConflictError, NotFoundError, OrderNotCancellableError, ValidationError
from common.helpers import money, money_str, now_utc, safe_int
from modules.catalog.service import catalog_service
from modules.order.models import Order, OrderStatus, BASE_STATUSES, CANCELLABLE_STATUSES
from modules.order.service import serialize_order
from modules.order.validation import sanitize_string

logger = logging.getLogger("toko.transaction")

PERIODS = ["today", "week", "month", "year", "all"]
SORT_COLUMNS = {
    "createdAt": Order.created_at,
    "total": Order.total,
    "status": Order.status,
    "orderNumber": Order.order_number,
}
SORT_ORDERS = ["asc", "desc"]
MAX_PAGE_SIZE = 50
DEFAULT_PAGE_SIZE = 10

ACTIONS = ["cancel", "reorder"]

CANCEL_REJECTIONS = {
    OrderStatus.SHIPPED.value: "Pesanan yang sudah dikirim tidak dapat dibatalkan",
    OrderStatus.DELIVERED.value: "Pesanan yang sudah diterima tidak dapat dibatalkan",
    OrderStatus.CANCELLED.value: "Pesanan sudah dibatalkan sebelumnya",
    OrderStatus.FAILED.value: "Pesanan yang gagal tidak dapat dibatalkan",
    OrderStatus.PAID.value: "Pesanan yang sudah dibayar sedang diproses, hubungi customer service untuk pembatalan",
}


def cancel_rejection_message(status: str) -> str:
    return CANCEL_REJECTIONS.get(status, f"Pesanan dengan status '{status}' tidak dapat dibatalkan")


def escape_like(term: str) -> str:
    """Search input is matched literally; LIKE wildcards are escaped."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def period_range(period: str, now: Optional[datetime] = None) -> Optional[Tuple[datetime, datetime]]:
    """
    [start, end) for a period bucket, in UTC. Weeks start on Sunday.
    'all' (or anything unknown) means no bound.
    """
    now = now or now_utc()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if period == "today":
        return today, today + timedelta(days=1)
    if period == "week":
        # weekday(): Monday=0 ... Sunday=6
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return start, start + timedelta(days=7)
    if period == "month":
        start = today.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end
    if period == "year":
        start = today.replace(month=1, day=1)
        return start, start.replace(year=start.year + 1)
    return None


@dataclass
class TransactionQuery:
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    period: str = "all"
    status: str = ""
    search: str = ""
    sort_by: str = "createdAt"
    sort_order: str = "desc"
    include_items: bool = False

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def filters(self) -> Dict[str, str]:
        return {
            "period": self.period,
            "status": self.status,
            "search": self.search,
            "sortBy": self.sort_by,
            "sortOrder": self.sort_order,
        }


def parse_transaction_query(params: Dict[str, Optional[str]]) -> TransactionQuery:
    """Validate raw query parameters. All problems are reported together (400)."""
    errors: List[str] = []
    q = TransactionQuery()

    page = params.get("page")
    if page is not None:
        value = safe_int(page)
        if value is None or value < 1:
            errors.append("Invalid page number")
        else:
            q.page = value

    limit = params.get("limit")
    if limit is not None:
        value = safe_int(limit)
        if value is None or value < 1 or value > MAX_PAGE_SIZE:
            errors.append(f"Invalid limit (max {MAX_PAGE_SIZE})")
        else:
            q.limit = value

    period = params.get("period")
    if period:
        if period not in PERIODS:
            errors.append("Invalid period parameter")
        else:
            q.period = period

    status = params.get("status")
    if status:
        if status not in BASE_STATUSES:
            errors.append("Invalid status parameter")
        else:
            q.status = status

    sort_by = params.get("sortBy")
    if sort_by:
        if sort_by not in SORT_COLUMNS:
            errors.append("Invalid sortBy parameter")
        else:
            q.sort_by = sort_by

    sort_order = params.get("sortOrder")
    if sort_order:
        if sort_order not in SORT_ORDERS:
            errors.append("Invalid sortOrder parameter")
        else:
            q.sort_order = sort_order

    if errors:
        raise ValidationError(", ".join(errors))

    q.search = sanitize_string(params.get("search") or "", 100)
    q.include_items = params.get("includeItems") == "true"
    return q


@dataclass
class TransactionPage:
    orders: List[Order] = field(default_factory=list)
    total_count: int = 0
    summary: Dict[str, Any] = field(default_factory=dict)


class TransactionService:

    # ==========================================
    # 📋 Listing
    # ==========================================

    def _conditions(self, user_id: int, q: TransactionQuery, now: Optional[datetime] = None) -> list:
        conditions = [Order.user_id == user_id]

        bounds = period_range(q.period, now)
        if bounds:
            conditions.append(Order.created_at >= bounds[0])
            conditions.append(Order.created_at < bounds[1])

        if q.status:
            conditions.append(Order.status == q.status)

        if q.search:
            term = f"%{escape_like(q.search)}%"
            conditions.append(or_(
                Order.order_number.ilike(term, escape="\\"),
                Order.recipient_name.ilike(term, escape="\\"),
                Order.recipient_email.ilike(term, escape="\\"),
            ))
        return conditions

    async def list_transactions(
        self, db: AsyncSession, user_id: int, q: TransactionQuery, now: Optional[datetime] = None,
    ) -> TransactionPage:
        where = and_(*self._conditions(user_id, q, now))

        column = SORT_COLUMNS[q.sort_by]
        direction = column.asc() if q.sort_order == "asc" else column.desc()
        stmt = (
            select(Order)
            .where(where)
            .order_by(direction, Order.id.desc())
            .offset(q.offset)
            .limit(q.limit)
        )
        result = await db.execute(stmt)
        orders = list(result.scalars().all())

        summary = await self.summarize(db, where)
        return TransactionPage(orders=orders, total_count=summary["totalOrders"], summary=summary)

    async def summarize(self, db: AsyncSession, where) -> Dict[str, Any]:
        """Counts per status plus total / average order value over the filtered set."""
        columns = [
            func.count(Order.id).label("totalOrders"),
            func.coalesce(func.sum(Order.total), 0).label("totalAmount"),
        ]
        for status in BASE_STATUSES:
            columns.append(
                func.coalesce(func.sum(case((Order.status == status, 1), else_=0)), 0).label(f"{status}Orders")
            )
        row = (await db.execute(select(*columns).where(where))).one()

        count = int(row.totalOrders or 0)
        total_amount = money(row.totalAmount)
        summary = {
            "totalOrders": count,
            "totalAmount": money_str(total_amount),
            "avgOrderValue": money_str(total_amount / count if count else 0),
        }
        for status in BASE_STATUSES:
            summary[f"{status}Orders"] = int(getattr(row, f"{status}Orders") or 0)
        return summary

    def build_response(self, page: TransactionPage, q: TransactionQuery) -> Dict[str, Any]:
        total_pages = (page.total_count + q.limit - 1) // q.limit
        return {
            "transactions": [serialize_order(o, include_items=q.include_items) for o in page.orders],
            "pagination": {
                "currentPage": q.page,
                "totalPages": total_pages,
                "totalCount": page.total_count,
                "limit": q.limit,
                "hasNextPage": q.page < total_pages,
                "hasPrevPage": q.page > 1,
            },
            "summary": page.summary,
            "filters": q.filters(),
        }

    # ==========================================
    # ❌ Cancel
    # ==========================================

    async def get_user_order(self, db: AsyncSession, user_id: int, order_id: str) -> Order:
        result = await db.execute(select(Order).where(Order.id == order_id, Order.user_id == user_id))
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def cancel_order(self, db: AsyncSession, user_id: int, order_id: str, reason: str = "User cancellation") -> Order:
        """
        pending/processing -> cancelled, restoring held stock, in one transaction.
        The update is conditional on the status we read; losing a race is a 409.
        """
        order = await self.get_user_order(db, user_id, order_id)
        previous = order.status
        if OrderStatus(previous) not in CANCELLABLE_STATUSES:
            raise OrderNotCancellableError(cancel_rejection_message(previous))

        stamp = now_utc()
        meta = dict(order.meta or {})
        meta["cancelled"] = {
            "cancelled_at": stamp.isoformat(),
            "cancelled_by": user_id,
            "reason": reason,
            "previous_status": previous,
        }
        history = list(meta.get("status_history") or [])
        history.append({
            "from": previous,
            "to": OrderStatus.CANCELLED.value,
            "source": f"user:{user_id}",
            "at": stamp.isoformat(),
            "evidence": {"reason": reason},
        })
        meta["status_history"] = history

        # Plain values; rollback would expire the loaded items
        restocks = [(item.product_id, item.quantity) for item in order.items]

        try:
            result = await db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == previous)
                .values({Order.status: OrderStatus.CANCELLED.value, Order.meta: meta, Order.updated_at: stamp})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                raise ConflictError("Status pesanan telah berubah, silakan muat ulang")

            # Both cancellable statuses hold stock
            for product_id, quantity in restocks:
                if not await catalog_service.restore_stock(db, product_id, quantity):
                    logger.warning(f"Stock restore skipped for missing product {product_id}")
            await db.commit()
        except ConflictError:
            raise
        except Exception:
            await db.rollback()
            logger.exception(f"Cancel failed for order {order_id}")
            raise

        set_committed_value(order, "status", OrderStatus.CANCELLED.value)
        set_committed_value(order, "meta", meta)
        logger.info(f"Order {order.order_number} cancelled by user {user_id} (was {previous})")
        return order

    # ==========================================
    # 🔁 Reorder
    # ==========================================

    async def reorder_items(self, db: AsyncSession, user_id: int, order_id: str) -> List[Dict[str, int]]:
        """Frozen item list for re-seeding a cart. Creates nothing."""
        order = await self.get_user_order(db, user_id, order_id)
        return [{"productId": item.product_id, "quantity": item.quantity} for item in order.items]


def parse_action_body(body: Dict[str, Any]) -> Tuple[str, str]:
    order_id = sanitize_string(body.get("orderId"), 50)
    action = sanitize_string(body.get("action"), 20)
    if not order_id or not action:
        raise ValidationError("Order ID and action are required")
    if action not in ACTIONS:
        raise ValidationError("Invalid action")
    return order_id, action


transaction_service = TransactionService()
