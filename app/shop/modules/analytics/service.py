"""
Back-office analytics.

All figures are computed with aggregate queries. Revenue counts only DELIVERED orders; sales
rankings leave out cancelled and refunded orders. Dates are naive UTC and a report range is
[start, end).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.shop.errors import ApiError
from app.shop.models import User
from app.shop.modules.catalog.models import Category, Product
from app.shop.modules.orders.models import ORDER_STATUSES, TERMINAL_STATUSES, Order, OrderItem
from app.shop.modules.orders.service import STATUS_LABELS
from app.shop.modules.users.service import role_stats
from app.shop.utils import as_float, iso, parse_date_range

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

REPORT_TYPES = ("overview", "sales", "products", "users", "orders", "all")
DEFAULT_RANGE_DAYS = 30
TOP_N = 10
EXPORT_TOP_N = 50


def _dec(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _day(value: Any) -> str:
    # func.date() gives a string on SQLite and a date on Postgres
    return str(value)[:10]


def _pct(part: Decimal | int, whole: Decimal | int) -> float:
    return round(float(part) / float(whole) * 100, 2) if whole else 0.0


def resolve_range(args: Any, *, default_days: int | None = DEFAULT_RANGE_DAYS) -> tuple[datetime | None, datetime | None]:
    start, end = parse_date_range(args.get("startDate"), args.get("endDate"))
    if default_days is not None:
        if end is None:
            end = datetime.utcnow()
        if start is None:
            start = end - timedelta(days=default_days)
    if start is not None and end is not None and start >= end:
        raise ApiError("startDate must be before endDate.")
    return start, end


def _in_range(q, col, start: datetime | None, end: datetime | None):
    if start is not None:
        q = q.filter(col >= start)
    if end is not None:
        q = q.filter(col < end)
    return q


def _delivered_revenue(s: "Session") -> Decimal:
    return _dec(s.query(func.sum(Order.final_amount)).filter(Order.status == "DELIVERED").scalar())


def overview(s: "Session", start: datetime | None, end: datetime | None) -> dict[str, Any]:
    active_users = _in_range(s.query(func.count(func.distinct(Order.user_id))), Order.created_at, start, end).scalar()
    new_users = _in_range(s.query(func.count(User.id)), User.created_at, start, end).scalar()
    completed = _in_range(
        s.query(func.count(Order.id)).filter(Order.status == "DELIVERED"), Order.created_at, start, end
    ).scalar()
    return {
        "totalUsers": s.query(func.count(User.id)).scalar() or 0,
        "totalProducts": s.query(func.count(Product.id)).scalar() or 0,
        "totalOrders": s.query(func.count(Order.id)).scalar() or 0,
        "totalRevenue": as_float(_delivered_revenue(s)),
        "activeUsers": active_users or 0,
        "newUsers": new_users or 0,
        "completedOrders": completed or 0,
        "pendingOrders": s.query(func.count(Order.id)).filter(Order.status.in_(("PENDING", "PAID"))).scalar() or 0,
    }


def sales(s: "Session", start: datetime | None, end: datetime | None) -> dict[str, Any]:
    day = func.date(Order.created_at)
    daily = _in_range(
        s.query(day, func.sum(Order.final_amount), func.count(Order.id)).filter(Order.status == "DELIVERED"),
        Order.created_at,
        start,
        end,
    )
    daily_rows = daily.group_by(day).order_by(day).all()

    line_total = func.sum(OrderItem.price * OrderItem.quantity)
    by_category = _in_range(
        s.query(Category.name, line_total, func.sum(OrderItem.quantity), func.count(func.distinct(Order.id)))
        .select_from(OrderItem)
        .join(Order, OrderItem.order_id == Order.id)
        .join(Product, OrderItem.product_id == Product.id)
        .outerjoin(Category, Product.category_id == Category.id)
        .filter(Order.status == "DELIVERED"),
        Order.created_at,
        start,
        end,
    ).group_by(Category.name).all()
    total = sum((_dec(r[1]) for r in by_category), Decimal("0"))

    return {
        "dailySales": [
            {"date": _day(d), "amount": as_float(_dec(amount)), "orders": int(n)} for d, amount, n in daily_rows
        ],
        "categorySales": sorted(
            (
                {
                    "category": name or "Uncategorized",
                    "amount": as_float(_dec(revenue)),
                    "quantity": int(qty or 0),
                    "orders": int(order_count or 0),
                    "percentage": _pct(_dec(revenue), total),
                }
                for name, revenue, qty, order_count in by_category
            ),
            key=lambda r: r["amount"] or 0,
            reverse=True,
        ),
    }


def top_products(s: "Session", start: datetime | None, end: datetime | None, limit: int) -> list[dict[str, Any]]:
    sold = func.sum(OrderItem.quantity)
    rows = _in_range(
        s.query(Product.id, Product.name, Product.price, Category.name, sold, func.sum(OrderItem.price * OrderItem.quantity))
        .select_from(OrderItem)
        .join(Order, OrderItem.order_id == Order.id)
        .join(Product, OrderItem.product_id == Product.id)
        .outerjoin(Category, Product.category_id == Category.id)
        .filter(Order.status.notin_(TERMINAL_STATUSES)),
        Order.created_at,
        start,
        end,
    ).group_by(Product.id, Product.name, Product.price, Category.name).order_by(sold.desc(), Product.id.asc()).limit(limit).all()
    return [
        {
            "id": pid,
            "name": name,
            "category": category,
            "price": as_float(price),
            "sales": int(qty or 0),
            "revenue": as_float(_dec(revenue)),
        }
        for pid, name, price, category, qty, revenue in rows
    ]


def products(s: "Session", start: datetime | None, end: datetime | None, *, low_stock_threshold: int) -> dict[str, Any]:
    low = (
        s.query(Product)
        .filter(Product.stock < low_stock_threshold)
        .order_by(Product.stock.asc(), Product.id.asc())
        .limit(TOP_N)
        .all()
    )
    per_category = (
        s.query(Category.name, func.count(Product.id))
        .select_from(Product)
        .outerjoin(Category, Product.category_id == Category.id)
        .group_by(Category.name)
        .all()
    )
    return {
        "topSelling": top_products(s, start, end, TOP_N),
        "lowStock": [{"id": p.id, "name": p.name, "stock": p.stock, "price": as_float(p.price)} for p in low],
        "categoryStats": [{"category": name or "Uncategorized", "count": int(n)} for name, n in per_category],
    }


def top_customers(s: "Session", limit: int) -> list[dict[str, Any]]:
    spent = func.sum(Order.final_amount)
    rows = (
        s.query(User, spent, func.count(Order.id))
        .join(Order, Order.user_id == User.id)
        .filter(Order.status == "DELIVERED")
        .group_by(User.id)
        .order_by(spent.desc(), User.id.asc())
        .limit(limit)
        .all()
    )
    order_counts = dict(
        s.query(Order.user_id, func.count(Order.id))
        .filter(Order.user_id.in_([u.id for u, _, _ in rows] or [0]))
        .group_by(Order.user_id)
        .all()
    )
    return [
        {
            "id": u.id,
            "name": u.name,
            "email": u.email,
            "registeredAt": iso(u.created_at),
            "totalSpent": as_float(_dec(total)),
            "deliveredOrders": int(delivered),
            "orderCount": int(order_counts.get(u.id, 0)),
        }
        for u, total, delivered in rows
    ]


def users(s: "Session", start: datetime | None, end: datetime | None) -> dict[str, Any]:
    day = func.date(User.created_at)
    trend = _in_range(s.query(day, func.count(User.id)), User.created_at, start, end).group_by(day).order_by(day).all()
    return {
        "usersByRole": [{"role": role, "count": n} for role, n in sorted(role_stats(s).items())],
        "registrationTrend": [{"date": _day(d), "count": int(n)} for d, n in trend],
        "topCustomers": top_customers(s, TOP_N),
    }


def status_distribution(s: "Session", start: datetime | None, end: datetime | None) -> list[dict[str, Any]]:
    rows = _in_range(
        s.query(Order.status, func.count(Order.id), func.sum(Order.final_amount)), Order.created_at, start, end
    ).group_by(Order.status).all()
    by_status = {st: (int(n), _dec(amount)) for st, n, amount in rows}
    total = sum(n for n, _ in by_status.values())
    return [
        {
            "status": st,
            "label": STATUS_LABELS.get(st, st),
            "count": by_status.get(st, (0, Decimal("0")))[0],
            "amount": as_float(by_status.get(st, (0, Decimal("0")))[1]),
            "percentage": _pct(by_status.get(st, (0, 0))[0], total),
        }
        for st in ORDER_STATUSES
    ]


def orders(s: "Session", start: datetime | None, end: datetime | None) -> dict[str, Any]:
    day = func.date(Order.created_at)
    trend = _in_range(
        s.query(day, func.count(Order.id), func.sum(Order.final_amount)), Order.created_at, start, end
    ).group_by(day).order_by(day).all()
    avg = _in_range(
        s.query(func.avg(Order.final_amount)).filter(Order.status == "DELIVERED"), Order.created_at, start, end
    ).scalar()
    methods = _in_range(
        s.query(Order.payment_method, func.count(Order.id), func.sum(Order.final_amount)), Order.created_at, start, end
    ).group_by(Order.payment_method).all()
    return {
        "statusDistribution": status_distribution(s, start, end),
        "orderTrend": [{"date": _day(d), "count": int(n), "amount": as_float(_dec(amount))} for d, n, amount in trend],
        "averageOrderValue": as_float(_dec(avg)),
        "paymentMethods": [
            {"method": method or "unpaid", "count": int(n), "amount": as_float(_dec(amount))} for method, n, amount in methods
        ],
    }


def build_report(s: "Session", report_type: str, args: Any, *, low_stock_threshold: int) -> dict[str, Any]:
    report_type = (report_type or "overview").strip().lower()
    if report_type not in REPORT_TYPES:
        raise ApiError(f"Invalid report type. Must be one of: {', '.join(REPORT_TYPES)}")
    start, end = resolve_range(args)
    wants = REPORT_TYPES[:-1] if report_type == "all" else (report_type,)

    data: dict[str, Any] = {"range": {"startDate": iso(start), "endDate": iso(end)}}
    if "overview" in wants:
        data["overview"] = overview(s, start, end)
    if "sales" in wants:
        data["sales"] = sales(s, start, end)
    if "products" in wants:
        data["products"] = products(s, start, end, low_stock_threshold=low_stock_threshold)
    if "users" in wants:
        data["users"] = users(s, start, end)
    if "orders" in wants:
        data["orders"] = orders(s, start, end)
    return data


# ---------- Export ----------
ORDER_HEADERS = ["Order No", "Customer Name", "Customer Email", "Status", "Amount", "Created At", "Payment Method"]
CUSTOMER_HEADERS = ["Name", "Email", "Registered At", "Orders", "Total Spent"]
PRODUCT_HEADERS = ["Product", "Category", "Sold Quantity", "Revenue", "Unit Price"]


def export_report(s: "Session", args: Any) -> dict[str, Any]:
    """Figures behind the downloadable report. No dates means all time."""
    start, end = resolve_range(args, default_days=None)
    order_rows = (
        _in_range(s.query(Order), Order.created_at, start, end).order_by(Order.created_at.desc(), Order.id.desc()).all()
    )
    return {
        "overview": {
            "totalUsers": s.query(func.count(User.id)).scalar() or 0,
            "totalProducts": s.query(func.count(Product.id)).scalar() or 0,
            "totalOrders": s.query(func.count(Order.id)).scalar() or 0,
            "totalRevenue": as_float(_delivered_revenue(s)),
            "generatedAt": iso(datetime.utcnow().replace(microsecond=0)),
        },
        "statuses": status_distribution(s, start, end),
        "orders": [
            [
                o.order_no,
                o.user.name if o.user else None,
                o.user.email if o.user else None,
                STATUS_LABELS.get(o.status, o.status),
                as_float(o.final_amount),
                o.created_at.strftime("%Y-%m-%d %H:%M:%S") if o.created_at else None,
                o.payment_method,
            ]
            for o in order_rows
        ],
        "customers": top_customers(s, EXPORT_TOP_N),
        "products": top_products(s, start, end, EXPORT_TOP_N),
    }


def report_sheets(report: dict[str, Any]) -> list[tuple[str, list[str], list[list[Any]]]]:
    ov = report["overview"]
    overview_rows = [
        ["Total users", ov["totalUsers"]],
        ["Total products", ov["totalProducts"]],
        ["Total orders", ov["totalOrders"]],
        ["Total revenue", ov["totalRevenue"]],
        ["Generated at", ov["generatedAt"]],
    ]
    return [
        ("Overview", ["Metric", "Value"], overview_rows),
        (
            "Order Status",
            ["Status", "Count", "Amount"],
            [[r["label"], r["count"], r["amount"]] for r in report["statuses"]],
        ),
        ("Orders", ORDER_HEADERS, report["orders"]),
        (
            "Top Customers",
            CUSTOMER_HEADERS,
            [[c["name"], c["email"], c["registeredAt"], c["orderCount"], c["totalSpent"]] for c in report["customers"]],
        ),
        (
            "Top Products",
            PRODUCT_HEADERS,
            [[p["name"], p["category"] or "Uncategorized", p["sales"], p["revenue"], p["price"]] for p in report["products"]],
        ),
    ]
