"""Read-only revenue rollups over paid orders."""
import calendar
import csv
import io
from datetime import datetime
from typing import List, Tuple

from bson import ObjectId

EMPTY_SUMMARY = {"total_revenue": 0.0, "total_orders": 0, "average_order_value": 0.0}


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """Naive UTC bounds, matching what Mongo hands back for stored dates."""
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def year_bounds(year: int) -> Tuple[datetime, datetime]:
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


def paid_between(start: datetime, end: datetime) -> dict:
    return {"is_paid": True, "created_at": {"$gte": start, "$lt": end}}


def _summary_row(row: dict) -> dict:
    return {
        "total_revenue": round(row.get("total_revenue") or 0.0, 2),
        "total_orders": row.get("total_orders", 0),
        "average_order_value": round(row.get("average_order_value") or 0.0, 2),
    }


def revenue_summary(db, match: dict) -> dict:
    rows = list(db["order"].aggregate([
        {"$match": match},
        {"$group": {
            "_id": None,
            "total_revenue": {"$sum": "$total"},
            "total_orders": {"$sum": 1},
            "average_order_value": {"$avg": "$total"},
        }},
    ]))
    return _summary_row(rows[0]) if rows else dict(EMPTY_SUMMARY)


def top_products(db, match: dict, limit: int = 10) -> List[dict]:
    rows = db["order"].aggregate([
        {"$match": match},
        {"$unwind": "$items"},
        {"$group": {
            "_id": "$items.product_id",
            "name": {"$first": "$items.name"},
            "total_quantity": {"$sum": "$items.quantity"},
            "total_revenue": {"$sum": {"$multiply": ["$items.price", "$items.quantity"]}},
        }},
        {"$sort": {"total_revenue": -1}},
        {"$limit": limit},
    ])
    return [
        {
            "product_id": r["_id"],
            "name": r["name"],
            "total_quantity": r["total_quantity"],
            "total_revenue": round(r["total_revenue"], 2),
        }
        for r in rows
    ]


def monthly_breakdown(db, year: int) -> List[dict]:
    start, end = year_bounds(year)
    rows = db["order"].aggregate([
        {"$match": paid_between(start, end)},
        {"$group": {
            "_id": {"month": {"$month": "$created_at"}},
            "total_revenue": {"$sum": "$total"},
            "total_orders": {"$sum": 1},
            "average_order_value": {"$avg": "$total"},
        }},
        {"$sort": {"_id.month": 1}},
    ])
    return [{"month": r["_id"]["month"], **_summary_row(r)} for r in rows]


def monthly_report(db, year: int, month: int) -> dict:
    match = paid_between(*month_bounds(year, month))
    return {
        "period": {"year": year, "month": month},
        "summary": revenue_summary(db, match),
        "top_products": top_products(db, match),
    }


def yearly_report(db, year: int) -> dict:
    return {
        "year": year,
        "monthly_breakdown": monthly_breakdown(db, year),
        "year_totals": revenue_summary(db, paid_between(*year_bounds(year))),
    }


def revenue_series(db, since: datetime) -> List[dict]:
    rows = db["order"].aggregate([
        {"$match": {"is_paid": True, "created_at": {"$gte": since}}},
        {"$group": {
            "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
            "revenue": {"$sum": "$total"},
            "orders": {"$sum": 1},
        }},
        {"$sort": {"_id.year": 1, "_id.month": 1}},
    ])
    return [
        {"year": r["_id"]["year"], "month": r["_id"]["month"], "revenue": round(r["revenue"], 2), "orders": r["orders"]}
        for r in rows
    ]


def to_csv(fields: List[str], rows: List[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fields)
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


def monthly_export(db, year: int, month: int) -> str:
    orders = list(db["order"].find(paid_between(*month_bounds(year, month))).sort("created_at", -1))
    user_ids = [ObjectId(uid) for uid in {o["user"] for o in orders if o.get("user")}]
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1})}
    rows = []
    for o in orders:
        customer = users.get(o.get("user")) or {}
        rows.append({
            "Order Number": o["order_number"],
            "Date": f"{o['created_at']:%Y-%m-%d}",
            "Customer": customer.get("name") or "Guest",
            "Email": customer.get("email") or o.get("guest_email") or "",
            "Status": o["status"],
            "Items": len(o.get("items", [])),
            "Subtotal": f"{o['subtotal']:.2f}",
            "Tax": f"{o['tax']:.2f}",
            "Shipping": f"{o['shipping']:.2f}",
            "Total": f"{o['total']:.2f}",
            "Payment Method": o.get("payment_method") or "",
        })
    fields = ["Order Number", "Date", "Customer", "Email", "Status", "Items",
              "Subtotal", "Tax", "Shipping", "Total", "Payment Method"]
    return to_csv(fields, rows)


def yearly_export(db, year: int) -> str:
    rows = [
        {
            "Month": calendar.month_name[r["month"]],
            "Total Orders": r["total_orders"],
            "Total Revenue": f"{r['total_revenue']:.2f}",
            "Average Order Value": f"{r['average_order_value']:.2f}",
        }
        for r in monthly_breakdown(db, year)
    ]
    return to_csv(["Month", "Total Orders", "Total Revenue", "Average Order Value"], rows)
