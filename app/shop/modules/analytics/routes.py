from __future__ import annotations

import io

from flask import Blueprint, current_app, jsonify, request, send_file

from app.shop.audit import record_event
from app.shop.db import db_session
from app.shop.errors import ApiError
from app.shop.exports import XLSX_MIMETYPE, xlsx_bytes
from app.shop.modules.analytics.service import ORDER_HEADERS, build_report, export_report, report_sheets
from app.shop.rbac import require_permission, require_user
from app.shop.utils import parse_date

bp = Blueprint("analytics", __name__)


@bp.get("")
@require_permission("analytics.view")
def analytics_report():
    data = build_report(
        db_session(),
        request.args.get("type") or "overview",
        request.args,
        low_stock_threshold=int(current_app.config.get("LOW_STOCK_THRESHOLD") or 10),
    )
    return jsonify({"success": True, "data": data})


@bp.get("/export")
@require_permission("analytics.view")
def analytics_export():
    s = db_session()
    fmt = (request.args.get("format") or "xlsx").strip().lower()
    if fmt == "excel":
        fmt = "xlsx"
    if fmt not in ("xlsx", "json"):
        raise ApiError("Unsupported export format. Use xlsx or json.")
    report = export_report(s, request.args)

    record_event(
        s,
        actor=require_user(),
        action="analytics.export",
        entity_type="Report",
        entity_id="analytics",
        metadata={"format": fmt, "filters": request.args.to_dict(), "order_rows": len(report["orders"])},
    )
    s.commit()

    if fmt == "json":
        orders = [dict(zip(ORDER_HEADERS, row)) for row in report["orders"]]
        return jsonify({"success": True, "data": {**report, "orders": orders}})
    start = parse_date(request.args.get("startDate"))
    end = parse_date(request.args.get("endDate"))
    return send_file(
        io.BytesIO(xlsx_bytes(report_sheets(report))),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=f"analytics-report-{start or 'all'}-{end or 'all'}.xlsx",
        max_age=0,
    )
