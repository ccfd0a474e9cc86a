from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.merchops.modules.order_tracking.parsers import parse_status_date
from app.merchops.modules.order_tracking.service import EnrichedOrder

CSV_HEADER = [
    "Order ID",
    "Order Date",
    "Customer Reference",
    "Quote #",
    "Invoice #",
    "Customer",
    "Company",
    "Email",
    "Phone",
    "Status",
    "Cost Price",
    "Selling Price",
    "Profit",
    "Margin %",
]

PDF_HEADER = ["Order ID", "Date", "Customer Reference", "Customer", "Company", "Status", "Cost", "Selling", "Profit", "Margin"]


@dataclass(frozen=True)
class ExportTotals:
    orders: int
    total_cost: float
    total_revenue: float
    total_profit: float
    average_margin: float


def export_totals(orders: Sequence[EnrichedOrder]) -> ExportTotals:
    """Missing selling price/profit/margin count as 0, so the average margin runs over every order."""
    n = len(orders)
    return ExportTotals(
        orders=n,
        total_cost=sum(o.order.total_inc_vat for o in orders),
        total_revenue=sum(o.selling_price or 0 for o in orders),
        total_profit=sum(o.profit or 0 for o in orders),
        average_margin=(sum(o.profit_margin or 0 for o in orders) / n) if n else 0.0,
    )


def format_currency(v: float | None) -> str:
    if v is None:
        return "N/A"
    sign = "-" if v < 0 else ""
    return f"{sign}R {abs(v):,.2f}"


def _fmt_num(v: float | None) -> str:
    return "" if v is None else f"{v:.2f}"


def _fmt_date(value: str) -> str:
    dt = parse_status_date(value)
    return dt.strftime("%Y-%m-%d") if dt else (value or "-")


def orders_csv(orders: Sequence[EnrichedOrder]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(CSV_HEADER)
    for e in orders:
        c = e.correlation.customer
        w.writerow(
            [
                e.order.order_id,
                e.order.order_date,
                e.order.customer_reference,
                e.correlation.quote_no or "",
                e.correlation.invoice_no or "",
                c.name if c else "",
                c.company if c else "",
                c.email if c else "",
                c.phone if c else "",
                e.order.status,
                _fmt_num(e.order.total_inc_vat),
                _fmt_num(e.selling_price),
                _fmt_num(e.profit),
                _fmt_num(e.profit_margin),
            ]
        )
    t = export_totals(orders)
    w.writerow([])
    w.writerow(["Totals", t.orders, "", "", "", "", "", "", "", "", _fmt_num(t.total_cost), _fmt_num(t.total_revenue), _fmt_num(t.total_profit), _fmt_num(t.average_margin)])
    return out.getvalue().encode("utf-8")


def orders_pdf(orders: Sequence[EnrichedOrder], *, generated_at: datetime | None = None, reference: str = "") -> bytes:
    generated_at = generated_at or datetime.utcnow()
    t = export_totals(orders)
    styles = getSampleStyleSheet()
    cell = styles["BodyText"].clone("cell", fontSize=7, leading=8)

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=landscape(A4),
        leftMargin=12 * mm,
        rightMargin=12 * mm,
        topMargin=12 * mm,
        bottomMargin=12 * mm,
        title="Orders Report",
    )
    meta = f"Generated: {generated_at.strftime('%d %B %Y %H:%M')} UTC"
    if reference:
        meta += f" | Reference: {reference}"
    story = [
        Paragraph("Orders Report", styles["Title"]),
        Paragraph(meta, styles["Normal"]),
        Spacer(1, 4 * mm),
    ]

    summary = Table(
        [
            ["Total Orders", "Total Cost", "Total Revenue", "Total Profit"],
            [str(t.orders), format_currency(t.total_cost), format_currency(t.total_revenue), format_currency(t.total_profit)],
        ],
        hAlign="LEFT",
    )
    summary.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f1f5f9")),
                ("FONTSIZE", (0, 0), (-1, 0), 8),
                ("FONTSIZE", (0, 1), (-1, 1), 11),
                ("BOX", (0, 0), (-1, -1), 0.5, colors.HexColor("#e2e8f0")),
                ("INNERGRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#e2e8f0")),
            ]
        )
    )
    story += [summary, Spacer(1, 5 * mm)]

    rows: list[list[object]] = [PDF_HEADER]
    for e in orders:
        c = e.correlation.customer
        rows.append(
            [
                e.order.order_id,
                _fmt_date(e.order.order_date),
                Paragraph(e.order.customer_reference or "-", cell),
                Paragraph(c.name if c else "N/A", cell),
                Paragraph(c.company if c else "N/A", cell),
                Paragraph(e.order.status or "-", cell),
                format_currency(e.order.total_inc_vat),
                format_currency(e.selling_price),
                format_currency(e.profit),
                f"{e.profit_margin:.1f}%" if e.profit_margin is not None else "N/A",
            ]
        )
    table = Table(rows, repeatRows=1)
    style = [
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f1f5f9")),
        ("FONTSIZE", (0, 0), (-1, -1), 7),
        ("ALIGN", (6, 0), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.HexColor("#e2e8f0")),
    ]
    for i, e in enumerate(orders, start=1):
        if e.profit is not None:
            style.append(("TEXTCOLOR", (8, i), (9, i), colors.HexColor("#16a34a" if e.profit >= 0 else "#dc2626")))
    table.setStyle(TableStyle(style))
    story += [table, Spacer(1, 5 * mm)]

    plural = "" if t.orders == 1 else "s"
    story.append(Paragraph(f"This report contains {t.orders} order{plural} | Average Margin: {t.average_margin:.1f}%", styles["Normal"]))
    doc.build(story)
    return buf.getvalue()
