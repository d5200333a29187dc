"""
PDF rendering for generated application documents.

Both documents are rendered in memory and returned as bytes; storing them is
the caller's job.
"""

from __future__ import annotations

import io
import logging
from typing import Any

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from xml.sax.saxutils import escape

logger = logging.getLogger(__name__)

_ACCENT = colors.HexColor("#1F4E79")


def _styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "ClearanceTitle",
            parent=base["Heading1"],
            fontSize=18,
            spaceAfter=18,
            alignment=TA_CENTER,
            textColor=_ACCENT,
        ),
        "heading": ParagraphStyle(
            "ClearanceHeading",
            parent=base["Heading2"],
            fontSize=13,
            spaceBefore=12,
            spaceAfter=8,
            textColor=_ACCENT,
        ),
        "body": base["Normal"],
    }


def _text(value: Any) -> str:
    if value is None or value == "":
        return "-"
    return escape(str(value))


def _plain(value: Any) -> str:
    return "-" if value is None or value == "" else str(value)


def _key_value_table(rows: list[tuple[str, Any]], body: ParagraphStyle) -> Table:
    data = [[Paragraph(f"<b>{escape(label)}</b>", body), Paragraph(_text(value), body)] for label, value in rows]
    table = Table(data, colWidths=[1.8 * inch, 4.6 * inch])
    table.setStyle(
        TableStyle(
            [
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("BACKGROUND", (0, 0), (0, -1), colors.HexColor("#EEF3F8")),
            ]
        )
    )
    return table


def _shipment_rows(shipment: Any) -> list[tuple[str, Any]]:
    if not isinstance(shipment, dict):
        return []
    return [(str(key), value) for key, value in sorted(shipment.items())]


def _build(title: str, story: list[Any]) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=0.75 * inch,
        leftMargin=0.75 * inch,
        topMargin=0.9 * inch,
        bottomMargin=0.9 * inch,
        title=title,
    )
    doc.build(story)
    return buffer.getvalue()


def render_clearance_document(*, application: dict[str, Any], profile: dict[str, Any] | None, decided_by: str) -> bytes:
    styles = _styles()
    profile = profile or {}
    app_id = str(application.get("id") or "")
    story: list[Any] = [
        Paragraph("Customs Clearance Certificate", styles["title"]),
        _key_value_table(
            [
                ("Application", app_id),
                ("Type", application.get("type")),
                ("Status", application.get("status")),
                ("Agent", profile.get("email") or application.get("agentUid")),
                ("Approved by", decided_by),
                ("Submitted", application.get("createdAt")),
            ],
            styles["body"],
        ),
    ]
    shipment = _shipment_rows(application.get("shipment"))
    if shipment:
        story.append(Paragraph("Shipment", styles["heading"]))
        story.append(_key_value_table(shipment, styles["body"]))
    logger.info("clearance_document_rendered application_id=%s", app_id)
    return _build(f"Clearance {app_id}", story)


def render_history_document(*, application: dict[str, Any]) -> bytes:
    styles = _styles()
    app_id = str(application.get("id") or "")
    story: list[Any] = [
        Paragraph("Application History", styles["title"]),
        _key_value_table(
            [
                ("Application", app_id),
                ("Type", application.get("type")),
                ("Current status", application.get("status")),
                ("Agent", application.get("agentUid")),
            ],
            styles["body"],
        ),
        Spacer(1, 0.2 * inch),
        Paragraph("Timeline", styles["heading"]),
    ]
    history = application.get("history")
    entries = history if isinstance(history, list) else []
    rows = [["When", "Actor", "Action", "Status"]]
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        rows.append([_plain(entry.get(field)) for field in ("at", "actor", "action", "status")])
    if len(rows) == 1:
        story.append(Paragraph("No recorded events.", styles["body"]))
    else:
        table = Table(rows, repeatRows=1)
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), _ACCENT),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                    ("FONTSIZE", (0, 0), (-1, -1), 8),
                ]
            )
        )
        story.append(table)
    logger.info("history_document_rendered application_id=%s entries=%s", app_id, len(rows) - 1)
    return _build(f"History {app_id}", story)
