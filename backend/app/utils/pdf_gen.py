"""Payment receipt PDF for a captured service request payment."""

import io
import logging
from datetime import datetime, timezone
from typing import Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.models.service_request import Payment, Quote, ServiceRequest

logger = logging.getLogger(__name__)

COMPANY_NAME = "A-1 Fence Services"
COMPANY_TAGLINE = "Professional Fence Solutions"
BRAND_COLOR = colors.HexColor("#DC2626")
DARK_GRAY = colors.HexColor("#1F2937")
LIGHT_GRAY = colors.HexColor("#F3F4F6")


def _fmt_amount(currency: str, value) -> str:
    return f"{currency} {float(value or 0):,.2f}"


def _fmt_date(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.strftime("%Y-%m-%d %H:%M UTC")


def build_payment_receipt(
    payment: Payment,
    service_request: ServiceRequest,
    quote: Optional[Quote] = None,
) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=16 * mm,
        bottomMargin=16 * mm,
        title=f"Receipt {payment.receipt}",
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle("ReceiptTitle", parent=styles["Heading1"], fontSize=22, textColor=BRAND_COLOR)
    heading_style = ParagraphStyle(
        "ReceiptHeading", parent=styles["Heading2"], fontSize=13, textColor=DARK_GRAY, spaceBefore=12
    )
    body_style = ParagraphStyle("ReceiptBody", parent=styles["Normal"], fontSize=10, textColor=DARK_GRAY)
    footer_style = ParagraphStyle("ReceiptFooter", parent=body_style, fontSize=8, textColor=colors.grey, alignment=1)

    story = [
        Paragraph(COMPANY_NAME, title_style),
        Paragraph(COMPANY_TAGLINE, body_style),
        Spacer(1, 6 * mm),
        Paragraph("PAYMENT RECEIPT", heading_style),
    ]

    info = Table(
        [
            ["Receipt #:", payment.receipt],
            ["Status:", str(payment.status).upper()],
            ["Payment ID:", payment.provider_payment_id or "-"],
            ["Order ID:", payment.provider_order_id or "-"],
            ["Paid at:", _fmt_date(payment.captured_at)],
            ["Customer:", service_request.customer_name],
            ["Service request:", f"#{str(service_request.id)[-8:]}"],
            ["Product:", f"{service_request.product_type} ({service_request.serial_number})"],
        ],
        colWidths=[40 * mm, 120 * mm],
    )
    info.setStyle(
        TableStyle(
            [
                ("FONT", (0, 0), (0, -1), "Helvetica-Bold", 10),
                ("FONT", (1, 0), (1, -1), "Helvetica", 10),
                ("TEXTCOLOR", (0, 0), (-1, -1), DARK_GRAY),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ]
        )
    )
    story.append(info)
    story.append(Spacer(1, 6 * mm))

    rows = [["Description", "Amount"]]
    for item in (quote.items if quote is not None else None) or []:
        rows.append(
            [
                Paragraph(str(item.get("description", "")), body_style),
                _fmt_amount(item.get("currency", payment.currency), item.get("cost")),
            ]
        )
    if len(rows) == 1:
        rows.append(["Repair service", _fmt_amount(payment.currency, payment.amount)])
    rows.append(["Total paid", _fmt_amount(payment.currency, payment.amount)])
    if payment.refund_amount:
        rows.append(["Refunded", _fmt_amount(payment.currency, payment.refund_amount)])

    items = Table(rows, colWidths=[125 * mm, 35 * mm], repeatRows=1)
    items.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), BRAND_COLOR),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONT", (0, 0), (-1, 0), "Helvetica-Bold", 10),
                ("FONT", (0, 1), (-1, -1), "Helvetica", 10),
                ("ALIGN", (1, 0), (1, -1), "RIGHT"),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("ROWBACKGROUNDS", (0, 1), (-1, -2), [colors.white, LIGHT_GRAY]),
                ("FONT", (0, -1), (-1, -1), "Helvetica-Bold", 10),
                ("LINEABOVE", (0, -1), (-1, -1), 1, DARK_GRAY),
                ("GRID", (0, 0), (-1, -2), 0.5, colors.grey),
            ]
        )
    )
    story.append(items)
    story.append(Spacer(1, 10 * mm))
    story.append(Paragraph("Thank you for choosing A-1 Fence Services.", footer_style))

    doc.build(story)
    pdf_bytes = buffer.getvalue()
    buffer.close()
    logger.info("Generated receipt PDF payment_id=%s bytes=%s", payment.id, len(pdf_bytes))
    return pdf_bytes
