# billing/services/ride.py
# -*- coding: utf-8 -*-
"""
RIDE (Representación Impresa del Documento Electrónico) en PDF con ReportLab.

Un solo renderizador para los cuatro tipos de comprobante: el encabezado
(emisor + bloque SRI con código de barras de la clave de acceso) y el bloque
del comprador son comunes; el detalle cambia por tipo.

Solo se genera para comprobantes AUTORIZADOS; lo invoca el orquestador SRI.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from io import BytesIO
from pathlib import Path
from typing import Any, List
from xml.sax.saxutils import escape

from reportlab.graphics.barcode import code128
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from billing.choices import DocumentType, SriEnvironment
from billing.services.sri.xml_builder import documents_dir, write_atomic

logger = logging.getLogger("billing.ride")

TITLES = {
    DocumentType.INVOICE.value: "FACTURA",
    DocumentType.CREDIT_NOTE.value: "NOTA DE CRÉDITO",
    DocumentType.DEBIT_NOTE.value: "NOTA DE DÉBITO",
    DocumentType.RETENTION.value: "COMPROBANTE DE RETENCIÓN",
}

GRID_STYLE = TableStyle(
    [
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#EEEEEE")),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 7),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]
)


class RideError(Exception):
    """Error controlado al generar el RIDE."""


def _fmt_amount(value: Any, places: int = 2) -> str:
    if value is None:
        value = Decimal("0")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return f"{value.quantize(Decimal(1).scaleb(-places)):.{places}f}"


def _p(text: Any, style) -> Paragraph:
    return Paragraph(escape("" if text is None else str(text)), style)


class RideRenderer:
    def __init__(self) -> None:
        styles = getSampleStyleSheet()
        normal = styles["Normal"]
        self.title_style = ParagraphStyle(
            "RideTitle",
            parent=normal,
            fontSize=12,
            leading=14,
            alignment=TA_CENTER,
            fontName="Helvetica-Bold",
        )
        self.value_style = ParagraphStyle("RideValue", parent=normal, fontSize=8, leading=10)
        self.small_style = ParagraphStyle("RideSmall", parent=normal, fontSize=7, leading=9)

    def render(self, document, sri_config) -> str:
        """
        Genera el PDF y lo escribe junto a los XML del tenant.
        Retorna la ruta del archivo.
        """
        if not document.access_key or not document.authorization_number:
            raise RideError("El comprobante no tiene clave de acceso o número de autorización.")

        pdf_bytes = self.build_pdf(document, sri_config)
        path = Path(documents_dir(document.tenant_id)) / f"{document.access_key}.pdf"
        write_atomic(path, pdf_bytes)

        logger.info(
            "RIDE generado para %s id=%s (%s bytes)",
            type(document).__name__,
            document.pk,
            len(pdf_bytes),
        )
        return str(path)

    def build_pdf(self, document, sri_config) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=15 * mm,
            leftMargin=15 * mm,
            topMargin=15 * mm,
            bottomMargin=15 * mm,
        )

        elements: List[Any] = [
            self._header(document, sri_config),
            Spacer(1, 4 * mm),
            self._buyer(document),
            Spacer(1, 4 * mm),
            self._detail(document),
            Spacer(1, 4 * mm),
            self._totals(document),
        ]
        doc.build(elements)
        return buffer.getvalue()

    # ====================================================================
    # Bloques
    # ====================================================================

    def _header(self, document, sri_config) -> Table:
        v = self.value_style
        issuer = [
            [_p(sri_config.legal_name, self.title_style)],
            [_p(f"Nombre comercial: {sri_config.trade_name or sri_config.legal_name}", v)],
            [_p(f"Dirección matriz: {sri_config.main_address}", v)],
            [_p(f"Obligado a llevar contabilidad: {sri_config.obligado_contabilidad_str}", v)],
        ]
        if sri_config.special_taxpayer_number:
            issuer.append([_p(f"Contribuyente especial: {sri_config.special_taxpayer_number}", v)])

        environment = (
            "PRODUCCIÓN" if document.environment == SriEnvironment.PRODUCTION else "PRUEBAS"
        )
        authorized_at = (
            document.authorization_date.strftime("%d/%m/%Y %H:%M:%S")
            if document.authorization_date
            else "-"
        )
        sri_block = [
            [_p(f"R.U.C.: {sri_config.ruc}", v)],
            [_p(TITLES.get(document.DOCUMENT_TYPE, ""), self.title_style)],
            [_p(f"No. {document.secuencial_display}", v)],
            [_p("NÚMERO DE AUTORIZACIÓN", v)],
            [_p(document.authorization_number, self.small_style)],
            [_p(f"FECHA Y HORA DE AUTORIZACIÓN: {authorized_at}", v)],
            [_p(f"AMBIENTE: {environment}", v)],
            [_p("EMISIÓN: NORMAL", v)],
            [_p("CLAVE DE ACCESO", v)],
            [code128.Code128(document.access_key, barHeight=12 * mm, barWidth=0.3)],
            [_p(document.access_key, self.small_style)],
        ]

        table = Table(
            [[Table(issuer, colWidths=[74 * mm]), Table(sri_block, colWidths=[88 * mm])]],
            colWidths=[80 * mm, 94 * mm],
        )
        table.setStyle(
            TableStyle(
                [
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ("BOX", (1, 0), (1, 0), 0.5, colors.grey),
                ]
            )
        )
        return table

    def _buyer(self, document) -> Table:
        v = self.value_style
        rows = [
            [_p("Razón social / Nombres:", v), _p(document.buyer_name, v)],
            [_p("Identificación:", v), _p(document.buyer_id, v)],
            [_p("Fecha de emisión:", v), _p(document.issue_date.strftime("%d/%m/%Y"), v)],
        ]
        if document.buyer_address:
            rows.append([_p("Dirección:", v), _p(document.buyer_address, v)])
        if document.DOCUMENT_TYPE in (DocumentType.CREDIT_NOTE, DocumentType.DEBIT_NOTE):
            rows.append(
                [
                    _p("Comprobante modificado:", v),
                    _p(
                        f"FACTURA {document.modified_document_number} "
                        f"({document.modified_document_date.strftime('%d/%m/%Y')})",
                        v,
                    ),
                ]
            )
        if document.DOCUMENT_TYPE == DocumentType.RETENTION:
            rows.append([_p("Periodo fiscal:", v), _p(document.fiscal_period, v)])

        table = Table(rows, colWidths=[45 * mm, 129 * mm])
        table.setStyle(TableStyle([("BOX", (0, 0), (-1, -1), 0.5, colors.grey)]))
        return table

    def _detail(self, document) -> Table:
        doc_type = document.DOCUMENT_TYPE
        if doc_type in (DocumentType.INVOICE, DocumentType.CREDIT_NOTE):
            rows = [["Código", "Descripción", "Cantidad", "P. Unitario", "Descuento", "Total"]]
            for line in document.lines.all():
                rows.append(
                    [
                        line.main_code,
                        _p(line.description, self.small_style),
                        _fmt_amount(line.quantity, 2),
                        _fmt_amount(line.unit_price, 4),
                        _fmt_amount(line.discount),
                        _fmt_amount(line.subtotal),
                    ]
                )
            widths = [22 * mm, 74 * mm, 18 * mm, 22 * mm, 18 * mm, 20 * mm]
        elif doc_type == DocumentType.DEBIT_NOTE:
            rows = [["Razón de la modificación", "Valor"]]
            for reason in document.reasons.all():
                rows.append([_p(reason.reason, self.small_style), _fmt_amount(reason.amount)])
            widths = [140 * mm, 34 * mm]
        elif doc_type == DocumentType.RETENTION:
            rows = [["Comprobante", "Número", "Base imponible", "Impuesto", "Código", "%", "Valor"]]
            for tax in document.taxes.all():
                rows.append(
                    [
                        tax.support_document_code,
                        tax.support_document_number,
                        _fmt_amount(tax.tax_base),
                        tax.get_tax_code_display(),
                        tax.retention_code,
                        _fmt_amount(tax.percentage),
                        _fmt_amount(tax.amount),
                    ]
                )
            widths = [20 * mm, 38 * mm, 26 * mm, 22 * mm, 18 * mm, 16 * mm, 34 * mm]
        else:
            raise RideError(f"Tipo de comprobante sin RIDE: {doc_type!r}")

        table = Table(rows, colWidths=widths, repeatRows=1)
        table.setStyle(GRID_STYLE)
        return table

    def _totals(self, document) -> Table:
        if document.DOCUMENT_TYPE == DocumentType.RETENTION:
            rows = [["TOTAL RETENIDO", _fmt_amount(document.total)]]
        else:
            rows = [
                ["SUBTOTAL", _fmt_amount(document.subtotal)],
                ["IVA", _fmt_amount(document.tax_total)],
                ["VALOR TOTAL", _fmt_amount(document.total)],
            ]
        table = Table(rows, colWidths=[40 * mm, 30 * mm], hAlign="RIGHT")
        table.setStyle(
            TableStyle(
                [
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                    ("FONTSIZE", (0, 0), (-1, -1), 8),
                    ("ALIGN", (1, 0), (1, -1), "RIGHT"),
                ]
            )
        )
        return table
