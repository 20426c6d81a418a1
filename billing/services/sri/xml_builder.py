# billing/services/sri/xml_builder.py
# -*- coding: utf-8 -*-
"""
Construcción del XML SRI para factura, nota de crédito, nota de débito y
comprobante de retención.

`XmlDocumentBuilder.build()` genera una clave de acceso nueva, arma el XML y
lo escribe en disco. No modifica el comprobante: retorna (ruta, clave) y el
orquestador decide qué persistir.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Tuple

from django.conf import settings
from lxml import etree

from billing.choices import DocumentType
from billing.services.sri.access_key import AccessKey

logger = logging.getLogger("billing.sri")

SCHEMA_VERSIONS = {
    DocumentType.INVOICE.value: getattr(settings, "SRI_INVOICE_SCHEMA_VERSION", "1.1.0"),
    DocumentType.CREDIT_NOTE.value: "1.1.0",
    DocumentType.DEBIT_NOTE.value: "1.0.0",
    DocumentType.RETENTION.value: "1.0.0",
}

ROOT_TAGS = {
    DocumentType.INVOICE.value: "factura",
    DocumentType.CREDIT_NOTE.value: "notaCredito",
    DocumentType.DEBIT_NOTE.value: "notaDebito",
    DocumentType.RETENTION.value: "comprobanteRetencion",
}


class XmlBuildError(ValueError):
    """Datos del comprobante insuficientes para construir el XML."""


def _format_decimal(value, places: int = 2) -> str:
    """
    Montos con 2 decimales, cantidades y precios unitarios con 6.
    None se trata como 0.
    """
    if value is None:
        value = Decimal("0")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    quantum = Decimal(1).scaleb(-places)
    return f"{value.quantize(quantum):.{places}f}"


def _format_date(value: date | datetime) -> str:
    if value is None:
        raise XmlBuildError("La fecha no puede ser None al construir el XML.")
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%d/%m/%Y")


def _sub(parent: etree._Element, tag: str, text) -> etree._Element:
    node = etree.SubElement(parent, tag)
    node.text = "" if text is None else str(text)
    return node


def documents_dir(tenant_id) -> Path:
    base = Path(getattr(settings, "SRI_DOCUMENTS_DIR", Path(settings.MEDIA_ROOT) / "sri"))
    path = base / str(tenant_id)
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_atomic(path: Path, data: bytes) -> None:
    """
    Escribe a un temporal y lo renombra: nunca queda un archivo a medias en `path`.
    """
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class XmlDocumentBuilder:
    def build(self, document, sri_config, establishment, emission_point) -> Tuple[str, str]:
        doc_type = document.DOCUMENT_TYPE
        if doc_type not in ROOT_TAGS:
            raise XmlBuildError(f"Tipo de comprobante no soportado: {doc_type!r}")
        if not document.sequential:
            raise XmlBuildError("El comprobante no tiene secuencial asignado.")

        inputs = document.access_key_inputs()
        access_key = AccessKey.generate(
            issue_date=inputs["issue_date"],
            document_type=inputs["document_type"],
            ruc=sri_config.ruc,
            environment=inputs["environment"],
            establishment_code=establishment.code,
            emission_point_code=emission_point.code,
            sequential=inputs["sequential"],
        ).value

        logger.info(
            "Construyendo XML %s id=%s, clave=%s",
            ROOT_TAGS[doc_type],
            document.pk,
            access_key,
        )

        root = etree.Element(
            ROOT_TAGS[doc_type],
            id="comprobante",
            version=SCHEMA_VERSIONS[doc_type],
        )
        root.append(
            self._info_tributaria(document, sri_config, establishment, emission_point, access_key)
        )

        if doc_type == DocumentType.INVOICE.value:
            self._build_invoice(root, document, sri_config, establishment)
        elif doc_type == DocumentType.CREDIT_NOTE.value:
            self._build_credit_note(root, document, sri_config, establishment)
        elif doc_type == DocumentType.DEBIT_NOTE.value:
            self._build_debit_note(root, document, sri_config, establishment)
        else:
            self._build_retention(root, document, sri_config, establishment)

        info_adicional = self._info_adicional(document)
        if info_adicional is not None:
            root.append(info_adicional)

        xml_bytes = etree.tostring(
            root,
            encoding="UTF-8",
            xml_declaration=True,
            pretty_print=False,
        )

        path = documents_dir(document.tenant_id) / f"{access_key}.xml"
        write_atomic(path, xml_bytes)
        return str(path), access_key

    # -------------------------
    # Nodos comunes
    # -------------------------

    def _info_tributaria(self, document, sri_config, establishment, emission_point, access_key):
        info = etree.Element("infoTributaria")
        _sub(info, "ambiente", document.environment)
        _sub(info, "tipoEmision", "1")
        _sub(info, "razonSocial", sri_config.legal_name)
        _sub(info, "nombreComercial", sri_config.trade_name or sri_config.legal_name)
        _sub(info, "ruc", sri_config.ruc)
        _sub(info, "claveAcceso", access_key)
        _sub(info, "codDoc", document.DOCUMENT_TYPE)
        _sub(info, "estab", establishment.code.zfill(3))
        _sub(info, "ptoEmi", emission_point.code.zfill(3))
        _sub(info, "secuencial", f"{int(document.sequential):09d}")
        _sub(info, "dirMatriz", sri_config.main_address)
        return info

    def _issuer_fields(self, info, sri_config, establishment) -> None:
        _sub(info, "dirEstablecimiento", establishment.address or sri_config.main_address)
        if sri_config.special_taxpayer_number:
            _sub(info, "contribuyenteEspecial", sri_config.special_taxpayer_number)
        _sub(info, "obligadoContabilidad", sri_config.obligado_contabilidad_str)

    def _buyer_fields(self, info, document) -> None:
        _sub(info, "tipoIdentificacionComprador", document.buyer_id_type)
        _sub(info, "razonSocialComprador", document.buyer_name)
        _sub(info, "identificacionComprador", document.buyer_id)

    def _modified_document_fields(self, info, document) -> None:
        _sub(info, "codDocModificado", DocumentType.INVOICE.value)
        _sub(info, "numDocModificado", document.modified_document_number)
        _sub(info, "fechaEmisionDocSustento", _format_date(document.modified_document_date))

    def _total_con_impuestos(self, lines) -> etree._Element:
        """
        Agrupa los impuestos de las líneas por (codigo, codigoPorcentaje).
        """
        grouped: Dict[Tuple[str, str], Dict[str, Decimal]] = OrderedDict()
        for line in lines:
            key = (line.tax_code, line.tax_rate_code)
            data = grouped.setdefault(
                key, {"base": Decimal("0.00"), "valor": Decimal("0.00"), "tarifa": line.tax_rate}
            )
            data["base"] += line.subtotal or Decimal("0.00")
            data["valor"] += line.tax_amount or Decimal("0.00")

        node = etree.Element("totalConImpuestos")
        for (code, rate_code), data in grouped.items():
            total = etree.SubElement(node, "totalImpuesto")
            _sub(total, "codigo", code)
            _sub(total, "codigoPorcentaje", rate_code)
            _sub(total, "baseImponible", _format_decimal(data["base"]))
            _sub(total, "tarifa", _format_decimal(data["tarifa"]))
            _sub(total, "valor", _format_decimal(data["valor"]))
        return node

    def _detalles(self, lines, code_tag: str) -> etree._Element:
        detalles = etree.Element("detalles")
        for line in lines:
            detalle = etree.SubElement(detalles, "detalle")
            _sub(detalle, code_tag, line.main_code)
            _sub(detalle, "descripcion", line.description)
            _sub(detalle, "cantidad", _format_decimal(line.quantity, 6))
            _sub(detalle, "precioUnitario", _format_decimal(line.unit_price, 6))
            _sub(detalle, "descuento", _format_decimal(line.discount))
            _sub(detalle, "precioTotalSinImpuesto", _format_decimal(line.subtotal))

            impuestos = etree.SubElement(detalle, "impuestos")
            impuesto = etree.SubElement(impuestos, "impuesto")
            _sub(impuesto, "codigo", line.tax_code)
            _sub(impuesto, "codigoPorcentaje", line.tax_rate_code)
            _sub(impuesto, "tarifa", _format_decimal(line.tax_rate))
            _sub(impuesto, "baseImponible", _format_decimal(line.subtotal))
            _sub(impuesto, "valor", _format_decimal(line.tax_amount))
        return detalles

    def _info_adicional(self, document):
        campos = []
        if document.buyer_address:
            campos.append(("Dirección", document.buyer_address[:300]))
        if document.buyer_email:
            campos.append(("Email", document.buyer_email[:300]))
        if not campos:
            return None

        node = etree.Element("infoAdicional")
        for nombre, valor in campos:
            campo = _sub(node, "campoAdicional", valor)
            campo.set("nombre", nombre)
        return node

    # -------------------------
    # Por tipo de comprobante
    # -------------------------

    def _build_invoice(self, root, invoice, sri_config, establishment) -> None:
        lines = list(invoice.lines.all())
        if not lines:
            raise XmlBuildError("La factura no tiene líneas de detalle.")

        info = etree.SubElement(root, "infoFactura")
        _sub(info, "fechaEmision", _format_date(invoice.issue_date))
        self._issuer_fields(info, sri_config, establishment)
        self._buyer_fields(info, invoice)
        if invoice.buyer_address:
            _sub(info, "direccionComprador", invoice.buyer_address)
        _sub(info, "totalSinImpuestos", _format_decimal(invoice.subtotal))
        _sub(
            info,
            "totalDescuento",
            _format_decimal(sum((line.discount for line in lines), Decimal("0.00"))),
        )
        info.append(self._total_con_impuestos(lines))
        _sub(info, "propina", "0.00")
        _sub(info, "importeTotal", _format_decimal(invoice.total))
        _sub(info, "moneda", "DOLAR")

        pagos = etree.SubElement(info, "pagos")
        pago = etree.SubElement(pagos, "pago")
        _sub(pago, "formaPago", str(invoice.payment_method or "01").zfill(2))
        _sub(pago, "total", _format_decimal(invoice.total))

        root.append(self._detalles(lines, "codigoPrincipal"))

    def _build_credit_note(self, root, credit_note, sri_config, establishment) -> None:
        lines = list(credit_note.lines.all())
        if not lines:
            raise XmlBuildError("La nota de crédito no tiene líneas de detalle.")

        info = etree.SubElement(root, "infoNotaCredito")
        _sub(info, "fechaEmision", _format_date(credit_note.issue_date))
        _sub(info, "dirEstablecimiento", establishment.address or sri_config.main_address)
        self._buyer_fields(info, credit_note)
        if sri_config.special_taxpayer_number:
            _sub(info, "contribuyenteEspecial", sri_config.special_taxpayer_number)
        _sub(info, "obligadoContabilidad", sri_config.obligado_contabilidad_str)
        self._modified_document_fields(info, credit_note)
        _sub(info, "totalSinImpuestos", _format_decimal(credit_note.subtotal))
        _sub(info, "valorModificacion", _format_decimal(credit_note.total))
        _sub(info, "moneda", "DOLAR")
        info.append(self._total_con_impuestos(lines))
        _sub(info, "motivo", credit_note.reason[:300])

        root.append(self._detalles(lines, "codigoInterno"))

    def _build_debit_note(self, root, debit_note, sri_config, establishment) -> None:
        reasons = list(debit_note.reasons.all())
        if not reasons:
            raise XmlBuildError("La nota de débito no tiene motivos.")

        info = etree.SubElement(root, "infoNotaDebito")
        _sub(info, "fechaEmision", _format_date(debit_note.issue_date))
        _sub(info, "dirEstablecimiento", establishment.address or sri_config.main_address)
        self._buyer_fields(info, debit_note)
        if sri_config.special_taxpayer_number:
            _sub(info, "contribuyenteEspecial", sri_config.special_taxpayer_number)
        _sub(info, "obligadoContabilidad", sri_config.obligado_contabilidad_str)
        self._modified_document_fields(info, debit_note)
        _sub(info, "totalSinImpuestos", _format_decimal(debit_note.subtotal))

        impuestos = etree.SubElement(info, "impuestos")
        impuesto = etree.SubElement(impuestos, "impuesto")
        _sub(impuesto, "codigo", debit_note.tax_code)
        _sub(impuesto, "codigoPorcentaje", debit_note.tax_rate_code)
        _sub(impuesto, "tarifa", _format_decimal(debit_note.tax_rate))
        _sub(impuesto, "baseImponible", _format_decimal(debit_note.subtotal))
        _sub(impuesto, "valor", _format_decimal(debit_note.tax_total))
        _sub(info, "valorTotal", _format_decimal(debit_note.total))

        pagos = etree.SubElement(info, "pagos")
        pago = etree.SubElement(pagos, "pago")
        _sub(pago, "formaPago", "01")
        _sub(pago, "total", _format_decimal(debit_note.total))

        motivos = etree.SubElement(root, "motivos")
        for reason in reasons:
            motivo = etree.SubElement(motivos, "motivo")
            _sub(motivo, "razon", reason.reason[:300])
            _sub(motivo, "valor", _format_decimal(reason.amount))

    def _build_retention(self, root, retention, sri_config, establishment) -> None:
        taxes = list(retention.taxes.all())
        if not taxes:
            raise XmlBuildError("La retención no tiene impuestos retenidos.")

        info = etree.SubElement(root, "infoCompRetencion")
        _sub(info, "fechaEmision", _format_date(retention.issue_date))
        self._issuer_fields(info, sri_config, establishment)
        _sub(info, "tipoIdentificacionSujetoRetenido", retention.buyer_id_type)
        _sub(info, "razonSocialSujetoRetenido", retention.buyer_name)
        _sub(info, "identificacionSujetoRetenido", retention.buyer_id)
        _sub(info, "periodoFiscal", retention.fiscal_period)

        impuestos = etree.SubElement(root, "impuestos")
        for tax in taxes:
            impuesto = etree.SubElement(impuestos, "impuesto")
            _sub(impuesto, "codigo", tax.tax_code)
            _sub(impuesto, "codigoRetencion", tax.retention_code)
            _sub(impuesto, "baseImponible", _format_decimal(tax.tax_base))
            _sub(impuesto, "porcentajeRetener", _format_decimal(tax.percentage))
            _sub(impuesto, "valorRetenido", _format_decimal(tax.amount))
            _sub(impuesto, "codDocSustento", tax.support_document_code)
            _sub(impuesto, "numDocSustento", tax.support_document_number)
            _sub(impuesto, "fechaEmisionDocSustento", _format_date(tax.support_document_date))
