# billing/services/sri/error_log.py
# -*- coding: utf-8 -*-
"""
Bitácora de errores SRI (SriErrorLog).

La escritura es best-effort: si falla, se registra en el log y se sigue, para
no ocultar el error original que se está reportando.
"""

from __future__ import annotations

import logging
import traceback
from typing import Iterable, List, Optional

from django.contrib.contenttypes.models import ContentType

from billing.models import SriErrorLog

logger = logging.getLogger("billing.sri")

SOAP_ERROR = "SOAP_ERROR"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


def record_error(
    document,
    operation: str,
    error_code: str,
    message: str,
    *,
    exc: Optional[BaseException] = None,
    additional_data: Optional[dict] = None,
) -> Optional[SriErrorLog]:
    """
    Inserta una fila en SriErrorLog para el comprobante.
    Retorna None si la escritura falló.
    """
    stack = ""
    if exc is not None:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    try:
        return SriErrorLog.objects.create(
            tenant_id=document.tenant_id,
            content_type=ContentType.objects.get_for_model(document),
            object_id=document.pk,
            operation=operation,
            error_code=error_code or "",
            message=message or "",
            stack_trace=stack,
            additional_data=additional_data or {},
        )
    except Exception:  # noqa: BLE001
        logger.exception(
            "No se pudo registrar SriErrorLog (%s/%s) para %s id=%s",
            operation,
            error_code,
            type(document).__name__,
            document.pk,
        )
        return None


def record_sri_errors(document, operation: str, errors: Iterable) -> List[SriErrorLog]:
    """
    Una fila por cada error reportado por el SRI (objetos con code/message/info).
    """
    rows = []
    for err in errors:
        row = record_error(
            document,
            operation,
            err.code,
            err.message,
            additional_data={"info": err.info} if err.info else None,
        )
        if row is not None:
            rows.append(row)
    return rows


def logs_for_document(document):
    return SriErrorLog.objects.for_document(document)


def format_errors(rows: Iterable) -> str:
    """
    '[codigo] mensaje' separados por '; '.
    Acepta filas de SriErrorLog o errores del SRI (code/message).
    """
    parts = []
    for row in rows:
        code = getattr(row, "error_code", None) or getattr(row, "code", "")
        parts.append(f"[{code}] {row.message}")
    return "; ".join(parts)
