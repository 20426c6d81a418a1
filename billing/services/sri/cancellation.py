# billing/services/sri/cancellation.py
# -*- coding: utf-8 -*-
"""
Cancelación cooperativa para el flujo SRI.

El orquestador consulta el token antes de cada frontera de I/O (constructor
de XML, firmador, lectura de archivo, llamada SOAP, guardado en BD).
"""

from __future__ import annotations

import threading


class OperationCancelled(Exception):
    """La operación fue cancelada por quien la invocó."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise OperationCancelled("Operación cancelada.")


class _NeverCancelled(CancellationToken):
    def cancel(self) -> None:
        raise RuntimeError("El token por defecto no se puede cancelar.")


NONE = _NeverCancelled()


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    return token if token is not None else NONE
