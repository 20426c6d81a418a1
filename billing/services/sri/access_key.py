# billing/services/sri/access_key.py
# -*- coding: utf-8 -*-
"""
Clave de acceso SRI (49 dígitos).

Estructura:
- Fecha de emisión (ddmmaaaa)                  -> 8 dígitos
- Tipo de comprobante (01, 04, 05, 07)         -> 2 dígitos
- RUC del emisor                               -> 13 dígitos
- Ambiente (1=pruebas, 2=producción)           -> 1 dígito
- Establecimiento                              -> 3 dígitos
- Punto de emisión                             -> 3 dígitos
- Secuencial                                   -> 9 dígitos
- Código numérico aleatorio                    -> 8 dígitos
- Tipo de emisión (1=normal)                   -> 1 dígito
- Dígito verificador (Módulo 11)               -> 1 dígito

Este módulo NO hace I/O ni consulta la BD.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import date, datetime
from typing import Union

from billing.choices import DocumentType, EmissionType, SriEnvironment

ACCESS_KEY_LENGTH = 49
MAX_SEQUENTIAL = 999_999_999

# Factores Módulo 11, aplicados desde el dígito más a la izquierda.
_FACTORS = (7, 6, 5, 4, 3, 2)

FechaTipo = Union[date, datetime]


class InvalidArgument(ValueError):
    """Datos de entrada mal formados para construir la clave de acceso."""


class InvalidAccessKey(ValueError):
    """La cadena no es una clave de acceso válida (longitud, dígitos o verificador)."""


def modulo11(digits: str) -> int:
    """
    Dígito verificador Módulo 11 de la clave de acceso.

    - Cada dígito se multiplica por el ciclo 7, 6, 5, 4, 3, 2 (el primero por 7).
    - DV = 11 - (suma % 11); 10 -> 1, 11 -> 0.
    """
    if not digits or not digits.isdigit():
        raise InvalidArgument("El número para módulo 11 debe contener solo dígitos.")

    total = sum(
        int(ch) * _FACTORS[i % len(_FACTORS)] for i, ch in enumerate(digits)
    )
    dv = 11 - (total % 11)
    if dv == 10:
        return 1
    if dv == 11:
        return 0
    return dv


def generate_numeric_code(length: int = 8) -> str:
    """Código numérico aleatorio de `length` dígitos para la clave de acceso."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def _require_digits(value: str, length: int, name: str) -> str:
    value = str(value or "").strip()
    if not re.fullmatch(rf"\d{{{length}}}", value):
        raise InvalidArgument(f"{name} debe tener exactamente {length} dígitos.")
    return value


@dataclass(frozen=True)
class AccessKey:
    value: str

    @classmethod
    def generate(
        cls,
        issue_date: FechaTipo,
        document_type: DocumentType | str,
        ruc: str,
        environment: SriEnvironment | str,
        establishment_code: str,
        emission_point_code: str,
        sequential: int,
        emission_type: EmissionType | str = EmissionType.NORMAL,
    ) -> "AccessKey":
        ruc = _require_digits(ruc, 13, "ruc")
        establishment_code = _require_digits(
            establishment_code, 3, "establishment_code"
        )
        emission_point_code = _require_digits(
            emission_point_code, 3, "emission_point_code"
        )

        if isinstance(sequential, bool) or not isinstance(sequential, int):
            raise InvalidArgument("sequential debe ser un entero.")
        if not 1 <= sequential <= MAX_SEQUENTIAL:
            raise InvalidArgument(
                f"sequential debe estar entre 1 y {MAX_SEQUENTIAL}."
            )

        try:
            doc_type = DocumentType(document_type).value
            env = SriEnvironment(environment).value
            emission = EmissionType(emission_type).value
        except ValueError as exc:
            raise InvalidArgument(str(exc)) from exc

        if isinstance(issue_date, datetime):
            issue_date = issue_date.date()

        body = (
            f"{issue_date.strftime('%d%m%Y')}"
            f"{doc_type}"
            f"{ruc}"
            f"{env}"
            f"{establishment_code}"
            f"{emission_point_code}"
            f"{sequential:09d}"
            f"{generate_numeric_code()}"
            f"{emission}"
        )
        return cls(f"{body}{modulo11(body)}")

    @classmethod
    def from_string(cls, value: str) -> "AccessKey":
        if value is None or len(value) != ACCESS_KEY_LENGTH:
            raise InvalidAccessKey(
                f"La clave de acceso debe tener {ACCESS_KEY_LENGTH} dígitos."
            )
        if not value.isdigit():
            raise InvalidAccessKey("La clave de acceso solo puede contener dígitos.")
        if modulo11(value[:48]) != int(value[48]):
            raise InvalidAccessKey("Dígito verificador de la clave de acceso inválido.")
        return cls(value)

    @staticmethod
    def is_valid(value: str | None) -> bool:
        if not isinstance(value, str):
            return False
        try:
            AccessKey.from_string(value)
        except InvalidAccessKey:
            return False
        return True

    # -------------------------
    # Lectura de campos embebidos
    # -------------------------

    @property
    def issue_date(self) -> date:
        return datetime.strptime(self.value[:8], "%d%m%Y").date()

    @property
    def document_type(self) -> str:
        return self.value[8:10]

    @property
    def ruc(self) -> str:
        return self.value[10:23]

    @property
    def environment(self) -> str:
        return self.value[23]

    @property
    def establishment_code(self) -> str:
        return self.value[24:27]

    @property
    def emission_point_code(self) -> str:
        return self.value[27:30]

    @property
    def sequential(self) -> int:
        return int(self.value[30:39])

    @property
    def numeric_code(self) -> str:
        return self.value[39:47]

    @property
    def emission_type(self) -> str:
        return self.value[47]

    @property
    def check_digit(self) -> int:
        return int(self.value[48])

    def __str__(self) -> str:
        return self.value
