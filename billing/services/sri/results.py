# billing/services/sri/results.py
# -*- coding: utf-8 -*-
"""
Resultado tipado que devuelve el orquestador SRI.

Ninguna operación del flujo lanza excepciones hacia quien la invoca: todo
termina en un WorkflowResult con `ok`, un código de error y un mensaje
apto para mostrar al usuario.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional


class ErrorCode(str, enum.Enum):
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INVALID_ACCESS_KEY = "INVALID_ACCESS_KEY"
    CONFIGURATION_MISSING = "CONFIGURATION_MISSING"
    CERTIFICATE_MISSING = "CERTIFICATE_MISSING"
    CERTIFICATE_EXPIRED = "CERTIFICATE_EXPIRED"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    REMOTE_SUBMISSION_FAILED = "REMOTE_SUBMISSION_FAILED"
    UNEXPECTED_FAILURE = "UNEXPECTED_FAILURE"
    CANCELLED = "CANCELLED"
    TENANT_CONTEXT_MISSING = "TENANT_CONTEXT_MISSING"


@dataclass
class WorkflowResult:
    ok: bool
    value: Any = None
    error: Optional[ErrorCode] = None
    message: str = ""
    errors: List[dict] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "WorkflowResult":
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(
        cls,
        error: ErrorCode,
        message: str,
        errors: Optional[List[dict]] = None,
    ) -> "WorkflowResult":
        return cls(ok=False, error=error, message=message, errors=list(errors or []))

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "errors": self.errors,
        }
