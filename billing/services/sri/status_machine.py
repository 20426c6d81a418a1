# billing/services/sri/status_machine.py
# -*- coding: utf-8 -*-
"""
Transiciones legales de estado para comprobantes electrónicos.

Flujo SRI:
    DRAFT -> PENDING_SIGNATURE -> PENDING_AUTHORIZATION -> AUTHORIZED | REJECTED
    REJECTED -> PENDING_AUTHORIZATION solo como ciclo nuevo de reenvío
    (XML y firma nuevos).

Flujo comercial (cambio manual de estado):
    DRAFT -> SENT | CANCELLED
    SENT -> PAID | OVERDUE | CANCELLED
    OVERDUE -> PAID | CANCELLED
    AUTHORIZED -> VOIDED (anulación)
"""

from __future__ import annotations

from typing import Dict, FrozenSet

from billing.choices import DocumentStatus

S = DocumentStatus


def _states(*states: DocumentStatus) -> FrozenSet[str]:
    # Siempre por valor: el estado llega como str plano desde la BD.
    return frozenset(s.value for s in states)


SRI_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.DRAFT.value: _states(S.PENDING_SIGNATURE),
    S.PENDING_SIGNATURE.value: _states(S.PENDING_SIGNATURE, S.PENDING_AUTHORIZATION),
    S.PENDING_AUTHORIZATION.value: _states(
        S.PENDING_SIGNATURE,
        S.PENDING_AUTHORIZATION,
        S.AUTHORIZED,
        S.REJECTED,
    ),
    S.REJECTED.value: _states(S.PENDING_AUTHORIZATION),
}

COMMERCIAL_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.DRAFT.value: _states(S.SENT, S.CANCELLED),
    S.SENT.value: _states(S.PAID, S.OVERDUE, S.CANCELLED),
    S.OVERDUE.value: _states(S.PAID, S.CANCELLED),
    S.AUTHORIZED.value: _states(S.VOIDED),
}

# Estados desde los que se puede (re)generar el XML.
XML_GENERATION_STATUSES = _states(S.DRAFT, S.PENDING_SIGNATURE, S.PENDING_AUTHORIZATION)
SIGNABLE_STATUSES = _states(S.PENDING_SIGNATURE, S.PENDING_AUTHORIZATION)
AUTHORIZATION_CHECK_STATUSES = _states(S.PENDING_AUTHORIZATION, S.AUTHORIZED)
SRI_TERMINAL_STATUSES = _states(S.AUTHORIZED, S.CANCELLED, S.VOIDED)


class InvalidStateTransition(Exception):
    """Transición de estado no permitida."""

    def __init__(self, current: str, requested: str):
        self.current = str(current)
        self.requested = str(requested)
        super().__init__(
            f"Transición de estado inválida: {self.current} -> {self.requested}"
        )


def allowed_transitions(current: str) -> FrozenSet[str]:
    current = str(current)
    return SRI_TRANSITIONS.get(current, frozenset()) | COMMERCIAL_TRANSITIONS.get(
        current, frozenset()
    )


def can_transition(current: str, requested: str) -> bool:
    return str(requested) in allowed_transitions(current)


def ensure_transition(current: str, requested: str) -> str:
    """
    Valida la transición y retorna el estado solicitado (como str).
    Lanza InvalidStateTransition con ambos estados para diagnóstico.
    """
    if not can_transition(current, requested):
        raise InvalidStateTransition(current, requested)
    return str(requested)
