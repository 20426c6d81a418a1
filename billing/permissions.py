# billing/permissions.py
from __future__ import annotations

from rest_framework.permissions import SAFE_METHODS, BasePermission

from billing.tenancy import resolve_tenant_context


class HasTenantAccess(BasePermission):
    """
    Exige cabecera X-Tenant-ID de un tenant activo del que el usuario es miembro.
    Deja el contexto resuelto en `request.tenant_context`.
    """

    message = "Debe indicar un tenant válido (X-Tenant-ID) al que tenga acceso."

    def has_permission(self, request, view) -> bool:
        context = resolve_tenant_context(request)
        request.tenant_context = context
        return context is not None


class CanOperateSri(BasePermission):
    """
    Permiso para acciones del flujo SRI (generar, firmar, enviar, reenviar).

    Regla:
    - Lectura: cualquier usuario autenticado con acceso al tenant.
    - Acciones: user.is_superuser, user.has_perm('billing.operate_sri')
      o grupo 'ADMIN' / 'FACTURACION'.
    """

    message = "No tienes permisos para operar comprobantes electrónicos ante el SRI."

    def has_permission(self, request, view) -> bool:
        user = request.user
        if not user or not user.is_authenticated:
            return False

        if request.method in SAFE_METHODS:
            return True

        if user.is_superuser:
            return True

        if user.has_perm("billing.operate_sri"):
            return True

        return user.groups.filter(name__in=["ADMIN", "FACTURACION"]).exists()
