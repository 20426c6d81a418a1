# billing/tenancy.py
from __future__ import annotations

from typing import Optional

from billing.models import Tenant
from billing.services.sri.workflow import TenantContext

TENANT_HEADER = "HTTP_X_TENANT_ID"


def resolve_tenant_context(request) -> Optional[TenantContext]:
    """
    Tenant de la solicitud a partir de la cabecera X-Tenant-ID.

    Retorna None si falta la cabecera, no es numérica, el tenant está
    inactivo o el usuario no es miembro (los superusuarios ven todos).
    """
    raw = (request.META.get(TENANT_HEADER) or "").strip()
    if not raw.isdigit():
        return None

    user = request.user
    if not user or not user.is_authenticated:
        return None

    tenants = Tenant.objects.filter(pk=int(raw), is_active=True)
    if not user.is_superuser:
        tenants = tenants.filter(users=user)
    if not tenants.exists():
        return None
    return TenantContext(tenant_id=int(raw))
