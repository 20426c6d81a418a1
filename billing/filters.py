# billing/filters.py
from __future__ import annotations

import django_filters

from billing.choices import DocumentStatus
from billing.models import SriErrorLog


class ElectronicDocumentFilter(django_filters.FilterSet):
    """
    Filtros comunes para listar comprobantes:
    - status: estado del flujo (exacto).
    - fecha_desde / fecha_hasta: por issue_date.
    - access_key: clave de acceso exacta.
    - buyer_id: identificación del comprador.
    """

    status = django_filters.ChoiceFilter(choices=DocumentStatus.choices)
    fecha_desde = django_filters.DateFilter(field_name="issue_date", lookup_expr="gte")
    fecha_hasta = django_filters.DateFilter(field_name="issue_date", lookup_expr="lte")
    access_key = django_filters.CharFilter(field_name="access_key")
    buyer_id = django_filters.CharFilter(field_name="buyer_id", lookup_expr="icontains")

    class Meta:
        fields = ["status", "fecha_desde", "fecha_hasta", "access_key", "buyer_id"]


class SriErrorLogFilter(django_filters.FilterSet):
    operation = django_filters.CharFilter(field_name="operation", lookup_expr="iexact")
    error_code = django_filters.CharFilter(field_name="error_code", lookup_expr="iexact")
    desde = django_filters.IsoDateTimeFilter(field_name="occurred_at", lookup_expr="gte")
    hasta = django_filters.IsoDateTimeFilter(field_name="occurred_at", lookup_expr="lte")

    class Meta:
        model = SriErrorLog
        fields = ["operation", "error_code", "desde", "hasta"]
