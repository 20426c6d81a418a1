# billing/pagination.py
from __future__ import annotations

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class BillingPagination(PageNumberPagination):
    """
    Paginador de comprobantes y bitácora SRI.

    - ?page_size= controla el tamaño de página (máx. 200).
    - Incluye count, total_pages y current_page para los frontends.
    """

    page_size = 50
    page_size_query_param = "page_size"
    max_page_size = 200

    def get_paginated_response(self, data):
        paginator = self.page.paginator
        return Response(
            {
                "count": paginator.count,
                "total_pages": paginator.num_pages,
                "current_page": self.page.number,
                "next": self.get_next_link(),
                "previous": self.get_previous_link(),
                "results": data,
            }
        )
