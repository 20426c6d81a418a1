# saas/urls.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.conf import settings
from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path
from django.views.decorators.csrf import ensure_csrf_cookie

# (solo DEV) servir media
if settings.DEBUG:
    from django.conf.urls.static import static


# Endpoint explícito para setear cookie CSRF (lo consumen los frontends)
@ensure_csrf_cookie
def set_csrf_cookie(_request):
    return JsonResponse({"ok": True})


urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/auth/csrf/", set_csrf_cookie),
    path("api/billing/", include("billing.urls", namespace="billing")),
]

if settings.DEBUG:
    urlpatterns += static(
        settings.MEDIA_URL,
        document_root=settings.MEDIA_ROOT,
    )
