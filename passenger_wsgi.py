# passenger_wsgi.py — minimal y compatible con cPanel/Passenger

import os
import sys

# Asegura el path del proyecto
PROJECT_PATH = os.path.dirname(os.path.abspath(__file__))
if PROJECT_PATH not in sys.path:
    sys.path.insert(0, PROJECT_PATH)

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "saas.settings")

from django.core.wsgi import get_wsgi_application  # noqa: E402

application = get_wsgi_application()
