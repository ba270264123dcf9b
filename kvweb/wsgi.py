"""WSGI entry point for production servers."""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "kvweb.settings")

application = get_wsgi_application()

# Refuse to boot without a usable engine and page template.
from storage import startup  # noqa: E402

startup.prepare()
