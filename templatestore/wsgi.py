"""
WSGI config for templatestore.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "templatestore.settings")

application = get_wsgi_application()
