"""
WSGI config for the cloudvault project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'cloudvault.settings')

application = get_wsgi_application()
