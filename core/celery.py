# core/celery.py
from __future__ import annotations

import os

from celery import Celery

# Módulo de settings de Django por defecto
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")

app = Celery("core")

# Leer configuración desde settings.py, con prefijo CELERY_
# (CELERY_BROKER_URL, CELERY_BEAT_SCHEDULE, etc.)
app.config_from_object("django.conf:settings", namespace="CELERY")

# Autodescubre tasks.py en todas las apps instaladas (afip.tasks)
app.autodiscover_tasks()
