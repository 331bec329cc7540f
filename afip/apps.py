from django.apps import AppConfig


class AfipConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "afip"
    verbose_name = "AFIP (WSAA / WSFE)"
