# afip/admin.py
from __future__ import annotations

from django import forms
from django.contrib import admin, messages

from afip.models import AfipCredential, AfipTicket, Sale
from afip.services.errors import AfipError
from afip.services.tickets import get_ticket_manager


class AfipCredentialForm(forms.ModelForm):
    clave_privada_pem = forms.CharField(
        label="Clave privada (PEM)",
        widget=forms.Textarea(attrs={"rows": 6}),
        required=False,
        help_text="Solo para cargar o reemplazar la clave. Se guarda cifrada y no se vuelve a mostrar.",
    )

    class Meta:
        model = AfipCredential
        exclude = ("clave_privada_cifrada",)

    def clean(self):
        cleaned = super().clean()
        pem = (cleaned.get("clave_privada_pem") or "").strip()
        if pem:
            self.instance.set_clave_privada(pem)
        elif not self.instance.clave_privada_cifrada:
            self.add_error("clave_privada_pem", "La clave privada es obligatoria.")
        return cleaned


@admin.register(AfipCredential)
class AfipCredentialAdmin(admin.ModelAdmin):
    form = AfipCredentialForm
    list_display = (
        "tenant_id",
        "razon_social",
        "cuit",
        "servicio",
        "modo",
        "activo",
        "updated_at",
    )
    list_filter = ("modo", "activo")
    search_fields = ("tenant_id", "cuit", "razon_social")
    readonly_fields = ("created_at", "updated_at")
    actions = ("renovar_ticket",)
    fieldsets = (
        (
            "Emisor",
            {
                "fields": (
                    "tenant_id",
                    "razon_social",
                    "cuit",
                    "activo",
                )
            },
        ),
        (
            "WSAA",
            {
                "fields": (
                    "servicio",
                    "modo",
                    "certificado_pem",
                    "clave_privada_pem",
                )
            },
        ),
        (
            "Auditoría",
            {
                "fields": (
                    "created_at",
                    "updated_at",
                )
            },
        ),
    )

    @admin.action(description="Renovar ticket de acceso (forzado)")
    def renovar_ticket(self, request, queryset):
        manager = get_ticket_manager()
        for credential in queryset:
            try:
                ticket = manager.get_ticket(credential.tenant_id, force=True)
            except AfipError as exc:
                self.message_user(
                    request,
                    f"{credential.tenant_id}: {exc.message}",
                    level=messages.ERROR,
                )
            else:
                self.message_user(
                    request,
                    f"{credential.tenant_id}: ticket vigente hasta {ticket.expiration_time:%Y-%m-%d %H:%M}",
                    level=messages.SUCCESS,
                )


@admin.register(AfipTicket)
class AfipTicketAdmin(admin.ModelAdmin):
    list_display = ("credential", "fecha_generacion", "fecha_expiracion", "updated_at")
    search_fields = ("credential__tenant_id", "credential__cuit")
    readonly_fields = (
        "credential",
        "token",
        "sign",
        "fecha_generacion",
        "fecha_expiracion",
        "respuesta_cruda",
        "updated_at",
    )

    def has_add_permission(self, request):
        return False


@admin.register(Sale)
class SaleAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "tenant_id",
        "punto_venta",
        "tipo_comprobante",
        "numero",
        "importe_total",
        "estado",
        "cae",
        "cae_vencimiento",
    )
    list_filter = ("estado", "tipo_comprobante")
    search_fields = ("tenant_id", "cae")
    readonly_fields = ("numero", "cae", "cae_vencimiento", "mensajes_afip", "created_at", "updated_at")
