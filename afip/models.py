# afip/models.py
from __future__ import annotations

from django.core.exceptions import ValidationError
from django.db import models

from afip.services.codes import OperatingMode, normalize_cuit
from afip.services.errors import CredentialInvalid
from afip.services.secrets import decrypt_text, encrypt_text
from afip.services.signer import load_signing_material
from afip.services.tra import Ticket


class AfipCredential(models.Model):
    """
    Credenciales AFIP de un tenant (CUIT emisor).
    El certificado X.509 y la clave privada se guardan en PEM; la clave va
    cifrada con Fernet (ver afip.services.secrets).
    """

    MODE_HOMOLOGATION = OperatingMode.HOMOLOGATION
    MODE_PRODUCTION = OperatingMode.PRODUCTION

    tenant_id = models.CharField(max_length=64, unique=True)
    razon_social = models.CharField(max_length=255, blank=True)
    cuit = models.CharField(max_length=11, help_text="CUIT del emisor, 11 dígitos sin guiones.")

    certificado_pem = models.TextField(help_text="Certificado X.509 emitido por AFIP (PEM).")
    clave_privada_cifrada = models.TextField(
        help_text="Clave privada PEM cifrada con AFIP_SECRETS_KEY. No editar a mano.",
    )

    servicio = models.CharField(
        max_length=32,
        default="wsfe",
        help_text="Id de servicio para el TRA (ej. 'wsfe').",
    )
    modo = models.CharField(
        max_length=16,
        choices=OperatingMode.CHOICES,
        default=OperatingMode.HOMOLOGATION,
        help_text="Homologación o Producción. Define los endpoints WSAA/WSFE.",
    )
    activo = models.BooleanField(
        default=True,
        help_text="Si está desactivada no se renueva el ticket en el barrido programado.",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Credencial AFIP"
        verbose_name_plural = "Credenciales AFIP"

    def __str__(self) -> str:
        return f"{self.razon_social or self.tenant_id} ({self.cuit})"

    @property
    def clave_privada_pem(self) -> str:
        return decrypt_text(self.clave_privada_cifrada)

    def set_clave_privada(self, pem: str) -> None:
        self.clave_privada_cifrada = encrypt_text(pem)

    def clean(self) -> None:
        super().clean()
        try:
            self.cuit = str(normalize_cuit(self.cuit))
        except ValueError as exc:
            raise ValidationError({"cuit": str(exc)}) from exc

        if not self.certificado_pem or not self.clave_privada_cifrada:
            return
        try:
            load_signing_material(self.certificado_pem, self.clave_privada_pem)
        except CredentialInvalid as exc:
            raise ValidationError({"certificado_pem": exc.message}) from exc


class AfipTicket(models.Model):
    """
    Ticket de Acceso (TA) vigente de una credencial. Lo crea/reemplaza
    únicamente el TicketManager mediante upsert.
    """

    credential = models.OneToOneField(
        AfipCredential,
        on_delete=models.CASCADE,
        related_name="ticket",
    )
    token = models.TextField()
    sign = models.TextField()
    fecha_generacion = models.DateTimeField()
    fecha_expiracion = models.DateTimeField(db_index=True)
    respuesta_cruda = models.TextField(blank=True)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Ticket de acceso AFIP"
        verbose_name_plural = "Tickets de acceso AFIP"

    def __str__(self) -> str:
        return f"TA {self.credential.tenant_id} vence {self.fecha_expiracion:%Y-%m-%d %H:%M}"

    def to_ticket(self) -> Ticket:
        return Ticket(
            token=self.token,
            sign=self.sign,
            generation_time=self.fecha_generacion,
            expiration_time=self.fecha_expiracion,
            raw_response=self.respuesta_cruda or None,
        )


class Sale(models.Model):
    """
    Venta / comprobante a autorizar ante WSFE. Solo guarda lo que necesita
    la escritura del veredicto AFIP: número, CAE y mensajes.
    """

    class Estado(models.TextChoices):
        PENDING = "PENDING", "Pendiente"
        AUTHORIZED = "AUTHORIZED", "Autorizado (CAE)"
        REJECTED = "REJECTED", "Rechazado por AFIP"
        ERROR = "ERROR", "Error técnico"

    tenant_id = models.CharField(max_length=64, db_index=True)
    punto_venta = models.PositiveIntegerField()
    tipo_comprobante = models.PositiveSmallIntegerField()
    numero = models.PositiveIntegerField(null=True, blank=True)

    importe_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)

    cae = models.CharField(max_length=14, blank=True)
    cae_vencimiento = models.DateField(null=True, blank=True)

    estado = models.CharField(
        max_length=16,
        choices=Estado.choices,
        default=Estado.PENDING,
        db_index=True,
    )
    mensajes_afip = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Venta"
        verbose_name_plural = "Ventas"
        constraints = [
            models.UniqueConstraint(
                fields=["tenant_id", "punto_venta", "tipo_comprobante", "numero"],
                name="afip_sale_numero_unico",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.punto_venta:05d}-{self.numero or 0:08d} ({self.get_estado_display()})"
