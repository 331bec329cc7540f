from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AfipCredential",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tenant_id", models.CharField(max_length=64, unique=True)),
                ("razon_social", models.CharField(blank=True, max_length=255)),
                ("cuit", models.CharField(help_text="CUIT del emisor, 11 dígitos sin guiones.", max_length=11)),
                ("certificado_pem", models.TextField(help_text="Certificado X.509 emitido por AFIP (PEM).")),
                (
                    "clave_privada_cifrada",
                    models.TextField(help_text="Clave privada PEM cifrada con AFIP_SECRETS_KEY. No editar a mano."),
                ),
                (
                    "servicio",
                    models.CharField(default="wsfe", help_text="Id de servicio para el TRA (ej. 'wsfe').", max_length=32),
                ),
                (
                    "modo",
                    models.CharField(
                        choices=[("HOMOLOGATION", "Homologación"), ("PRODUCTION", "Producción")],
                        default="HOMOLOGATION",
                        help_text="Homologación o Producción. Define los endpoints WSAA/WSFE.",
                        max_length=16,
                    ),
                ),
                (
                    "activo",
                    models.BooleanField(
                        default=True,
                        help_text="Si está desactivada no se renueva el ticket en el barrido programado.",
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Credencial AFIP",
                "verbose_name_plural": "Credenciales AFIP",
            },
        ),
        migrations.CreateModel(
            name="Sale",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tenant_id", models.CharField(db_index=True, max_length=64)),
                ("punto_venta", models.PositiveIntegerField()),
                ("tipo_comprobante", models.PositiveSmallIntegerField()),
                ("numero", models.PositiveIntegerField(blank=True, null=True)),
                ("importe_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("cae", models.CharField(blank=True, max_length=14)),
                ("cae_vencimiento", models.DateField(blank=True, null=True)),
                (
                    "estado",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pendiente"),
                            ("AUTHORIZED", "Autorizado (CAE)"),
                            ("REJECTED", "Rechazado por AFIP"),
                            ("ERROR", "Error técnico"),
                        ],
                        db_index=True,
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("mensajes_afip", models.JSONField(blank=True, default=list)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Venta",
                "verbose_name_plural": "Ventas",
            },
        ),
        migrations.AddConstraint(
            model_name="sale",
            constraint=models.UniqueConstraint(
                fields=("tenant_id", "punto_venta", "tipo_comprobante", "numero"),
                name="afip_sale_numero_unico",
            ),
        ),
        migrations.CreateModel(
            name="AfipTicket",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("token", models.TextField()),
                ("sign", models.TextField()),
                ("fecha_generacion", models.DateTimeField()),
                ("fecha_expiracion", models.DateTimeField(db_index=True)),
                ("respuesta_cruda", models.TextField(blank=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "credential",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="ticket",
                        to="afip.afipcredential",
                    ),
                ),
            ],
            options={
                "verbose_name": "Ticket de acceso AFIP",
                "verbose_name_plural": "Tickets de acceso AFIP",
            },
        ),
    ]
