from builtins import property as builtin_property
from datetime import date
from decimal import Decimal

from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _
from simple_history.models import HistoricalRecords

from .services.money import ZERO, gross_from_net, quantize_cent


class Organization(models.Model):
    name = models.CharField(max_length=255, verbose_name=_("Name"))

    class Meta:
        verbose_name = _("Hausverwaltung")
        verbose_name_plural = _("Hausverwaltungen")

    def __str__(self) -> str:
        return self.name


class Property(models.Model):
    organization = models.ForeignKey(
        Organization,
        on_delete=models.PROTECT,
        related_name="properties",
        verbose_name=_("Hausverwaltung"),
    )
    name = models.CharField(max_length=255, verbose_name=_("Name"))
    street_address = models.CharField(max_length=255, blank=True, verbose_name=_("Straße und Hausnummer"))
    zip_code = models.CharField(max_length=20, blank=True, verbose_name=_("Postleitzahl"))
    city = models.CharField(max_length=100, blank=True, verbose_name=_("Stadt"))

    class Meta:
        verbose_name = _("Liegenschaft")
        verbose_name_plural = _("Liegenschaften")

    def __str__(self) -> str:
        if self.city:
            return f"{self.name} ({self.city})"
        return self.name


class Unit(models.Model):
    property = models.ForeignKey(
        Property,
        on_delete=models.CASCADE,
        related_name="units",
        verbose_name=_("Liegenschaft"),
    )
    door_number = models.CharField(max_length=50, verbose_name=_("Türnummer"))
    name = models.CharField(max_length=255, verbose_name=_("Bezeichnung"))
    usable_area = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(0)],
        verbose_name=_("Nutzfläche (m²)"),
    )
    mea_share = models.DecimalField(
        max_digits=10,
        decimal_places=4,
        default=Decimal("0.0000"),
        validators=[MinValueValidator(0)],
        verbose_name=_("Miteigentumsanteil (MEA)"),
    )
    person_count = models.PositiveSmallIntegerField(default=0, verbose_name=_("Personenanzahl"))
    is_vacant = models.BooleanField(default=False, verbose_name=_("Leerstand"))
    history = HistoricalRecords(user_db_constraint=False)

    class Meta:
        verbose_name = _("Einheit")
        verbose_name_plural = _("Einheiten")
        ordering = ["property_id", "door_number", "pk"]

    def __str__(self) -> str:
        return f"{self.property.name} · {self.name}"

    def active_tenant(self):
        return self.tenants.filter(is_active=True).order_by("pk").first()


class Tenant(models.Model):
    unit = models.ForeignKey(
        Unit,
        on_delete=models.PROTECT,
        related_name="tenants",
        null=True,
        blank=True,
        verbose_name=_("Einheit"),
    )
    first_name = models.CharField(max_length=100, verbose_name=_("Vorname"))
    last_name = models.CharField(max_length=100, verbose_name=_("Nachname"))
    email = models.EmailField(blank=True, verbose_name=_("E-Mail"))
    iban = models.CharField(max_length=34, blank=True, verbose_name=_("IBAN"))
    net_rent = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        verbose_name=_("Hauptmietzins netto"),
    )
    operating_costs_net = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        verbose_name=_("BK-Akonto netto"),
    )
    heating_costs_net = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        verbose_name=_("HK-Akonto netto"),
    )
    is_active = models.BooleanField(default=True, verbose_name=_("Aktiv"))
    history = HistoricalRecords(user_db_constraint=False)

    class Meta:
        verbose_name = _("Mieter")
        verbose_name_plural = _("Mieter")

    def __str__(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Expense(models.Model):
    class Category(models.TextChoices):
        WASSER = "wasser", _("Wasser/Abwasser")
        MUELL = "muell", _("Müllabfuhr")
        VERSICHERUNG = "versicherung", _("Versicherung")
        HAUSBETREUUNG = "hausbetreuung", _("Hausbetreuung")
        STROM = "strom", _("Allgemeinstrom")
        HEIZUNG = "heizung", _("Heizung")
        VERWALTUNG = "verwaltung", _("Verwaltungshonorar")
        SONSTIGES = "sonstiges", _("Sonstiges")

    property = models.ForeignKey(
        Property,
        on_delete=models.CASCADE,
        related_name="expenses",
        verbose_name=_("Liegenschaft"),
    )
    date = models.DateField(verbose_name=_("Datum"))
    category = models.CharField(
        max_length=20,
        choices=Category.choices,
        default=Category.SONSTIGES,
        verbose_name=_("Kategorie"),
    )
    description = models.CharField(max_length=255, blank=True, verbose_name=_("Beschreibung"))
    amount = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Betrag brutto"))
    is_allocable = models.BooleanField(default=True, verbose_name=_("Umlagefähig"))

    class Meta:
        verbose_name = _("Betriebskostenbeleg")
        verbose_name_plural = _("Betriebskostenbelege")
        ordering = ["date", "pk"]

    def __str__(self) -> str:
        return f"{self.date} · {self.get_category_display()} · {self.amount}"


class MonthlyInvoice(models.Model):
    class Status(models.TextChoices):
        OFFEN = "offen", _("Offen")
        TEILBEZAHLT = "teilbezahlt", _("Teilbezahlt")
        BEZAHLT = "bezahlt", _("Bezahlt")
        STORNIERT = "storniert", _("Storniert")

    OPEN_STATUSES = (Status.OFFEN, Status.TEILBEZAHLT)

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.SET_NULL,
        related_name="invoices",
        null=True,
        blank=True,
        verbose_name=_("Mieter"),
    )
    unit = models.ForeignKey(
        Unit,
        on_delete=models.PROTECT,
        related_name="invoices",
        verbose_name=_("Einheit"),
    )
    year = models.PositiveSmallIntegerField(verbose_name=_("Jahr"))
    month = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(12)],
        verbose_name=_("Monat"),
    )
    due_date = models.DateField(verbose_name=_("Fällig am"))
    rent_net = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Hauptmietzins netto")
    )
    rent_tax_rate = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal("10.00"), verbose_name=_("USt HMZ (%)")
    )
    operating_costs_net = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Betriebskosten netto")
    )
    operating_costs_tax_rate = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal("10.00"), verbose_name=_("USt BK (%)")
    )
    heating_costs_net = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Heizkosten netto")
    )
    heating_tax_rate = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal("20.00"), verbose_name=_("USt HK (%)")
    )
    gross_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Brutto gesamt")
    )
    paid_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Bezahlt")
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.OFFEN,
        verbose_name=_("Status"),
    )
    version = models.PositiveIntegerField(default=1, verbose_name=_("Version"))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Monatsvorschreibung")
        verbose_name_plural = _("Monatsvorschreibungen")
        ordering = ["year", "month", "pk"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "year", "month"],
                condition=models.Q(tenant__isnull=False),
                name="uniq_invoice_tenant_year_month",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.month:02d}.{self.year} · {self.tenant or _('ohne Mieter')} · {self.gross_amount}"

    @builtin_property
    def period_start(self) -> date:
        return date(self.year, self.month, 1)

    @builtin_property
    def outstanding_amount(self) -> Decimal:
        return max(quantize_cent(self.gross_amount - self.paid_amount), ZERO)

    def category_gross(self) -> dict[str, Decimal]:
        return {
            "operating_costs": gross_from_net(self.operating_costs_net, self.operating_costs_tax_rate),
            "heating": gross_from_net(self.heating_costs_net, self.heating_tax_rate),
            "rent": gross_from_net(self.rent_net, self.rent_tax_rate),
        }

    def recalculate_gross(self) -> Decimal:
        self.gross_amount = quantize_cent(sum(self.category_gross().values(), ZERO))
        return self.gross_amount

    @classmethod
    def status_for(cls, *, paid_amount: Decimal, gross_amount: Decimal) -> str:
        paid_amount = quantize_cent(paid_amount)
        if paid_amount >= quantize_cent(gross_amount):
            return cls.Status.BEZAHLT
        if paid_amount > ZERO:
            return cls.Status.TEILBEZAHLT
        return cls.Status.OFFEN


class InvoiceLine(models.Model):
    class LineType(models.TextChoices):
        HMZ = "hmz", _("Hauptmietzins")
        BK = "bk", _("Betriebskosten")
        HK = "hk", _("Heizkosten")
        WASSER = "wasser", _("Wasser/Abwasser")
        SONST = "sonst", _("Sonstiges")

    invoice = models.ForeignKey(
        MonthlyInvoice,
        on_delete=models.CASCADE,
        related_name="lines",
        verbose_name=_("Vorschreibung"),
    )
    unit = models.ForeignKey(
        Unit,
        on_delete=models.PROTECT,
        related_name="invoice_lines",
        null=True,
        blank=True,
        verbose_name=_("Einheit"),
    )
    line_type = models.CharField(max_length=20, choices=LineType.choices, verbose_name=_("Positionstyp"))
    description = models.CharField(max_length=255, verbose_name=_("Beschreibung"))
    normalized_description = models.CharField(max_length=255, editable=False)
    amount = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Betrag"))
    tax_rate = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal("10.00"), verbose_name=_("USt (%)")
    )
    meta = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder, verbose_name=_("Metadaten"))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Vorschreibungsposition")
        verbose_name_plural = _("Vorschreibungspositionen")
        constraints = [
            models.UniqueConstraint(
                fields=["invoice", "unit", "line_type", "normalized_description"],
                name="uniq_invoice_line_key",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.invoice_id} · {self.line_type} · {self.description} · {self.amount}"

    @staticmethod
    def normalize_description(value: str | None) -> str:
        return " ".join(str(value or "").split()).lower()

    def save(self, *args, **kwargs):
        self.normalized_description = self.normalize_description(self.description)
        super().save(*args, **kwargs)


class Payment(models.Model):
    class PaymentType(models.TextChoices):
        UEBERWEISUNG = "ueberweisung", _("Überweisung")
        LASTSCHRIFT = "lastschrift", _("SEPA-Lastschrift")
        BAR = "bar", _("Bar")
        SONSTIGE = "sonstige", _("Sonstige")

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.PROTECT,
        related_name="payments",
        verbose_name=_("Mieter"),
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Betrag"))
    booking_date = models.DateField(verbose_name=_("Buchungsdatum"))
    reference = models.CharField(max_length=255, blank=True, verbose_name=_("Verwendungszweck"))
    payment_type = models.CharField(
        max_length=20,
        choices=PaymentType.choices,
        default=PaymentType.UEBERWEISUNG,
        verbose_name=_("Zahlungsart"),
    )
    unapplied_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Nicht zugeordnet")
    )
    notes = models.TextField(blank=True, verbose_name=_("Notizen"))
    reversed_at = models.DateTimeField(null=True, blank=True, verbose_name=_("Storniert am"))
    created_at = models.DateTimeField(auto_now_add=True)
    history = HistoricalRecords(user_db_constraint=False)

    class Meta:
        verbose_name = _("Zahlung")
        verbose_name_plural = _("Zahlungen")
        ordering = ["booking_date", "pk"]

    def __str__(self) -> str:
        return f"{self.booking_date} · {self.tenant} · {self.amount}"

    @builtin_property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None


class PaymentAllocation(models.Model):
    class Source(models.TextChoices):
        MANUAL = "manual", _("Manuell")
        FIFO = "fifo", _("FIFO")
        SEED = "seed", _("Datenübernahme")
        REPAIR = "repair", _("Reparaturlauf")

    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        related_name="allocations",
        verbose_name=_("Zahlung"),
    )
    invoice = models.ForeignKey(
        MonthlyInvoice,
        on_delete=models.PROTECT,
        related_name="allocations",
        verbose_name=_("Vorschreibung"),
    )
    applied_amount = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Zugeordnet"))
    operating_costs_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("davon BK")
    )
    heating_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("davon HK")
    )
    rent_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("davon HMZ")
    )
    vat_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("davon USt")
    )
    source = models.CharField(
        max_length=20,
        choices=Source.choices,
        default=Source.FIFO,
        verbose_name=_("Quelle"),
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = _("Zahlungszuordnung")
        verbose_name_plural = _("Zahlungszuordnungen")

    def __str__(self) -> str:
        return f"{self.payment_id} → {self.invoice_id} · {self.applied_amount}"


class LedgerEntry(models.Model):
    class EntryType(models.TextChoices):
        SOLL = "soll", _("Forderung an Mieter")
        IST = "ist", _("Zahlungseingang vom Mieter")
        STORNO = "storno", _("Storno")
        INTEREST = "interest", _("Verzugszinsen")
        FEE = "fee", _("Mahngebühr")

    DEBIT_TYPES = (EntryType.SOLL, EntryType.INTEREST, EntryType.FEE)

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        verbose_name=_("Mieter"),
    )
    invoice = models.ForeignKey(
        MonthlyInvoice,
        on_delete=models.SET_NULL,
        related_name="ledger_entries",
        null=True,
        blank=True,
        verbose_name=_("Vorschreibung"),
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        null=True,
        blank=True,
        verbose_name=_("Zahlung"),
    )
    entry_type = models.CharField(max_length=20, choices=EntryType.choices, verbose_name=_("Typ"))
    amount = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Betrag"))
    booking_date = models.DateField(verbose_name=_("Buchungsdatum"))
    text = models.CharField(max_length=255, blank=True, verbose_name=_("Buchungstext"))
    reversal_of = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reversals",
        verbose_name=_("Storno von"),
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = _("Kontobuchung")
        verbose_name_plural = _("Kontobuchungen")
        ordering = ["booking_date", "pk"]
        constraints = [
            models.UniqueConstraint(
                fields=["payment"],
                condition=models.Q(entry_type="storno"),
                name="uniq_ledger_storno_per_payment",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.booking_date} · {self.get_entry_type_display()} · {self.amount}"


class AuditRecord(models.Model):
    sequence = models.PositiveBigIntegerField(unique=True, verbose_name=_("Laufnummer"))
    table_name = models.CharField(max_length=100, verbose_name=_("Tabelle"))
    record_id = models.CharField(max_length=64, verbose_name=_("Datensatz"))
    action = models.CharField(max_length=64, verbose_name=_("Aktion"))
    old_data = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder)
    new_data = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder)
    actor = models.CharField(max_length=150, blank=True, verbose_name=_("Ausgeführt von"))
    run_id = models.CharField(max_length=64, blank=True, db_index=True, verbose_name=_("Lauf-ID"))
    created_at = models.DateTimeField(default=timezone.now, verbose_name=_("Zeitpunkt"))
    previous_hash = models.CharField(max_length=64, verbose_name=_("Vorheriger Hash"))
    hash = models.CharField(max_length=64, unique=True, verbose_name=_("Hash"))

    class Meta:
        verbose_name = _("Audit-Eintrag")
        verbose_name_plural = _("Audit-Einträge")
        ordering = ["sequence"]

    def __str__(self) -> str:
        return f"#{self.sequence} {self.table_name}:{self.record_id} {self.action}"

    def hash_content(self) -> dict[str, object]:
        return {
            "sequence": self.sequence,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "action": self.action,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "actor": self.actor,
            "run_id": self.run_id,
            "created_at": self.created_at,
        }


class DunningCase(models.Model):
    class Level(models.IntegerChoices):
        OFFEN = 0, _("Offen")
        ZAHLUNGSERINNERUNG = 1, _("Zahlungserinnerung")
        ERSTE_MAHNUNG = 2, _("1. Mahnung")
        ZWEITE_MAHNUNG = 3, _("2. Mahnung")

    invoice = models.OneToOneField(
        MonthlyInvoice,
        on_delete=models.PROTECT,
        related_name="dunning_case",
        verbose_name=_("Vorschreibung"),
    )
    level = models.PositiveSmallIntegerField(
        choices=Level.choices,
        default=Level.OFFEN,
        verbose_name=_("Mahnstufe"),
    )
    days_overdue = models.PositiveIntegerField(default=0, verbose_name=_("Tage überfällig"))
    fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Mahngebühr"))
    interest = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Verzugszinsen")
    )
    last_checked_on = models.DateField(null=True, blank=True, verbose_name=_("Zuletzt geprüft"))
    closed_at = models.DateTimeField(null=True, blank=True, verbose_name=_("Abgeschlossen am"))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Mahnfall")
        verbose_name_plural = _("Mahnfälle")

    def __str__(self) -> str:
        return f"{self.invoice} · {self.get_level_display()}"


class Settlement(models.Model):
    class Status(models.TextChoices):
        ENTWURF = "entwurf", _("Entwurf")
        BERECHNET = "berechnet", _("Berechnet")
        ABGESCHLOSSEN = "abgeschlossen", _("Abgeschlossen")

    class DistributionKey(models.TextChoices):
        AREA = "area", _("Nutzfläche")
        MEA = "mea", _("Miteigentumsanteile")
        PERSON = "person", _("Personen")
        FIXED = "fixed", _("Fix je Einheit")

    property = models.ForeignKey(
        Property,
        on_delete=models.PROTECT,
        related_name="settlements",
        verbose_name=_("Liegenschaft"),
    )
    year = models.PositiveSmallIntegerField(verbose_name=_("Abrechnungsjahr"))
    distribution_key = models.CharField(
        max_length=20,
        choices=DistributionKey.choices,
        default=DistributionKey.AREA,
        verbose_name=_("Verteilungsschlüssel"),
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ENTWURF,
        verbose_name=_("Status"),
    )
    total_expense = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Kosten gesamt")
    )
    tenant_total = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Anteil Mieter")
    )
    owner_total = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Anteil Eigentümer")
    )
    calculated_at = models.DateTimeField(null=True, blank=True, verbose_name=_("Berechnet am"))
    finalized_at = models.DateTimeField(null=True, blank=True, verbose_name=_("Abgeschlossen am"))

    class Meta:
        verbose_name = _("Betriebskostenabrechnung")
        verbose_name_plural = _("Betriebskostenabrechnungen")
        constraints = [
            models.UniqueConstraint(fields=["property", "year"], name="uniq_settlement_property_year"),
        ]

    def __str__(self) -> str:
        return f"{self.property.name} · {self.year}"


class DistributionEntry(models.Model):
    class ChargedTo(models.TextChoices):
        TENANT = "tenant", _("Mieter")
        OWNER = "owner", _("Eigentümer (Leerstand)")

    settlement = models.ForeignKey(
        Settlement,
        on_delete=models.CASCADE,
        related_name="entries",
        verbose_name=_("Abrechnung"),
    )
    unit = models.ForeignKey(
        Unit,
        on_delete=models.PROTECT,
        related_name="distribution_entries",
        verbose_name=_("Einheit"),
    )
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.SET_NULL,
        related_name="distribution_entries",
        null=True,
        blank=True,
        verbose_name=_("Mieter"),
    )
    weight = models.DecimalField(max_digits=14, decimal_places=4, verbose_name=_("Gewicht"))
    share = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Kostenanteil"))
    charged_to = models.CharField(
        max_length=10,
        choices=ChargedTo.choices,
        default=ChargedTo.TENANT,
        verbose_name=_("Belastet an"),
    )
    prepayments = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Akontozahlungen")
    )
    difference = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0.00"), verbose_name=_("Nachzahlung/Guthaben")
    )
    ledger_entry = models.ForeignKey(
        LedgerEntry,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        verbose_name=_("Kontobuchung"),
    )

    class Meta:
        verbose_name = _("Verteilungszeile")
        verbose_name_plural = _("Verteilungszeilen")
        ordering = ["settlement_id", "pk"]

    def __str__(self) -> str:
        return f"{self.settlement} · {self.unit.name} · {self.share}"


class Job(models.Model):
    class JobType(models.TextChoices):
        BILLING_RUN = "billing_run", _("Vorschreibungslauf")
        SETTLEMENT_CALCULATION = "settlement_calculation", _("BK-Abrechnung berechnen")
        DUNNING_RUN = "dunning_run", _("Mahnlauf")
        REPORT_GENERATION = "report_generation", _("Bericht")
        SEPA_EXPORT = "sepa_export", _("SEPA-Export")
        BULK_INVOICE_UPSERT = "bulk_invoice_upsert", _("Positionen-Import")

    class Status(models.TextChoices):
        PENDING = "pending", _("Wartend")
        PROCESSING = "processing", _("In Bearbeitung")
        RETRYING = "retrying", _("Wiederholung geplant")
        COMPLETED = "completed", _("Abgeschlossen")
        FAILED = "failed", _("Fehlgeschlagen")

    CLAIMABLE_STATUSES = (Status.PENDING, Status.RETRYING)

    job_type = models.CharField(max_length=40, choices=JobType.choices, verbose_name=_("Auftragstyp"))
    payload = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder, verbose_name=_("Parameter"))
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
        verbose_name=_("Status"),
    )
    retry_count = models.PositiveSmallIntegerField(default=0, verbose_name=_("Wiederholungen"))
    max_retries = models.PositiveSmallIntegerField(default=3, verbose_name=_("Max. Wiederholungen"))
    scheduled_for = models.DateTimeField(default=timezone.now, verbose_name=_("Geplant für"))
    error = models.TextField(blank=True, verbose_name=_("Fehler"))
    result = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder, verbose_name=_("Ergebnis"))
    locked_by = models.CharField(max_length=100, blank=True, verbose_name=_("Worker"))
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Hintergrundauftrag")
        verbose_name_plural = _("Hintergrundaufträge")
        indexes = [models.Index(fields=["status", "scheduled_for"], name="job_status_scheduled_idx")]

    def __str__(self) -> str:
        return f"{self.get_job_type_display()} #{self.pk} ({self.status})"

    def to_payload(self) -> dict[str, object]:
        return {
            "jobType": self.job_type,
            "payload": self.payload,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "scheduledFor": self.scheduled_for.isoformat() if self.scheduled_for else None,
        }


class PeriodLock(models.Model):
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="period_locks",
        verbose_name=_("Hausverwaltung"),
    )
    year = models.PositiveSmallIntegerField(verbose_name=_("Jahr"))
    month = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(12)],
        verbose_name=_("Monat"),
    )
    locked_by = models.CharField(max_length=150, blank=True, verbose_name=_("Gesperrt von"))
    reason = models.CharField(max_length=255, blank=True, verbose_name=_("Grund"))
    locked_at = models.DateTimeField(default=timezone.now, verbose_name=_("Gesperrt am"))
    history = HistoricalRecords(user_db_constraint=False)

    class Meta:
        verbose_name = _("Periodensperre")
        verbose_name_plural = _("Periodensperren")
        constraints = [
            models.UniqueConstraint(fields=["organization", "year", "month"], name="uniq_period_lock"),
        ]

    def __str__(self) -> str:
        return f"{self.organization} · {self.month:02d}.{self.year}"
