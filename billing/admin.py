from django.contrib import admin, messages
from simple_history.admin import SimpleHistoryAdmin

from .exceptions import BillingError
from .models import (
    AuditRecord,
    DistributionEntry,
    DunningCase,
    Expense,
    Job,
    LedgerEntry,
    MonthlyInvoice,
    Organization,
    Payment,
    PaymentAllocation,
    PeriodLock,
    Property,
    Settlement,
    Tenant,
    Unit,
)
from .services.ledger import LedgerService
from .services.settlement import SettlementService


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = ("name",)
    search_fields = ("name",)


@admin.register(Property)
class PropertyAdmin(admin.ModelAdmin):
    list_display = ("name", "organization", "city", "zip_code", "street_address")
    list_filter = ("organization",)
    search_fields = ("name", "city", "zip_code", "street_address")


@admin.register(Unit)
class UnitAdmin(SimpleHistoryAdmin):
    list_display = ("name", "property", "door_number", "usable_area", "mea_share", "person_count", "is_vacant")
    list_filter = ("property", "is_vacant")
    search_fields = ("name", "door_number", "property__name")


@admin.register(Tenant)
class TenantAdmin(SimpleHistoryAdmin):
    list_display = ("last_name", "first_name", "unit", "net_rent", "operating_costs_net", "heating_costs_net", "is_active")
    list_filter = ("is_active",)
    search_fields = ("first_name", "last_name", "email", "iban")


@admin.register(Expense)
class ExpenseAdmin(admin.ModelAdmin):
    list_display = ("date", "property", "category", "amount", "is_allocable")
    list_filter = ("category", "is_allocable", "property")
    search_fields = ("description",)


class PaymentAllocationInline(admin.TabularInline):
    model = PaymentAllocation
    extra = 0
    can_delete = False
    readonly_fields = (
        "payment",
        "invoice",
        "applied_amount",
        "operating_costs_amount",
        "heating_amount",
        "rent_amount",
        "vat_amount",
        "source",
        "created_at",
    )


@admin.register(MonthlyInvoice)
class MonthlyInvoiceAdmin(admin.ModelAdmin):
    list_display = ("year", "month", "tenant", "unit", "gross_amount", "paid_amount", "status", "due_date")
    list_filter = ("status", "year", "month")
    search_fields = ("tenant__last_name", "tenant__first_name", "unit__name")
    readonly_fields = ("paid_amount", "status", "version", "created_at", "updated_at")
    inlines = (PaymentAllocationInline,)


@admin.register(Payment)
class PaymentAdmin(SimpleHistoryAdmin):
    list_display = ("booking_date", "tenant", "amount", "unapplied_amount", "payment_type", "reversed_at")
    list_filter = ("payment_type", "booking_date")
    search_fields = ("reference", "tenant__last_name", "tenant__first_name")
    readonly_fields = ("unapplied_amount", "reversed_at", "created_at")
    inlines = (PaymentAllocationInline,)
    actions = ("reverse_selected",)

    @admin.action(description="Ausgewählte Zahlungen stornieren")
    def reverse_selected(self, request, queryset):
        service = LedgerService(actor=request.user.get_username())
        reversed_count = 0
        for payment in queryset:
            try:
                service.reverse(payment)
            except BillingError as exc:
                self.message_user(request, f"Zahlung {payment.pk}: {exc}", level=messages.ERROR)
                continue
            reversed_count += 1
        if reversed_count:
            self.message_user(request, f"{reversed_count} Zahlung(en) storniert.", level=messages.SUCCESS)


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    list_display = ("booking_date", "tenant", "entry_type", "amount", "invoice", "payment", "text")
    list_filter = ("entry_type", "booking_date")
    search_fields = ("text", "tenant__last_name")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AuditRecord)
class AuditRecordAdmin(admin.ModelAdmin):
    list_display = ("sequence", "table_name", "record_id", "action", "actor", "run_id", "created_at")
    list_filter = ("table_name", "action")
    search_fields = ("record_id", "run_id", "actor", "hash")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(DunningCase)
class DunningCaseAdmin(admin.ModelAdmin):
    list_display = ("invoice", "level", "days_overdue", "fee", "interest", "last_checked_on", "closed_at")
    list_filter = ("level",)


class DistributionEntryInline(admin.TabularInline):
    model = DistributionEntry
    extra = 0
    can_delete = False
    readonly_fields = ("unit", "tenant", "weight", "share", "charged_to", "prepayments", "difference", "ledger_entry")


@admin.register(Settlement)
class SettlementAdmin(admin.ModelAdmin):
    list_display = ("property", "year", "distribution_key", "status", "total_expense", "tenant_total", "owner_total")
    list_filter = ("status", "year", "distribution_key")
    readonly_fields = ("total_expense", "tenant_total", "owner_total", "calculated_at", "finalized_at")
    inlines = (DistributionEntryInline,)
    actions = ("calculate_selected",)

    @admin.action(description="Ausgewählte Abrechnungen neu berechnen")
    def calculate_selected(self, request, queryset):
        service = SettlementService(actor=request.user.get_username())
        for settlement in queryset.select_related("property"):
            try:
                service.calculate(settlement.property, settlement.year)
            except BillingError as exc:
                self.message_user(request, f"{settlement}: {exc}", level=messages.ERROR)


@admin.register(Job)
class JobAdmin(admin.ModelAdmin):
    list_display = ("pk", "job_type", "status", "retry_count", "max_retries", "scheduled_for", "locked_by")
    list_filter = ("job_type", "status")
    readonly_fields = ("started_at", "completed_at", "failed_at", "created_at", "updated_at")


@admin.register(PeriodLock)
class PeriodLockAdmin(SimpleHistoryAdmin):
    list_display = ("organization", "year", "month", "locked_by", "reason", "locked_at")
    list_filter = ("organization", "year")
