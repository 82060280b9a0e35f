
from django.contrib import admin, messages

from ledger.exceptions import LedgerError
from ledger.models import (
    LedgerEntry,
    Order,
    OrderItem,
    RateLimitBucket,
    ReferralApplication,
    Setting,
    StoreItem,
    Wallet,
    Withdrawal,
)
from ledger.services import PurchaseService, WithdrawalService


class ReadOnlyAdminMixin:
    """
    Mixin that makes an admin model completely read-only.
    Disables add, change, and delete permissions while keeping
    the model visible and browsable in the admin panel.
    """

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Wallet)
class WalletAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "user", "uuid", "balance", "referral_code", "referral_count", "updated_at")
    search_fields = ("uuid", "referral_code", "user__username", "user__email")
    readonly_fields = (
        "user",
        "uuid",
        "balance",
        "referral_code",
        "referral_count",
        "created_at",
        "updated_at",
    )


@admin.register(LedgerEntry)
class LedgerEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "wallet", "entry_type", "amount", "balance_after", "reference", "created_at")
    list_filter = ("entry_type",)
    search_fields = ("wallet__uuid", "wallet__user__username", "reference")
    readonly_fields = (
        "wallet",
        "entry_type",
        "amount",
        "reference",
        "balance_after",
        "metadata",
        "created_at",
        "updated_at",
    )


@admin.register(ReferralApplication)
class ReferralApplicationAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "applicant", "referrer", "code_used", "reward_amount", "ip_address", "applied_at")
    search_fields = ("code_used", "ip_address")


@admin.register(StoreItem)
class StoreItemAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "category", "coin_cost", "inventory", "sold_count", "is_active")
    list_filter = ("category", "is_active")
    search_fields = ("name",)
    readonly_fields = ("sold_count", "created_at", "updated_at")


class OrderItemInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = OrderItem
    extra = 0
    fields = ("store_item", "name", "quantity", "unit_price", "revealed_redeem_code")
    readonly_fields = fields


@admin.register(Order)
class OrderAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "transaction_id", "wallet", "total_cost", "status", "created_at")
    list_filter = ("status",)
    search_fields = ("transaction_id", "wallet__uuid")
    inlines = [OrderItemInline]
    actions = ["refund_orders"]

    @admin.action(description="Refund selected orders")
    def refund_orders(self, request, queryset):
        refunded = 0
        for order in queryset:
            try:
                PurchaseService.refund(order.pk, admin=request.user)
                refunded += 1
            except LedgerError as exc:
                self.message_user(request, f"Order {order.transaction_id}: {exc}", messages.WARNING)
        self.message_user(request, f"Refunded {refunded} order(s).")


@admin.register(Withdrawal)
class WithdrawalAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "wallet", "amount", "payment_method", "status", "processed_at", "created_at")
    list_filter = ("status", "payment_method")
    search_fields = ("wallet__uuid", "wallet__user__username")
    actions = ["approve_withdrawals", "reject_withdrawals"]

    def _resolve(self, request, queryset, handler, label):
        done = 0
        for withdrawal in queryset:
            try:
                handler(withdrawal.pk, admin=request.user)
                done += 1
            except LedgerError as exc:
                self.message_user(request, f"Withdrawal {withdrawal.pk}: {exc}", messages.WARNING)
        self.message_user(request, f"{label} {done} withdrawal(s).")

    @admin.action(description="Approve selected withdrawals")
    def approve_withdrawals(self, request, queryset):
        self._resolve(request, queryset, WithdrawalService.approve, "Approved")

    @admin.action(description="Reject selected withdrawals and return the coins")
    def reject_withdrawals(self, request, queryset):
        self._resolve(request, queryset, WithdrawalService.reject, "Rejected")


@admin.register(RateLimitBucket)
class RateLimitBucketAdmin(admin.ModelAdmin):
    list_display = ("actor_key", "action_class", "attempts", "window_started_at", "last_attempt_at")
    list_filter = ("action_class",)
    search_fields = ("actor_key",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(Setting)
class SettingAdmin(admin.ModelAdmin):
    list_display = ("key", "value", "updated_at")
    search_fields = ("key",)
