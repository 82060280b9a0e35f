import uuid

from django.conf import settings
from django.db import models
from django.db.models import Q

from ledger.models.base import BaseModel
from ledger.models.wallet import Wallet


class StoreItem(BaseModel):
    """
    Something that can be bought with coins.

    `inventory` is None for unlimited stock. Finite inventory is only
    decremented by PurchaseService with a conditional update, so it never
    goes negative.
    """

    class Category(models.TextChoices):
        REDEEM_CODE = "redeem_code", "Redeem code"
        DIGITAL_REWARD = "digital_reward", "Digital reward"
        PHYSICAL = "physical", "Physical"
        COSMETIC = "cosmetic", "Cosmetic"

    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    category = models.CharField(
        max_length=20,
        choices=Category.choices,
        default=Category.DIGITAL_REWARD,
    )
    coin_cost = models.PositiveIntegerField()
    inventory = models.IntegerField(
        null=True,
        blank=True,
        help_text="Remaining stock. Leave empty for unlimited.",
    )
    sold_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    redeem_code = models.CharField(max_length=255, blank=True)
    reward_details = models.TextField(blank=True)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=Q(inventory__isnull=True) | Q(inventory__gte=0),
                name="store_item_inventory_non_negative",
            ),
        ]

    def __str__(self):
        stock = "unlimited" if self.inventory is None else self.inventory
        return f"{self.name} ({self.coin_cost} coins, stock={stock})"

    @property
    def is_unlimited(self):
        return self.inventory is None

    def revealed_payload(self):
        """What the buyer receives, captured on the order at purchase time."""
        if self.category == self.Category.REDEEM_CODE:
            return {"redeem_code": self.redeem_code, "reward_details": ""}
        if self.category == self.Category.DIGITAL_REWARD:
            return {"redeem_code": "", "reward_details": self.reward_details}
        return {"redeem_code": "", "reward_details": ""}


class Order(BaseModel):
    """
    A completed (or later refunded) store purchase.

    balance_before - total_cost == balance_after always holds, and prices
    live on the OrderItem rows as they were at purchase time.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        REFUNDED = "refunded", "Refunded"
        CANCELLED = "cancelled", "Cancelled"

    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        related_name="orders",
    )
    transaction_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    idempotency_key = models.CharField(
        max_length=64,
        unique=True,
        null=True,
        blank=True,
        editable=False,
        help_text="Client-supplied key; a replay returns this order.",
    )
    total_cost = models.PositiveBigIntegerField()
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING,
    )
    balance_before = models.BigIntegerField()
    balance_after = models.BigIntegerField()
    refunded_at = models.DateTimeField(null=True, blank=True)
    refunded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["wallet", "status"], name="idx_order_wallet_status"),
        ]

    def __str__(self):
        return f"Order {self.transaction_id} | {self.total_cost} | {self.status}"

    @property
    def reference(self):
        return f"order_{self.transaction_id}"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    store_item = models.ForeignKey(
        StoreItem,
        on_delete=models.PROTECT,
        related_name="order_items",
    )
    name = models.CharField(max_length=200)
    category = models.CharField(max_length=20, choices=StoreItem.Category.choices)
    quantity = models.PositiveIntegerField()
    unit_price = models.PositiveIntegerField()
    revealed_redeem_code = models.CharField(max_length=255, blank=True)
    revealed_reward_details = models.TextField(blank=True)

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.quantity} x {self.name} @ {self.unit_price}"

    @property
    def line_total(self):
        return self.unit_price * self.quantity


class CartItem(BaseModel):
    wallet = models.ForeignKey(Wallet, on_delete=models.CASCADE, related_name="cart_items")
    store_item = models.ForeignKey(StoreItem, on_delete=models.CASCADE, related_name="+")
    quantity = models.PositiveIntegerField(default=1)

    class Meta:
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["wallet", "store_item"],
                name="uniq_cart_item",
            ),
        ]

    def __str__(self):
        return f"Cart {self.wallet_id}: {self.quantity} x {self.store_item_id}"
