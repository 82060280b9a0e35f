from rest_framework import serializers

from ledger.models import CartItem, Order, OrderItem, StoreItem
from ledger.models.limits import MAX_BIGINT, MAX_POSITIVE_INT


class StoreItemSerializer(serializers.ModelSerializer):
    """Public view of a store item; the redeem payload is never exposed here."""

    class Meta:
        model = StoreItem
        fields = (
            "id",
            "name",
            "description",
            "category",
            "coin_cost",
            "inventory",
            "sold_count",
            "is_active",
        )
        read_only_fields = fields


class PurchaseSerializer(serializers.Serializer):
    """Validates single-item purchase requests."""

    item_id = serializers.IntegerField(min_value=1, max_value=MAX_BIGINT)
    quantity = serializers.IntegerField(min_value=1, max_value=MAX_POSITIVE_INT, default=1)


class AddCartItemSerializer(serializers.Serializer):
    item_id = serializers.IntegerField(min_value=1, max_value=MAX_BIGINT)
    quantity = serializers.IntegerField(min_value=1, max_value=MAX_POSITIVE_INT, default=1)


class CartItemSerializer(serializers.ModelSerializer):
    item = StoreItemSerializer(source="store_item", read_only=True)

    class Meta:
        model = CartItem
        fields = ("id", "item", "quantity", "created_at")
        read_only_fields = fields


class OrderItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderItem
        fields = (
            "store_item",
            "name",
            "category",
            "quantity",
            "unit_price",
            "revealed_redeem_code",
            "revealed_reward_details",
        )
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """Read-only serializer for order responses."""

    items = OrderItemSerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = (
            "id",
            "transaction_id",
            "total_cost",
            "status",
            "balance_before",
            "balance_after",
            "items",
            "refunded_at",
            "created_at",
        )
        read_only_fields = fields
