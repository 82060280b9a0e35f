import logging

from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.response import Response

from ledger.models import Order, StoreItem
from ledger.serializers import (
    AddCartItemSerializer,
    CartItemSerializer,
    OrderSerializer,
    PurchaseSerializer,
    StoreItemSerializer,
)
from ledger.services import CartService, PurchaseService
from ledger.views.base import LedgerAPIView

logger = logging.getLogger(__name__)


def idempotency_key(request):
    """The `Idempotency-Key` header, or None. Over-long keys are refused."""
    key = request.META.get("HTTP_IDEMPOTENCY_KEY") or None
    max_length = Order._meta.get_field("idempotency_key").max_length
    if key is not None and len(key) > max_length:
        raise ValueError(f"Idempotency-Key must be at most {max_length} characters.")
    return key


class StoreItemListView(ListAPIView):
    """GET /api/store/items/ — Active store items."""

    serializer_class = StoreItemSerializer

    def get_queryset(self):
        return StoreItem.objects.filter(is_active=True).order_by("coin_cost", "pk")


class PurchaseView(LedgerAPIView):
    """
    POST /api/store/purchase/ — Buy a store item with coins.

    Request body: {"item_id": <id>, "quantity": <positive integer>}
    An `Idempotency-Key` header makes retries return the stored order.
    """

    def post(self, request, *args, **kwargs):
        serializer = PurchaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = PurchaseService.purchase(
            user_id=request.user.pk,
            item_id=serializer.validated_data["item_id"],
            quantity=serializer.validated_data["quantity"],
            idempotency_key=idempotency_key(request),
        )
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)


class OrderListView(ListAPIView):
    """GET /api/store/orders/ — Orders of the current user."""

    serializer_class = OrderSerializer

    def get_queryset(self):
        return Order.objects.filter(wallet__user=self.request.user).prefetch_related("items")


class CartView(LedgerAPIView):
    """
    GET /api/store/cart/ — Cart lines and item count.
    POST /api/store/cart/ — Add an item: {"item_id": <id>, "quantity": <n>}
    """

    def get(self, request, *args, **kwargs):
        lines = CartService.items(request.user.pk)
        return Response(
            {
                "items": CartItemSerializer(lines, many=True).data,
                "count": CartService.count(request.user.pk),
            }
        )

    def post(self, request, *args, **kwargs):
        serializer = AddCartItemSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        line = CartService.add_item(
            request.user.pk,
            serializer.validated_data["item_id"],
            serializer.validated_data["quantity"],
        )
        return Response(CartItemSerializer(line).data, status=status.HTTP_201_CREATED)


class CartItemView(LedgerAPIView):
    """DELETE /api/store/cart/<item_id>/ — Remove an item from the cart."""

    def delete(self, request, item_id, *args, **kwargs):
        if not CartService.remove_item(request.user.pk, item_id):
            return Response(
                {"error": "Item not in cart.", "code": "not_found"},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(status=status.HTTP_204_NO_CONTENT)


class CartCountView(LedgerAPIView):
    """GET /api/store/cart/count/ — Number of units in the cart."""

    def get(self, request, *args, **kwargs):
        return Response({"count": CartService.count(request.user.pk)})


class CheckoutView(LedgerAPIView):
    """POST /api/store/checkout/ — Buy everything in the cart as one order."""

    def post(self, request, *args, **kwargs):
        order = PurchaseService.checkout(
            user_id=request.user.pk,
            idempotency_key=idempotency_key(request),
        )
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)
