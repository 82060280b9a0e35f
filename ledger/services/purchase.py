import logging
import uuid
from collections import OrderedDict

from django.conf import settings
from django.db import transaction
from django.db.models import F, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from ledger.cache import TTLCache
from ledger.exceptions import (
    AlreadyProcessed,
    InsufficientFunds,
    ItemUnavailable,
    OutOfStock,
)
from ledger.models import CartItem, LedgerEntry, Order, OrderItem, StoreItem, Wallet
from ledger.models.limits import MAX_POSITIVE_INT
from ledger.services import notify, references
from ledger.services.ledger import LedgerService, retry_on_store_error

logger = logging.getLogger(__name__)

_cart_count_cache = TTLCache("cart-count", getattr(settings, "CART_COUNT_CACHE_TTL", 60))


def _existing_order(wallet, idempotency_key):
    if not idempotency_key:
        return None
    order = Order.objects.filter(idempotency_key=idempotency_key).first()
    if order is None:
        return None
    if order.wallet_id != wallet.pk:
        raise ValueError("Idempotency key already used for another order.")
    logger.info(
        "Idempotent purchase request: key=%s order=%s", idempotency_key, order.transaction_id
    )
    return order


class PurchaseService:
    """
    Spends coins in the store.

    A purchase is one atomic unit: the buyer's wallet and every item row are
    locked, affordability and stock are validated, the wallet is debited
    through LedgerService, finite inventory is decremented with a
    conditional update and the order is recorded. Any failure rolls back
    every step, so there is never a debit without an order or an order
    without stock.
    """

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def purchase(user_id, item_id, quantity: int = 1, idempotency_key: str = None) -> Order:
        """
        Buy `quantity` units of one item.

        Returns:
            The COMPLETED order, or the stored order when `idempotency_key`
            was already used by this buyer.

        Raises:
            Wallet.DoesNotExist / StoreItem.DoesNotExist: Unknown buyer or item.
            ValueError: If quantity is not positive.
            ItemUnavailable: If the item is inactive.
            InsufficientFunds: If the buyer cannot afford the total.
            OutOfStock: If finite inventory is below quantity.
        """
        if quantity <= 0:
            raise ValueError("Quantity must be a positive integer.")

        wallet = Wallet.objects.select_for_update().get(user_id=user_id)
        replay = _existing_order(wallet, idempotency_key)
        if replay:
            return replay

        return PurchaseService._place_order(wallet, [(item_id, quantity)], idempotency_key)

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def checkout(user_id, idempotency_key: str = None) -> Order:
        """
        Buy everything in the user's cart as a single order.

        The cart lines are read into memory before anything is written, and
        the cart is only emptied once the order exists.
        """
        wallet = Wallet.objects.select_for_update().get(user_id=user_id)
        replay = _existing_order(wallet, idempotency_key)
        if replay:
            return replay

        lines = list(
            CartItem.objects.filter(wallet=wallet)
            .order_by("created_at", "id")
            .values_list("store_item_id", "quantity")
        )
        if not lines:
            raise ValueError("Cart is empty.")

        order = PurchaseService._place_order(wallet, lines, idempotency_key)

        CartItem.objects.filter(wallet=wallet).delete()
        transaction.on_commit(lambda: CartService.invalidate_count(user_id))
        return order

    @staticmethod
    def _place_order(wallet, lines, idempotency_key=None) -> Order:
        """Validate and record an order for locked `wallet`; caller owns the transaction."""
        quantities = OrderedDict()
        for item_id, quantity in lines:
            quantities[item_id] = quantities.get(item_id, 0) + quantity

        items = {
            item.pk: item
            for item in StoreItem.objects.select_for_update()
            .filter(pk__in=list(quantities))
            .order_by("pk")
        }
        for item_id in quantities:
            if item_id not in items:
                raise StoreItem.DoesNotExist(f"Store item {item_id} not found.")
            if not items[item_id].is_active:
                raise ItemUnavailable(f'Item "{items[item_id].name}" is not available.')

        total_cost = sum(items[item_id].coin_cost * quantity for item_id, quantity in quantities.items())
        if wallet.balance < total_cost:
            raise InsufficientFunds(balance=wallet.balance, required=total_cost)

        for item_id, quantity in quantities.items():
            item = items[item_id]
            if item.inventory is not None and item.inventory < quantity:
                raise OutOfStock(
                    f'Insufficient stock for "{item.name}". Available: {item.inventory}.'
                )

        transaction_id = uuid.uuid4()
        balance_before = wallet.balance
        balance_after = balance_before
        if total_cost > 0:
            entry = LedgerService.apply_entry(
                wallet.user_id,
                LedgerEntry.EntryType.STORE_PURCHASE,
                -total_cost,
                references.order(transaction_id),
                metadata={"items": {str(k): v for k, v in quantities.items()}},
            )
            balance_after = entry.balance_after

        order = Order.objects.create(
            wallet=wallet,
            transaction_id=transaction_id,
            idempotency_key=idempotency_key or None,
            total_cost=total_cost,
            status=Order.Status.COMPLETED,
            balance_before=balance_before,
            balance_after=balance_after,
        )

        for item_id, quantity in quantities.items():
            item = items[item_id]
            stock_qs = StoreItem.objects.filter(pk=item.pk)
            if item.inventory is None:
                stock_qs.update(sold_count=F("sold_count") + quantity)
            else:
                updated = stock_qs.filter(inventory__gte=quantity).update(
                    inventory=F("inventory") - quantity,
                    sold_count=F("sold_count") + quantity,
                )
                if updated != 1:
                    raise OutOfStock(f'Insufficient stock for "{item.name}".')

            payload = item.revealed_payload()
            OrderItem.objects.create(
                order=order,
                store_item=item,
                name=item.name,
                category=item.category,
                quantity=quantity,
                unit_price=item.coin_cost,
                revealed_redeem_code=payload["redeem_code"],
                revealed_reward_details=payload["reward_details"],
            )

        logger.info(
            "Purchase completed: wallet=%s order=%s total=%d balance_before=%d balance_after=%d",
            wallet.uuid,
            order.transaction_id,
            total_cost,
            balance_before,
            balance_after,
        )
        notify.emit(
            "store.order_completed",
            {
                "user_id": wallet.user_id,
                "order_id": str(order.transaction_id),
                "total_cost": total_cost,
            },
        )
        return order

    @staticmethod
    @retry_on_store_error
    @transaction.atomic
    def refund(order_id, admin=None) -> Order:
        """
        Refund a completed order: credit the coins back and restock.

        Raises:
            Order.DoesNotExist: Unknown order.
            AlreadyProcessed: If the order is not COMPLETED.
        """
        order = Order.objects.select_for_update().get(pk=order_id)
        if order.status != Order.Status.COMPLETED:
            raise AlreadyProcessed(f"Order is already {order.status}.")

        if order.total_cost > 0:
            LedgerService.apply_entry_once(
                order.wallet.user_id,
                LedgerEntry.EntryType.STORE_REFUND,
                order.total_cost,
                order.reference,
                metadata={"admin_id": getattr(admin, "pk", None)},
            )

        for line in order.items.all():
            StoreItem.objects.filter(pk=line.store_item_id, inventory__isnull=False).update(
                inventory=F("inventory") + line.quantity
            )
            StoreItem.objects.filter(
                pk=line.store_item_id, sold_count__gte=line.quantity
            ).update(sold_count=F("sold_count") - line.quantity)

        order.status = Order.Status.REFUNDED
        order.refunded_at = timezone.now()
        order.refunded_by = admin
        order.save(update_fields=["status", "refunded_at", "refunded_by", "updated_at"])

        logger.info(
            "Order refunded: order=%s amount=%d admin=%s",
            order.transaction_id,
            order.total_cost,
            getattr(admin, "pk", None),
        )
        notify.emit(
            "store.order_refunded",
            {"order_id": str(order.transaction_id), "amount": order.total_cost},
        )
        return order


class CartService:
    """Cart lines for the store, with a cached item count."""

    @staticmethod
    def add_item(user_id, item_id, quantity: int = 1) -> CartItem:
        if quantity <= 0:
            raise ValueError("Quantity must be a positive integer.")
        item = StoreItem.objects.get(pk=item_id)
        if not item.is_active:
            raise ItemUnavailable(f'Item "{item.name}" is not available.')

        wallet = Wallet.objects.get(user_id=user_id)
        with transaction.atomic():
            line, created = CartItem.objects.get_or_create(
                wallet=wallet, store_item=item, defaults={"quantity": quantity}
            )
            if not created:
                updated = CartItem.objects.filter(
                    pk=line.pk, quantity__lte=MAX_POSITIVE_INT - quantity
                ).update(quantity=F("quantity") + quantity)
                if not updated:
                    raise ValueError("Cart quantity is too large.")
                line.refresh_from_db()
        CartService.invalidate_count(user_id)
        return line

    @staticmethod
    def remove_item(user_id, item_id) -> bool:
        deleted, _ = CartItem.objects.filter(
            wallet__user_id=user_id, store_item_id=item_id
        ).delete()
        CartService.invalidate_count(user_id)
        return bool(deleted)

    @staticmethod
    def items(user_id):
        return CartItem.objects.filter(wallet__user_id=user_id).select_related("store_item")

    @staticmethod
    def count(user_id) -> int:
        return _cart_count_cache.get_or_set(
            user_id,
            lambda: CartItem.objects.filter(wallet__user_id=user_id).aggregate(
                total=Coalesce(Sum("quantity"), Value(0))
            )["total"],
        )

    @staticmethod
    def invalidate_count(user_id):
        _cart_count_cache.invalidate(user_id)
