from ledger.models.wallet import Wallet
from ledger.models.entry import LedgerEntry
from ledger.models.referral import ReferralApplication
from ledger.models.store import CartItem, Order, OrderItem, StoreItem
from ledger.models.withdrawal import Withdrawal
from ledger.models.guard import RateLimitBucket
from ledger.models.setting import Setting

__all__ = [
    "Wallet",
    "LedgerEntry",
    "ReferralApplication",
    "StoreItem",
    "Order",
    "OrderItem",
    "CartItem",
    "Withdrawal",
    "RateLimitBucket",
    "Setting",
]
