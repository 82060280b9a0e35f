from ledger.serializers.wallet import LedgerEntrySerializer, WalletSerializer
from ledger.serializers.referral import ApplyReferralSerializer, ReferralApplicationSerializer
from ledger.serializers.store import (
    AddCartItemSerializer,
    CartItemSerializer,
    OrderSerializer,
    PurchaseSerializer,
    StoreItemSerializer,
)
from ledger.serializers.withdrawal import (
    RejectWithdrawalSerializer,
    WithdrawalRequestSerializer,
    WithdrawalSerializer,
)
from ledger.serializers.admin import (
    CoinAdjustmentSerializer,
    FraudPenaltySerializer,
    QuizRewardSerializer,
)

__all__ = [
    "WalletSerializer",
    "LedgerEntrySerializer",
    "ApplyReferralSerializer",
    "ReferralApplicationSerializer",
    "StoreItemSerializer",
    "PurchaseSerializer",
    "AddCartItemSerializer",
    "CartItemSerializer",
    "OrderSerializer",
    "WithdrawalRequestSerializer",
    "RejectWithdrawalSerializer",
    "WithdrawalSerializer",
    "CoinAdjustmentSerializer",
    "FraudPenaltySerializer",
    "QuizRewardSerializer",
]
