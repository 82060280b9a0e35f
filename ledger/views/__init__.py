from ledger.views.wallet import LedgerHistoryView, WalletView
from ledger.views.referral import ApplyReferralView, RegenerateReferralCodeView
from ledger.views.store import (
    CartCountView,
    CartItemView,
    CartView,
    CheckoutView,
    OrderListView,
    PurchaseView,
    StoreItemListView,
)
from ledger.views.withdrawal import WithdrawalCancelView, WithdrawalListCreateView
from ledger.views.admin import (
    AdminApproveWithdrawalView,
    AdminCoinAdjustmentView,
    AdminFraudPenaltyView,
    AdminQuizRewardView,
    AdminRefundOrderView,
    AdminRejectWithdrawalView,
    AdminWithdrawalListView,
)

__all__ = [
    "WalletView",
    "LedgerHistoryView",
    "ApplyReferralView",
    "RegenerateReferralCodeView",
    "StoreItemListView",
    "PurchaseView",
    "OrderListView",
    "CartView",
    "CartItemView",
    "CartCountView",
    "CheckoutView",
    "WithdrawalListCreateView",
    "WithdrawalCancelView",
    "AdminCoinAdjustmentView",
    "AdminQuizRewardView",
    "AdminFraudPenaltyView",
    "AdminWithdrawalListView",
    "AdminApproveWithdrawalView",
    "AdminRejectWithdrawalView",
    "AdminRefundOrderView",
]
