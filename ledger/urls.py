from django.urls import path

from ledger.views import (
    AdminApproveWithdrawalView,
    AdminCoinAdjustmentView,
    AdminFraudPenaltyView,
    AdminQuizRewardView,
    AdminRefundOrderView,
    AdminRejectWithdrawalView,
    AdminWithdrawalListView,
    ApplyReferralView,
    CartCountView,
    CartItemView,
    CartView,
    CheckoutView,
    LedgerHistoryView,
    OrderListView,
    PurchaseView,
    RegenerateReferralCodeView,
    StoreItemListView,
    WalletView,
    WithdrawalCancelView,
    WithdrawalListCreateView,
)

urlpatterns = [
    path("wallet/", WalletView.as_view(), name="wallet-detail"),
    path("wallet/entries/", LedgerHistoryView.as_view(), name="wallet-entries"),
    path("referrals/apply/", ApplyReferralView.as_view(), name="referral-apply"),
    path(
        "referrals/code/regenerate/",
        RegenerateReferralCodeView.as_view(),
        name="referral-code-regenerate",
    ),
    path("store/items/", StoreItemListView.as_view(), name="store-items"),
    path("store/purchase/", PurchaseView.as_view(), name="store-purchase"),
    path("store/orders/", OrderListView.as_view(), name="store-orders"),
    path("store/cart/", CartView.as_view(), name="store-cart"),
    path("store/cart/count/", CartCountView.as_view(), name="store-cart-count"),
    path("store/cart/<int:item_id>/", CartItemView.as_view(), name="store-cart-item"),
    path("store/checkout/", CheckoutView.as_view(), name="store-checkout"),
    path("withdrawals/", WithdrawalListCreateView.as_view(), name="withdrawals"),
    path(
        "withdrawals/<int:withdrawal_id>/",
        WithdrawalCancelView.as_view(),
        name="withdrawal-cancel",
    ),
    path(
        "admin/users/<int:user_id>/coins/",
        AdminCoinAdjustmentView.as_view(),
        name="admin-coin-adjustment",
    ),
    path(
        "admin/users/<int:user_id>/quiz-rewards/",
        AdminQuizRewardView.as_view(),
        name="admin-quiz-reward",
    ),
    path(
        "admin/users/<int:user_id>/penalties/",
        AdminFraudPenaltyView.as_view(),
        name="admin-fraud-penalty",
    ),
    path("admin/withdrawals/", AdminWithdrawalListView.as_view(), name="admin-withdrawals"),
    path(
        "admin/withdrawals/<int:withdrawal_id>/approve/",
        AdminApproveWithdrawalView.as_view(),
        name="admin-withdrawal-approve",
    ),
    path(
        "admin/withdrawals/<int:withdrawal_id>/reject/",
        AdminRejectWithdrawalView.as_view(),
        name="admin-withdrawal-reject",
    ),
    path(
        "admin/orders/<int:order_id>/refund/",
        AdminRefundOrderView.as_view(),
        name="admin-order-refund",
    ),
]
