import logging

from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from ledger.models import Withdrawal
from ledger.serializers import (
    CoinAdjustmentSerializer,
    FraudPenaltySerializer,
    LedgerEntrySerializer,
    OrderSerializer,
    QuizRewardSerializer,
    RejectWithdrawalSerializer,
    WithdrawalSerializer,
)
from ledger.services import (
    LedgerService,
    PurchaseService,
    RewardService,
    WithdrawalService,
    compute_quiz_reward,
)
from ledger.views.base import LedgerAPIView

logger = logging.getLogger(__name__)


class AdminCoinAdjustmentView(LedgerAPIView):
    """
    POST /api/admin/users/<user_id>/coins/ — Credit or debit a user's wallet.

    Request body: {"amount": <non-zero integer>, "reference": "<optional>"}
    Repeating a request with the same reference changes nothing.
    """

    permission_classes = [IsAdminUser]

    def post(self, request, user_id, *args, **kwargs):
        serializer = CoinAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry, created = RewardService.grant_admin_adjustment(
            user_id,
            serializer.validated_data["amount"],
            reference=serializer.validated_data.get("reference") or None,
            admin=request.user,
        )
        return Response(
            {
                "created": created,
                "entry": LedgerEntrySerializer(entry).data,
                "balance": LedgerService.get_balance(user_id),
            },
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class AdminQuizRewardView(LedgerAPIView):
    """
    POST /api/admin/users/<user_id>/quiz-rewards/ — Pay out a graded quiz.

    Request body:
        {"quiz_id": "<id>", "score": <points>, "total_points": <points>,
         "rewards": {"participation": n, "first_place": n,
                     "second_place": n, "third_place": n}}

    A quiz pays a user at most once; a repeated submission returns 200 and
    the stored entry.
    """

    permission_classes = [IsAdminUser]

    def post(self, request, user_id, *args, **kwargs):
        serializer = QuizRewardSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        reward = compute_quiz_reward(data["score"], data["total_points"], data["rewards"])
        entry, created = RewardService.apply_quiz_reward(user_id, data["quiz_id"], reward)

        logger.info(
            "Quiz reward reported: user=%s quiz=%s score=%d/%d reward=%d created=%s",
            user_id,
            data["quiz_id"],
            data["score"],
            data["total_points"],
            reward,
            created,
        )
        return Response(
            {
                "created": created,
                "reward": reward,
                "entry": LedgerEntrySerializer(entry).data if entry else None,
                "balance": LedgerService.get_balance(user_id),
            },
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class AdminFraudPenaltyView(LedgerAPIView):
    """
    POST /api/admin/users/<user_id>/penalties/ — Deduct coins for abuse.

    Request body: {"amount": <positive integer>, "reference": "<case id>"}
    The deduction stops at a zero balance.
    """

    permission_classes = [IsAdminUser]

    def post(self, request, user_id, *args, **kwargs):
        serializer = FraudPenaltySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry, created = RewardService.apply_fraud_penalty(
            user_id,
            serializer.validated_data["amount"],
            serializer.validated_data["reference"],
        )
        return Response(
            {
                "created": created,
                "entry": LedgerEntrySerializer(entry).data if entry else None,
                "balance": LedgerService.get_balance(user_id),
            },
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class AdminWithdrawalListView(ListAPIView):
    """
    GET /api/admin/withdrawals/ — All withdrawals, newest first.

    Query params:
        - status: Filter by status (pending, approved, rejected)
    """

    permission_classes = [IsAdminUser]
    serializer_class = WithdrawalSerializer

    def get_queryset(self):
        queryset = Withdrawal.objects.select_related("wallet")
        withdrawal_status = self.request.query_params.get("status")
        if withdrawal_status:
            queryset = queryset.filter(status=withdrawal_status.lower())
        return queryset


class AdminApproveWithdrawalView(LedgerAPIView):
    """POST /api/admin/withdrawals/<id>/approve/"""

    permission_classes = [IsAdminUser]

    def post(self, request, withdrawal_id, *args, **kwargs):
        withdrawal = WithdrawalService.approve(withdrawal_id, admin=request.user)
        return Response(WithdrawalSerializer(withdrawal).data)


class AdminRejectWithdrawalView(LedgerAPIView):
    """
    POST /api/admin/withdrawals/<id>/reject/ — Reject and return the coins.

    Request body: {"reason": "<optional>"}
    """

    permission_classes = [IsAdminUser]

    def post(self, request, withdrawal_id, *args, **kwargs):
        serializer = RejectWithdrawalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        withdrawal = WithdrawalService.reject(
            withdrawal_id, admin=request.user, reason=serializer.validated_data["reason"]
        )
        return Response(WithdrawalSerializer(withdrawal).data)


class AdminRefundOrderView(LedgerAPIView):
    """POST /api/admin/orders/<id>/refund/"""

    permission_classes = [IsAdminUser]

    def post(self, request, order_id, *args, **kwargs):
        order = PurchaseService.refund(order_id, admin=request.user)
        return Response(OrderSerializer(order).data)
