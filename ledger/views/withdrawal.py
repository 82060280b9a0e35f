import logging

from rest_framework import status
from rest_framework.response import Response

from ledger.models import Withdrawal
from ledger.serializers import WithdrawalRequestSerializer, WithdrawalSerializer
from ledger.services import LedgerService, WithdrawalService
from ledger.views.base import LedgerAPIView

logger = logging.getLogger(__name__)


class WithdrawalListCreateView(LedgerAPIView):
    """
    GET /api/withdrawals/ — Withdrawals of the current user.
    POST /api/withdrawals/ — Request a withdrawal; the coins are held at once.

    Request body: {"amount": <positive integer>, "payment_method": "<method>",
                   "payment_details": {...}}
    """

    def get(self, request, *args, **kwargs):
        withdrawals = Withdrawal.objects.filter(wallet__user=request.user).select_related(
            "wallet"
        )
        return Response(WithdrawalSerializer(withdrawals, many=True).data)

    def post(self, request, *args, **kwargs):
        serializer = WithdrawalRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        withdrawal = WithdrawalService.request(
            user_id=request.user.pk,
            amount=serializer.validated_data["amount"],
            payment_method=serializer.validated_data["payment_method"],
            payment_details=serializer.validated_data["payment_details"],
        )
        return Response(
            {
                "withdrawal": WithdrawalSerializer(withdrawal).data,
                "balance": LedgerService.get_balance(request.user.pk),
            },
            status=status.HTTP_201_CREATED,
        )


class WithdrawalCancelView(LedgerAPIView):
    """DELETE /api/withdrawals/<id>/ — Cancel your own pending withdrawal."""

    def delete(self, request, withdrawal_id, *args, **kwargs):
        refunded = WithdrawalService.cancel(withdrawal_id, request.user.pk)
        return Response(
            {
                "refunded": refunded,
                "balance": LedgerService.get_balance(request.user.pk),
            },
            status=status.HTTP_200_OK,
        )
