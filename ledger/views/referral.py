import logging

from rest_framework import status
from rest_framework.response import Response

from ledger.serializers import ApplyReferralSerializer
from ledger.services import LedgerService, RewardService
from ledger.views.base import LedgerAPIView

logger = logging.getLogger(__name__)


class ApplyReferralView(LedgerAPIView):
    """
    POST /api/referrals/apply/ — Apply another user's referral code.

    Request body: {"referral_code": "<code>"}
    Resubmitting the same code returns 200 and changes nothing.
    """

    def post(self, request, *args, **kwargs):
        serializer = ApplyReferralSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = RewardService.apply_referral(
            new_user_id=request.user.pk,
            referral_code=serializer.validated_data["referral_code"],
            ip_address=getattr(request, "client_ip", None),
        )

        return Response(
            {
                "created": result.created,
                "reward": result.reward,
                "balance": LedgerService.get_balance(request.user.pk),
            },
            status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
        )


class RegenerateReferralCodeView(LedgerAPIView):
    """
    POST /api/referrals/code/regenerate/ — Issue a new referral code.

    The old code stops working; referrals already applied are kept.
    """

    def post(self, request, *args, **kwargs):
        code = RewardService.regenerate_referral_code(request.user.pk)
        return Response({"referral_code": code})
