from rest_framework.generics import ListAPIView
from rest_framework.response import Response

from ledger.serializers import LedgerEntrySerializer, WalletSerializer
from ledger.services import LedgerService
from ledger.views.base import LedgerAPIView


class WalletView(LedgerAPIView):
    """GET /api/wallet/ — Balance and referral code of the current user."""

    def get(self, request, *args, **kwargs):
        wallet = LedgerService.get_wallet(request.user.pk)
        return Response(WalletSerializer(wallet).data)


class LedgerHistoryView(ListAPIView):
    """
    GET /api/wallet/entries/ — Ledger history of the current user, newest first.

    Query params:
        - type: Filter by entry type (e.g. quiz_reward, store_purchase)
    """

    serializer_class = LedgerEntrySerializer

    def get_queryset(self):
        entry_type = self.request.query_params.get("type")
        return LedgerService.history(
            self.request.user.pk, entry_type=entry_type.lower() if entry_type else None
        )
