from rest_framework import serializers

from ledger.models import Withdrawal
from ledger.models.limits import MAX_BIGINT


class WithdrawalRequestSerializer(serializers.Serializer):
    """Validates withdrawal requests."""

    amount = serializers.IntegerField(min_value=1, max_value=MAX_BIGINT)
    payment_method = serializers.CharField(max_length=50)
    payment_details = serializers.DictField(
        child=serializers.CharField(allow_blank=True), required=False, default=dict
    )


class RejectWithdrawalSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class WithdrawalSerializer(serializers.ModelSerializer):
    """Read-only serializer for withdrawal responses."""

    wallet_uuid = serializers.UUIDField(source="wallet.uuid", read_only=True)

    class Meta:
        model = Withdrawal
        fields = (
            "id",
            "wallet_uuid",
            "amount",
            "status",
            "payment_method",
            "payment_details",
            "processed_at",
            "processed_by",
            "rejection_reason",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields
