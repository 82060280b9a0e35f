from rest_framework import serializers

from ledger.models import LedgerEntry, Wallet


class WalletSerializer(serializers.ModelSerializer):
    class Meta:
        model = Wallet
        fields = (
            "uuid",
            "balance",
            "referral_code",
            "referral_count",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields


class LedgerEntrySerializer(serializers.ModelSerializer):
    """Read-only serializer for ledger history."""

    class Meta:
        model = LedgerEntry
        fields = (
            "id",
            "entry_type",
            "amount",
            "reference",
            "balance_after",
            "metadata",
            "created_at",
        )
        read_only_fields = fields
