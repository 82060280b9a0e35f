from rest_framework import serializers

from ledger.models import ReferralApplication


class ApplyReferralSerializer(serializers.Serializer):
    """Validates referral code applications."""

    referral_code = serializers.CharField(max_length=16, trim_whitespace=True)

    def validate_referral_code(self, value):
        value = value.strip().upper()
        if not value:
            raise serializers.ValidationError("Referral code cannot be empty.")
        return value


class ReferralApplicationSerializer(serializers.ModelSerializer):
    referrer_code = serializers.CharField(source="referrer.referral_code", read_only=True)

    class Meta:
        model = ReferralApplication
        fields = ("id", "referrer_code", "code_used", "reward_amount", "applied_at")
        read_only_fields = fields
