from rest_framework import serializers

from ledger.models.limits import MAX_ADJUSTMENT, MAX_POSITIVE_INT


class CoinAdjustmentSerializer(serializers.Serializer):
    """Validates admin coin adjustments; negative amounts debit."""

    amount = serializers.IntegerField(min_value=-MAX_ADJUSTMENT, max_value=MAX_ADJUSTMENT)
    reference = serializers.CharField(max_length=100, required=False, allow_blank=True)

    def validate_amount(self, value):
        if value == 0:
            raise serializers.ValidationError("Amount must be a non-zero integer.")
        return value


class FraudPenaltySerializer(serializers.Serializer):
    amount = serializers.IntegerField(min_value=1, max_value=MAX_ADJUSTMENT)
    reference = serializers.CharField(max_length=100)


class QuizRewardTiersSerializer(serializers.Serializer):
    participation = serializers.IntegerField(min_value=0, max_value=MAX_POSITIVE_INT, default=0)
    first_place = serializers.IntegerField(min_value=0, max_value=MAX_POSITIVE_INT, default=0)
    second_place = serializers.IntegerField(min_value=0, max_value=MAX_POSITIVE_INT, default=0)
    third_place = serializers.IntegerField(min_value=0, max_value=MAX_POSITIVE_INT, default=0)


class QuizRewardSerializer(serializers.Serializer):
    """
    Validates a graded quiz submission reported for payout.

    `score` is the points the user earned out of `total_points`; `rewards`
    holds the quiz's participation and placement coin amounts.
    """

    quiz_id = serializers.CharField(max_length=40)
    score = serializers.IntegerField(min_value=0, max_value=MAX_POSITIVE_INT)
    total_points = serializers.IntegerField(min_value=0, max_value=MAX_POSITIVE_INT)
    rewards = QuizRewardTiersSerializer()

    def validate(self, attrs):
        if attrs["score"] > attrs["total_points"]:
            raise serializers.ValidationError({"score": "Score cannot exceed total points."})
        return attrs
