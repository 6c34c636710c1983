from rest_framework import serializers

from .errors import OutcomeError
from .models import Job
from .outcomes import OutcomeType
from .snapshot import JobSnapshot


class JobSerializer(serializers.ModelSerializer):
    class Meta:
        model = Job
        fields = [
            "id",
            "project_id",
            "session_id",
            "experience_id",
            "status",
            "attempt_number",
            "current_step",
            "progress",
            "output",
            "error",
            "created_at",
            "updated_at",
            "started_at",
            "completed_at",
        ]


class JobCreateSerializer(serializers.Serializer):
    project_id = serializers.CharField(max_length=128)
    session_id = serializers.CharField(max_length=128)
    experience_id = serializers.CharField(max_length=128, required=False, allow_blank=True, default="")
    snapshot = serializers.DictField()

    def validate_snapshot(self, value):
        """
        Parse the snapshot once so malformed media references are rejected here.
        Outcome types are checked against the closed set; whether one is
        implemented is decided by the worker.
        """
        try:
            snapshot = JobSnapshot.from_dict(value)
        except OutcomeError as exc:
            raise serializers.ValidationError(str(exc))
        outcome_type = snapshot.outcome_type
        if outcome_type is not None and outcome_type not in OutcomeType.values:
            raise serializers.ValidationError(
                f"Unsupported outcome type: {outcome_type}. Allowed: {sorted(OutcomeType.values)}"
            )
        return value


class PresignRequestSerializer(serializers.Serializer):
    project_id = serializers.CharField(max_length=128)
    session_id = serializers.CharField(max_length=128)
    filename = serializers.CharField()
    content_type = serializers.CharField(required=False, allow_blank=True)


class PresignResponseSerializer(serializers.Serializer):
    key = serializers.CharField()
    url = serializers.URLField()
    headers = serializers.DictField(child=serializers.CharField(), required=False)
