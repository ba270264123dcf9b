from django.core.validators import ProhibitNullCharactersValidator
from rest_framework import serializers


class OpaqueCharField(serializers.CharField):
    """CharField that stores text verbatim, NUL characters included."""

    def __init__(self, **kwargs):
        kwargs.setdefault("trim_whitespace", False)
        super().__init__(**kwargs)
        self.validators = [
            validator
            for validator in self.validators
            if not isinstance(validator, ProhibitNullCharactersValidator)
        ]


class RecordSerializer(serializers.Serializer):
    """Serializer for records read from or written to the store."""

    key = serializers.CharField(read_only=True)
    value = serializers.CharField(read_only=True)
    created_at = serializers.DateTimeField(read_only=True)


class RecordCreateSerializer(serializers.Serializer):
    """Body of a create request."""

    key = OpaqueCharField(
        required=False,
        default="",
        allow_blank=True,
        help_text="The key to store. Must not be empty.",
    )
    value = OpaqueCharField(
        required=False,
        default="",
        allow_blank=True,
        help_text="The value to store for the key. Can be empty string.",
    )


class RecordUpdateSerializer(serializers.Serializer):
    """Body of an update request."""

    value = OpaqueCharField(
        required=False,
        default="",
        allow_blank=True,
        help_text="The new value for the key. Can be empty string.",
    )


class StatsSerializer(serializers.Serializer):
    num_keys = serializers.IntegerField(read_only=True)
    database_size = serializers.IntegerField(read_only=True)
