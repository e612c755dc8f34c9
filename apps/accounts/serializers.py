from rest_framework import serializers
from .models import User


class UserSerializer(serializers.ModelSerializer):
    """Current user profile, including account-level grants."""

    class Meta:
        model = User
        fields = [
            'id',
            'email',
            'display_name',
            'external_id',
            'net_id',
            'photo_url',
            'grants',
            'created_at',
            'last_login',
        ]
        read_only_fields = ['id', 'email', 'external_id', 'net_id', 'grants', 'created_at', 'last_login']


class UserLoginSerializer(serializers.Serializer):
    """Serializer for user login."""

    email = serializers.EmailField(required=True)
    password = serializers.CharField(
        required=True,
        write_only=True,
        style={'input_type': 'password'}
    )
