"""Tests for session token verification."""

from datetime import timedelta

import pytest
from pydantic import SecretStr

from proaccess.payments.auth import authenticate
from proaccess.payments.errors import AuthenticationError, ConfigurationError
from tests.conftest import USER_ID, make_token


class TestAuthenticate:
    """Test authenticate()."""

    def test_valid_token(self):
        assert authenticate(f"Bearer {make_token()}") == USER_ID

    def test_scheme_is_case_insensitive(self):
        assert authenticate(f"bearer {make_token()}") == USER_ID

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic dXNlcjpwYXNz"])
    def test_malformed_header(self, header):
        with pytest.raises(AuthenticationError):
            authenticate(header)

    def test_expired_token(self):
        token = make_token(expires_in=timedelta(seconds=-30))

        with pytest.raises(AuthenticationError, match="expired"):
            authenticate(f"Bearer {token}")

    def test_wrong_secret(self):
        token = make_token(secret="some-other-secret-of-enough-length")

        with pytest.raises(AuthenticationError, match="Authentication failed"):
            authenticate(f"Bearer {token}")

    def test_wrong_audience(self):
        token = make_token(audience="anon")

        with pytest.raises(AuthenticationError):
            authenticate(f"Bearer {token}")

    def test_subject_must_be_profile_id(self):
        token = make_token(user_id="not-a-uuid")

        with pytest.raises(AuthenticationError, match="No authenticated user"):
            authenticate(f"Bearer {token}")

    def test_missing_secret(self, app_config):
        app_config.auth_jwt_secret = SecretStr("")

        with pytest.raises(ConfigurationError):
            authenticate(f"Bearer {make_token()}")
