"""Token verification, bearer parsing and operator roles."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_token
from dealerhub.common.errors import AuthError
from dealerhub.common.identity import IdentityVerifier, Role, bearer_token, is_operator


def test_verify_reads_user_id_or_sub():
    verifier = IdentityVerifier()

    assert verifier.verify(make_token("u1")).principal_id == "u1"
    principal = verifier.verify(make_token("a1", role="ADMIN", claim="sub"))
    assert principal.role is Role.ADMIN
    assert principal.is_operator


def test_verify_rejects_expired_and_unknown_role():
    verifier = IdentityVerifier()
    expired = make_token("u1", exp=datetime.now(timezone.utc) - timedelta(minutes=1))

    with pytest.raises(AuthError):
        verifier.verify(expired)
    with pytest.raises(AuthError, match="unknown role"):
        verifier.verify(make_token("u1", role="MECHANIC"))


def test_verify_rejects_foreign_signature():
    with pytest.raises(AuthError):
        IdentityVerifier(secret="another-secret").verify(make_token("u1"))


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer abc") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token(None) is None


def test_operator_roles():
    assert is_operator("ADMIN")
    assert is_operator(Role.SUPER_ADMIN)
    assert not is_operator("USER")
    assert not is_operator(None)
