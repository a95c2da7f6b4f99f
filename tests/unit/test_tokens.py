from datetime import datetime, timedelta, timezone

import jwt
import pytest

from autoflow.errors import AuthorizationError, ForbiddenError
from autoflow.persistence.models import IdentityContext
from autoflow.security import CAPABILITY_SCOPE, CapabilityTokenIssuer

IDENTITY = IdentityContext(
    user_id="user-1",
    organization_id="org-1",
    member_id="member-1",
    role="owner",
    team_id="team-1",
)


def test_token_is_scoped_to_identity_and_execution():
    issuer = CapabilityTokenIssuer("secret")
    token = issuer.issue(IDENTITY, "exec-1")

    claims = issuer.verify_for_execution(token, "exec-1")
    assert claims["sub"] == "user-1"
    assert claims["org"] == "org-1"
    assert claims["member"] == "member-1"
    assert claims["team"] == "team-1"
    assert claims["scope"] == CAPABILITY_SCOPE

    with pytest.raises(ForbiddenError):
        issuer.verify_for_execution(token, "exec-2")


def test_token_from_other_secret_is_rejected():
    token = CapabilityTokenIssuer("other").issue(IDENTITY, "exec-1")
    with pytest.raises(AuthorizationError):
        CapabilityTokenIssuer("secret").verify(token)


def test_expired_token_is_rejected():
    issuer = CapabilityTokenIssuer("secret", ttl_seconds=-120, leeway=0)
    with pytest.raises(AuthorizationError):
        issuer.verify(issuer.issue(IDENTITY, "exec-1"))


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        CapabilityTokenIssuer("")


def test_default_token_outlives_long_executions():
    issuer = CapabilityTokenIssuer("secret")
    token = issuer.issue(IDENTITY, "exec-1")
    assert "exp" not in jwt.decode(token, options={"verify_signature": False})

    aged = jwt.encode(
        {
            "sub": "user-1",
            "execution_id": "exec-1",
            "scope": CAPABILITY_SCOPE,
            "iss": "autoflow",
            "aud": "autoflow-agent",
            "iat": datetime.now(timezone.utc) - timedelta(hours=3),
        },
        "secret",
        algorithm="HS256",
    )
    assert issuer.verify_for_execution(aged, "exec-1")["sub"] == "user-1"
