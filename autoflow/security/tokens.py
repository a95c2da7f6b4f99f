"""Capability tokens scoped to a single identity and execution."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import jwt

from ..errors import AuthorizationError, ForbiddenError
from ..persistence.models import IdentityContext, utcnow

CAPABILITY_SCOPE = "workflow:execute"


class CapabilityTokenIssuer:
    """Issues and validates HS256 tokens handed to the remote execution host.

    A token names exactly one identity and one execution, so a remote host
    holding it cannot act for another member or report on another execution.
    Without ``ttl_seconds`` a token carries no ``exp`` and stays usable for
    as long as its execution runs.
    """

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        issuer: str = "autoflow",
        audience: str = "autoflow-agent",
        ttl_seconds: Optional[int] = None,
        leeway: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("Capability token secret must not be empty")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.leeway = leeway

    def issue(self, identity: IdentityContext, execution_id: str) -> str:
        now = utcnow()
        claims: Dict[str, Any] = {
            "sub": identity.user_id,
            "org": identity.organization_id,
            "member": identity.member_id,
            "role": identity.role,
            "execution_id": execution_id,
            "scope": CAPABILITY_SCOPE,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
        }
        if self.ttl_seconds is not None:
            claims["exp"] = now + timedelta(seconds=self.ttl_seconds)
        if identity.team_id:
            claims["team"] = identity.team_id
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Mapping[str, Any]:
        """Validate ``token`` and return its claims.

        ``exp`` is checked when present; it is only required when this
        issuer is configured with a lifetime.
        """
        required = ["sub", "execution_id"]
        if self.ttl_seconds is not None:
            required.append("exp")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": required},
            )
        except jwt.PyJWTError as exc:
            raise AuthorizationError(f"Invalid capability token: {exc}") from exc
        if claims.get("scope") != CAPABILITY_SCOPE:
            raise AuthorizationError("Capability token has the wrong scope")
        return claims

    def verify_for_execution(self, token: str, execution_id: str) -> Mapping[str, Any]:
        claims = self.verify(token)
        if claims.get("execution_id") != execution_id:
            raise ForbiddenError("Capability token is not valid for this execution")
        return claims
