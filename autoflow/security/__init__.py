from .tokens import CAPABILITY_SCOPE, CapabilityTokenIssuer

__all__ = ["CAPABILITY_SCOPE", "CapabilityTokenIssuer"]
