"""
Authentication: strategies, the chain and identity administration.
"""

from flowguard.auth.chain import AuthenticationChain, build_strategies
from flowguard.auth.identity import ApiKeyService, ProfileService
from flowguard.auth.principal import AuthMethod, AuthRequest, Identity, Principal
from flowguard.auth.strategies import ApiKeyStrategy, BasicAuthStrategy, TokenStrategy

__all__ = [
    "AuthenticationChain",
    "build_strategies",
    "ApiKeyService",
    "ProfileService",
    "AuthMethod",
    "AuthRequest",
    "Identity",
    "Principal",
    "ApiKeyStrategy",
    "BasicAuthStrategy",
    "TokenStrategy",
]
