from erpconsole.core.identity.models import Identity, IdentityEvent, OTPIdentity, ProviderIdentity, ProviderResult
from erpconsole.core.identity.provider import AnyIdentity, IdentityProvider

__all__ = [
    "AnyIdentity",
    "Identity",
    "IdentityEvent",
    "IdentityProvider",
    "OTPIdentity",
    "ProviderIdentity",
    "ProviderResult",
]
