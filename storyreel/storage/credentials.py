"""
Credential Vault

Per-user provider secrets. Every external call is scoped to the story
owner's own key; there are no shared keys.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from storyreel.core.constants import Provider
from storyreel.core.env_loader import get_env_key
from storyreel.core.exceptions import MissingCredentialError


class CredentialVault(ABC):
    """Looks up a provider secret for a user."""

    @abstractmethod
    def get(self, provider: str, user_id) -> Optional[str]:
        pass

    def has(self, provider: str, user_id) -> bool:
        return self.get(provider, user_id) is not None

    def require(self, provider: str, user_id) -> str:
        secret = self.get(provider, user_id)
        if secret is None:
            name = _provider_name(provider)
            label = Provider(name).label if name in {p.value for p in Provider} else name
            raise MissingCredentialError(name, user_id, label=label)
        return secret

    def all_configured(self, user_id) -> bool:
        return all(self.has(p.value, user_id) for p in Provider)


def _provider_name(provider) -> str:
    return provider.value if isinstance(provider, Provider) else str(provider)


class InMemoryCredentialVault(CredentialVault):
    """Vault holding secrets in a dict keyed by (provider, user)."""

    def __init__(self):
        self._secrets: Dict[Tuple[str, str], str] = {}

    def set(self, provider: str, secret: str, user_id) -> None:
        self._secrets[(_provider_name(provider), str(user_id))] = secret

    def remove(self, provider: str, user_id) -> None:
        self._secrets.pop((_provider_name(provider), str(user_id)), None)

    def get(self, provider: str, user_id) -> Optional[str]:
        secret = self._secrets.get((_provider_name(provider), str(user_id)))
        return secret or None


class EnvCredentialVault(CredentialVault):
    """
    Single-tenant vault reading keys from the environment.

    Looks up ``STORYREEL_<PROVIDER>_KEY_<USER>`` first, then ``STORYREEL_<PROVIDER>_KEY``.
    """

    def get(self, provider: str, user_id) -> Optional[str]:
        name = f"STORYREEL_{_provider_name(provider).upper()}_KEY"
        return get_env_key(f"{name}_{user_id}", [name])
