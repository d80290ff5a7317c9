"""Per-entity Mercury credentials, loaded once at startup and held in memory."""

import logging

from pydantic import SecretStr

from portal.core.config import EntityConfig, Settings
from portal.core.errors import MissingCredential
from portal.core.security import mask_token

logger = logging.getLogger(__name__)


class CredentialRegistry:
    """Resolves entity id -> access token.

    Tokens stay wrapped in ``SecretStr`` so a stray ``repr`` or log line shows
    ``**********``; only the rate-limited client unwraps them to build the
    Authorization header. Anything meant for display goes through ``masked_hint``.
    """

    def __init__(self, tokens: dict[str, SecretStr]):
        self._tokens = {
            entity_id: token
            for entity_id, token in tokens.items()
            if token.get_secret_value().strip()
        }

    @classmethod
    def from_settings(cls, s: Settings) -> "CredentialRegistry":
        return cls.from_entities(s.entities, s.mercury_api_keys)

    @classmethod
    def from_entities(
        cls, entities: list[EntityConfig], keys: dict[str, SecretStr]
    ) -> "CredentialRegistry":
        tokens: dict[str, SecretStr] = {}
        for entity in entities:
            token = keys.get(entity.credential_key)
            if token is None:
                logger.warning("No Mercury credential for entity %s (ref=%s)", entity.id, entity.credential_key)
                continue
            tokens[entity.id] = token
        return cls(tokens)

    def resolve(self, entity_id: str) -> SecretStr:
        try:
            return self._tokens[entity_id]
        except KeyError:
            raise MissingCredential(entity_id) from None

    def masked_hint(self, entity_id: str) -> str:
        token = self._tokens.get(entity_id)
        return mask_token(token.get_secret_value() if token else None)

    def configured(self) -> list[str]:
        return sorted(self._tokens)

    def __repr__(self) -> str:
        return f"CredentialRegistry(entities={self.configured()!r})"
