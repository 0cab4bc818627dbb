from typing import Mapping, Optional

from pydantic import SecretStr

from igsp_hub.config import settings


class CredentialStore:
    """
    Resolves the shared secret for an api_key. Loaded once at startup;
    rotation happens by redeploying with new API_CREDENTIALS.
    """

    def __init__(self, credentials: Optional[Mapping[str, SecretStr]] = None):
        self._credentials = dict(credentials if credentials is not None else settings.api_credentials)

    def secret_for(self, api_key: str) -> Optional[str]:
        secret = self._credentials.get(api_key)
        if secret is None:
            return None
        return secret.get_secret_value()

    def __repr__(self) -> str:
        return f"CredentialStore(api_keys={sorted(self._credentials)})"
