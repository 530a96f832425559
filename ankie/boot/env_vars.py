# ankie/boot/env_vars.py

import os
import logging
from typing import Dict, Optional

_log = logging.getLogger(__name__)


# Provider id -> environment variable holding its API key
PROVIDER_KEY_VARS: Dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "xai": "XAI_API_KEY",
    "google": "GOOGLE_API_KEY",
}


class EnvConfig:
    """
    Environment variable accessor for provider credentials.

    - Reads keys lazily so a .env loaded after import is still honoured
    - Never exits the process: a missing key only disables that provider
    """

    def __init__(self, environ: Optional[Dict[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def api_key(self, provider: str) -> Optional[str]:
        """Return the API key for `provider`, or None when it is not set."""
        var = PROVIDER_KEY_VARS.get(provider)
        if var is None:
            return None
        value = self._environ.get(var)
        if not value:
            _log.debug("Env var %s is not set; provider '%s' unavailable.", var, provider)
            return None
        return value

    def key_var(self, provider: str) -> str:
        return PROVIDER_KEY_VARS.get(provider, f"{provider.upper()}_API_KEY")

    def configured_providers(self) -> Dict[str, bool]:
        """Map of provider id -> whether credentials are present."""
        return {p: self.api_key(p) is not None for p in PROVIDER_KEY_VARS}
