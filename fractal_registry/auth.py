"""Caller identity for the HTTP interface.

Mutations are owned by whoever makes the call, so the owner must come from
something the caller cannot simply claim. Deployers configure a map of API
keys to account ids; a request's ``X-Api-Key`` then determines its account.

Without a configured map the server runs in open (development) mode and
trusts the ``X-Account-Id`` header as-is.

Env vars:
  - FRACTAL_API_KEYS_JSON: JSON object mapping api_key -> account_id
  - FRACTAL_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .keys import is_valid_account_id

ENV_API_KEYS_JSON = "FRACTAL_API_KEYS_JSON"
ENV_API_KEYS_FILE = "FRACTAL_API_KEYS_FILE"

ERR_CONFIG_INVALID = "API_KEY_CONFIG_INVALID"
ERR_KEY_REQUIRED = "API_KEY_REQUIRED"
ERR_KEY_INVALID = "API_KEY_INVALID"
ERR_ACCOUNT_MISMATCH = "ACCOUNT_ID_MISMATCH"
ERR_ACCOUNT_REQUIRED = "ACCOUNT_ID_REQUIRED"


@dataclass(frozen=True)
class ApiKeyAuth:
    key_to_account: Dict[str, str] = field(default_factory=dict)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the API key map.

        If configuration is present but malformed (bad JSON, unreadable file,
        invalid account id) the instance carries config_error and every
        resolution fails closed.
        """
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls()

        try:
            if raw_json:
                data = json.loads(raw_json)
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("API key map must be a JSON object")
            mapping = {str(k): str(v) for k, v in data.items()}
            bad = [v for v in mapping.values() if not is_valid_account_id(v)]
            if bad:
                raise ValueError(f"invalid account ids in API key map: {bad}")
        except (OSError, ValueError):
            return cls(configured=True, config_error=ERR_CONFIG_INVALID)

        return cls(key_to_account=mapping, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve_caller(
        self,
        api_key: Optional[str],
        claimed_account_id: Optional[str] = None,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Resolve the calling account.

        Returns (account_id, error). A non-None error means the request must
        be rejected.
        """
        if self.config_error:
            return None, self.config_error

        if not self.enabled():
            if not claimed_account_id:
                return None, ERR_ACCOUNT_REQUIRED
            return claimed_account_id, None

        if not api_key:
            return None, ERR_KEY_REQUIRED

        account_id = self.key_to_account.get(api_key)
        if not account_id:
            return None, ERR_KEY_INVALID

        if claimed_account_id and claimed_account_id != account_id:
            return None, ERR_ACCOUNT_MISMATCH

        return account_id, None
