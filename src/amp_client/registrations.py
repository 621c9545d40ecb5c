"""
Per-provider registration records (``registrations/<provider>.json``, 0600).
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from amp_client.errors import ConfigError, InvalidInputError
from amp_client.models.registration import Registration
from amp_client.store import write_json

logger = logging.getLogger(__name__)

_PROVIDER_RE = re.compile(r"^[a-z0-9][a-z0-9.-]*$")


def _provider_key(provider: str) -> str:
    key = (provider or "").strip().lower()
    if not _PROVIDER_RE.fullmatch(key) or ".." in key:
        raise InvalidInputError(f"Invalid provider domain: {provider!r}")
    return key


class RegistrationStore:
    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, provider: str) -> Path:
        return self.root / f"{_provider_key(provider)}.json"

    def get(self, provider: str) -> Optional[Registration]:
        path = self.path_for(provider)
        try:
            return Registration.model_validate(json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValidationError) as e:
            raise ConfigError(f"Corrupt registration file {path}: {e}")

    def save(self, registration: Registration) -> Path:
        path = self.path_for(registration.provider)
        write_json(path, registration.model_dump(by_alias=True), mode=0o600)
        logger.info(f"Saved registration for {registration.provider} as {registration.address}")
        return path

    def all(self) -> list[Registration]:
        if not self.root.is_dir():
            return []
        found = []
        for path in sorted(self.root.glob("*.json")):
            try:
                found.append(Registration.model_validate(json.loads(path.read_text())))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Ignoring unreadable registration {path}: {e}")
        return found
