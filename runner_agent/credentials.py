"""
Credential Resolver
===================

Finds the access token used against the control-plane API.

Precedence:
  1. GITHUB_TOKEN=... (or GITHUB_TOKEN: ...) in the mounted secret file,
     last matching line wins
  2. the GITHUB_TOKEN environment variable

The token itself is never logged, only mask_token() output.
"""

from __future__ import annotations
import logging
import os
import re
from pathlib import Path
from typing import Mapping, Optional

from .errors import CredentialError

log = logging.getLogger(__name__)

TOKEN_KEY = "GITHUB_TOKEN"


def mask_token(token: Optional[str]) -> str:
    if not token:
        return ""
    return f"{token[:4]}****"


class CredentialResolver:
    def __init__(
        self,
        secrets_file: Path,
        env:          Optional[Mapping[str, str]] = None,
        key:          str = TOKEN_KEY,
    ):
        self.secrets_file = Path(secrets_file)
        self.env          = os.environ if env is None else env
        self.key          = key
        self._pattern     = re.compile(rf"^\s*{re.escape(key)}\s*[:=]\s*(.*)$")

    def resolve(self) -> str:
        token = self._from_file()
        if token:
            log.info(f"Using {self.key} from {self.secrets_file} (masked: {mask_token(token)})")
            return token

        log.info(f"Falling back to {self.key} from the environment")
        token = (self.env.get(self.key) or "").strip()
        if token:
            log.info(f"Using {self.key} from environment (masked: {mask_token(token)})")
            return token

        raise CredentialError(
            f"{self.key} must be provided (via env or {self.secrets_file})"
        )

    def _from_file(self) -> Optional[str]:
        path = self.secrets_file
        if not path.exists():
            log.info(f"No credentials file at {path}; will use env var if provided")
            return None
        if not path.is_file():
            log.info(f"{path} is not a regular file; will use env var if provided")
            return None
        if not os.access(path, os.R_OK):
            log.warning(f"Credentials file {path} is not readable; will use env var if provided")
            return None
        if path.stat().st_size == 0:
            log.info(f"Credentials file {path} is empty; will use env var if provided")
            return None

        try:
            text = path.read_text(errors="replace")
        except OSError as e:
            log.warning(f"Could not read {path}: {e}; will use env var if provided")
            return None

        value = None
        for line in text.splitlines():
            match = self._pattern.match(line.replace("\r", ""))
            if match:
                value = match.group(1).strip()

        if value is None:
            log.info(f"No {self.key} entry in {path}; will use env var if provided")
            return None
        return value or None
