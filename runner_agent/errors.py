"""
Errors & Exit Codes
===================

Every fatal startup failure maps to its own exit code so an operator can
tell a bad configuration apart from a worker that crashed. The worker's own
exit status is never translated; it is passed through as-is.
"""

from __future__ import annotations
from enum import IntEnum


class ExitCode(IntEnum):
    OK            = 0
    CONFIGURATION = 2
    CREDENTIAL    = 3
    ASSET         = 4
    TOKEN         = 5
    CONFIGURE     = 6


class AgentError(Exception):
    """Base class for fatal agent errors."""
    exit_code: ExitCode = ExitCode.CONFIGURATION


class ConfigurationError(AgentError):
    """Missing or malformed required settings."""
    exit_code = ExitCode.CONFIGURATION


class CredentialError(AgentError):
    """No usable access token in the secret file or the environment."""
    exit_code = ExitCode.CREDENTIAL


class AssetError(AgentError):
    """The runner release could not be resolved or installed."""
    exit_code = ExitCode.ASSET


class TokenError(AgentError):
    """The control plane did not hand out a registration token."""
    exit_code = ExitCode.TOKEN

    def __init__(self, message: str, response_text: str = ""):
        super().__init__(message)
        self.response_text = response_text


class ConfigureError(AgentError):
    """The worker's own configure step failed."""
    exit_code = ExitCode.CONFIGURE
