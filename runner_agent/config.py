"""
Configuration
=============

All settings come from the command line, falling back to environment
variables so the agent can be driven entirely by `docker run -e ...`.

Required:
  REPO_URL      https://github.com/<owner>/<repo>  or  https://github.com/<org>
                (https://github.com/orgs/<org> is accepted too)
  RUNNER_NAME   unique runner name, no default

Everything else has a default, see build_parser().
"""

from __future__ import annotations
import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from .errors import ConfigurationError

DEFAULT_API_URL      = "https://api.github.com"
DEFAULT_RELEASES_URL = "https://api.github.com/repos/actions/runner/releases/latest"
DEFAULT_SECRETS_FILE = "/run/secrets/credentials"
DEFAULT_DOCKER_SOCK  = "/var/run/docker.sock"

MANDATORY_LABELS = ("self-hosted", "linux", "x64")


# ─── Target Reference ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TargetReference:
    """
    The control-plane scope a runner registers under: either a repository
    (owner + repo) or an organization (org). Exactly one form is set.
    """
    url:   str
    owner: Optional[str] = None
    repo:  Optional[str] = None
    org:   Optional[str] = None

    @classmethod
    def parse(cls, url: str) -> "TargetReference":
        parsed = urlparse((url or "").strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                f"REPO_URL must look like https://github.com/owner/repo or "
                f"https://github.com/orgs/org — got '{url}'"
            )

        parts = parsed.path.strip("/").split("/") if parsed.path.strip("/") else []
        if any(not p for p in parts):
            raise ConfigurationError(f"REPO_URL has an empty path segment: '{url}'")

        if len(parts) == 2 and parts[0] == "orgs":
            return cls(url=url, org=parts[1])
        if len(parts) == 2:
            return cls(url=url, owner=parts[0], repo=parts[1])
        if len(parts) == 1 and parts[0] != "orgs":
            return cls(url=url, org=parts[0])

        raise ConfigurationError(
            f"REPO_URL must name exactly one repository (owner/repo) or organization — got '{url}'"
        )

    @property
    def is_repository(self) -> bool:
        return self.repo is not None

    @property
    def scope_path(self) -> str:
        if self.is_repository:
            return f"repos/{self.owner}/{self.repo}"
        return f"orgs/{self.org}"

    def runners_url(self, api_url: str) -> str:
        return f"{api_url.rstrip('/')}/{self.scope_path}/actions/runners"

    def registration_token_url(self, api_url: str) -> str:
        return f"{self.runners_url(api_url)}/registration-token"

    def runner_url(self, api_url: str, runner_id) -> str:
        return f"{self.runners_url(api_url)}/{runner_id}"


# ─── Labels ───────────────────────────────────────────────────────────────────

def compose_labels(extra: Optional[str]) -> str:
    """Mandatory labels first, then user labels in the order given."""
    labels = list(MANDATORY_LABELS)
    for label in (extra or "").split(","):
        label = label.strip()
        if label and label not in labels:
            labels.append(label)
    return ",".join(labels)


# ─── Runner Config ────────────────────────────────────────────────────────────

@dataclass
class RunnerConfig:
    repo_url:        str
    runner_name:     str
    runner_labels:   str           = ""
    runner_dir:      Path          = Path("/actions-runner")
    work_dir:        str           = "_work"
    api_url:         str           = DEFAULT_API_URL
    releases_url:    str           = DEFAULT_RELEASES_URL
    secrets_file:    Path          = Path(DEFAULT_SECRETS_FILE)
    docker_socket:   Path          = Path(DEFAULT_DOCKER_SOCK)
    run_as:          str           = "runner"
    api_retries:     int           = 6
    api_delay:       float         = 1.0
    api_backoff:     float         = 2.0
    stop_timeout:    float         = 30.0
    socket_check:    bool          = True
    log_level:       str           = "INFO"

    target: TargetReference = field(init=False, repr=False)

    def __post_init__(self):
        self.runner_dir   = Path(self.runner_dir)
        self.secrets_file = Path(self.secrets_file)
        self.docker_socket = Path(self.docker_socket)
        self.validate()

    def validate(self):
        if not self.repo_url:
            raise ConfigurationError(
                "REPO_URL must be set (example: https://github.com/owner/repo or https://github.com/orgs/org)"
            )
        if not (self.runner_name or "").strip():
            raise ConfigurationError("RUNNER_NAME must be set and unique (no default)")
        if self.api_retries < 1:
            raise ConfigurationError(f"GH_API_RETRIES must be at least 1 — got {self.api_retries}")
        if self.api_delay < 0 or self.api_backoff < 1:
            raise ConfigurationError("GH_API_INITIAL_DELAY must be >= 0 and GH_API_BACKOFF_MULT >= 1")
        self.runner_name = self.runner_name.strip()
        self.target = TargetReference.parse(self.repo_url)

    @property
    def labels(self) -> str:
        return compose_labels(self.runner_labels)

    @classmethod
    def from_args(cls, argv=None) -> "RunnerConfig":
        args = build_parser().parse_args(argv)
        return cls(
            repo_url      = args.repo_url,
            runner_name   = args.name,
            runner_labels = args.labels,
            runner_dir    = args.runner_dir,
            work_dir      = args.work,
            api_url       = args.api_url,
            releases_url  = args.releases_url,
            secrets_file  = args.secrets_file,
            docker_socket = args.docker_socket,
            run_as        = args.run_as,
            api_retries   = args.retries,
            api_delay     = args.initial_delay,
            api_backoff   = args.backoff,
            stop_timeout  = args.stop_timeout,
            socket_check  = not args.skip_socket_check,
            log_level     = args.log_level,
        )


def _env_number(name: str, default, kind):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number — got '{raw}'")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ephemeral self-hosted runner agent")
    parser.add_argument("--repo-url",      default=os.getenv("REPO_URL"),
                        help="Repository or organization URL the runner registers under")
    parser.add_argument("--name",          default=os.getenv("RUNNER_NAME"),
                        help="Unique runner name (required, no default)")
    parser.add_argument("--labels",        default=os.getenv("RUNNER_LABELS", ""),
                        help="Extra comma-separated labels, appended to self-hosted,linux,x64")
    parser.add_argument("--runner-dir",    default=os.getenv("RUNNER_DIR", "/actions-runner"),
                        help="Directory holding the unpacked runner")
    parser.add_argument("--work",          default=os.getenv("RUNNER_WORKDIR") or "_work",
                        help="Runner work directory (default: _work)")
    parser.add_argument("--api-url",       default=os.getenv("GH_API_URL", DEFAULT_API_URL),
                        help="Control-plane API base URL")
    parser.add_argument("--releases-url",  default=os.getenv("GH_RELEASES_URL", DEFAULT_RELEASES_URL),
                        help="Latest-release listing endpoint for the runner bundle")
    parser.add_argument("--secrets-file",  default=os.getenv("RUNNER_SECRETS_FILE", DEFAULT_SECRETS_FILE),
                        help="Secret file searched for GITHUB_TOKEN")
    parser.add_argument("--docker-socket", default=os.getenv("DOCKER_SOCKET", DEFAULT_DOCKER_SOCK),
                        help="Host docker socket mapped into the runner's groups")
    parser.add_argument("--run-as",        default=os.getenv("RUNNER_USER", "runner"),
                        help="Unprivileged user the runner executes as when started as root")
    parser.add_argument("--retries",       type=int,
                        default=_env_number("GH_API_RETRIES", 6, int),
                        help="API attempts per call (default: 6)")
    parser.add_argument("--initial-delay", type=float,
                        default=_env_number("GH_API_INITIAL_DELAY", 1.0, float),
                        help="Seconds before the first API retry (default: 1)")
    parser.add_argument("--backoff",       type=float,
                        default=_env_number("GH_API_BACKOFF_MULT", 2.0, float),
                        help="Backoff multiplier between API retries (default: 2)")
    parser.add_argument("--stop-timeout",  type=float,
                        default=_env_number("RUNNER_STOP_TIMEOUT", 30.0, float),
                        help="Seconds to wait for the runner after SIGTERM before killing it")
    parser.add_argument("--skip-socket-check", action="store_true",
                        default=_env_flag("SKIP_SOCKET_CHECK"),
                        help="Do not run the docker socket health check")
    parser.add_argument("--log-level",     default=os.getenv("LOG_LEVEL", "INFO"))
    return parser
