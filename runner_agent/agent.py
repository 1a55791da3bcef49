"""
Runner Agent: Main Entry Point
===============================

The container entrypoint.

Startup sequence:
  1. Parse config (flags, falling back to environment variables)
  2. As root: map the docker socket group, resolve the runtime identity
  3. Resolve GITHUB_TOKEN (secret file first, then environment)
  4. Make sure the latest runner release is unpacked (cached by release hash)
  5. Check docker socket access for the runtime user (advisory)
  6. Request a registration token, evict stale runners with our name, configure
  7. Run the runner and supervise it

Safe shutdown:
  SIGTERM / SIGINT → stop runner → deregister (once) → exit 0
  runner exits     → deregister (once) → exit with the runner's code
"""

from __future__ import annotations
import logging
import sys
import time
from typing import Callable, Mapping, Optional

import requests

from .api_client import ApiClient
from .assets import AssetCache
from .config import RunnerConfig
from .controller import RunnerController
from .credentials import CredentialResolver
from .errors import AgentError, TokenError
from .privilege import reconcile
from .socket_check import check_docker_socket
from .supervisor import ProcessSupervisor

# ─── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(
    level  = logging.INFO,
    format = "[%(asctime)s] %(levelname)s %(name)s — %(message)s",
    datefmt= "%Y-%m-%dT%H:%M:%S",
)
log = logging.getLogger("runner_agent.entrypoint")

# ─── Runner Agent ─────────────────────────────────────────────────────────────

class RunnerAgent:
    def __init__(
        self,
        config:  RunnerConfig,
        env:     Optional[Mapping[str, str]] = None,
        session: Optional[requests.Session] = None,
        sleep:   Callable[[float], None] = time.sleep,
    ):
        self.config  = config
        self.env     = env
        self.session = session
        self.sleep   = sleep

        self.controller: Optional[RunnerController] = None

    def run(self) -> int:
        cfg = self.config
        log.info(f"Runner agent starting — {cfg.runner_name} → {cfg.repo_url}")

        identity = reconcile(cfg.run_as, cfg.docker_socket)

        credential = CredentialResolver(cfg.secrets_file, env=self.env).resolve()
        client = ApiClient(
            credential    = credential,
            retries       = cfg.api_retries,
            initial_delay = cfg.api_delay,
            backoff       = cfg.api_backoff,
            session       = self.session,
            sleep         = self.sleep,
        )

        AssetCache(client, cfg.runner_dir, cfg.releases_url, identity).ensure_asset(credential)

        if cfg.socket_check:
            check_docker_socket(cfg.docker_socket, identity)

        self.controller = RunnerController(cfg, client, identity, sleep=self.sleep)
        with ProcessSupervisor(self.controller, stop_timeout=cfg.stop_timeout) as supervisor:
            self.controller.register()
            return supervisor.run()


# ─── Entry Point ──────────────────────────────────────────────────────────────

def main(argv=None):
    try:
        config = RunnerConfig.from_args(argv)
    except AgentError as e:
        log.error(f"ERROR: {e}")
        sys.exit(int(e.exit_code))

    logging.getLogger().setLevel(config.log_level.upper())

    try:
        rc = RunnerAgent(config).run()
    except TokenError as e:
        log.error(f"ERROR: {e}")
        log.error(e.response_text or "<empty>")
        sys.exit(int(e.exit_code))
    except AgentError as e:
        log.error(f"ERROR: {e}")
        sys.exit(int(e.exit_code))

    sys.exit(rc)


if __name__ == "__main__":
    main()
