"""
Runner Agent
============

The entrypoint that runs inside an ephemeral self-hosted runner container.

What it does:
  1. Map the host docker socket's group into the container (when root)
  2. Resolve the API token from a mounted secret file or the environment
  3. Download the latest runner release, only when it changed upstream
  4. Register the runner with the control plane under a unique name
  5. Run it as an unprivileged user and forward stop signals
  6. Deregister it exactly once, however the container stops

Requirements:
  pip install requests psutil

Usage:
  runner-agent --repo-url https://github.com/owner/repo --name runner-01
  python -m runner_agent.agent   (same, configured via REPO_URL / RUNNER_NAME / …)
"""

__version__ = "0.1.0"
