"""Advisory check that the runtime user can reach the host docker daemon."""

from __future__ import annotations
import logging
import os
import shutil
import stat
import subprocess
from enum import IntEnum
from pathlib import Path
from typing import Optional

from .credentials import TOKEN_KEY
from .privilege import RuntimeIdentity

log = logging.getLogger(__name__)


class SocketStatus(IntEnum):
    OK                 = 0
    SOCKET_MISSING     = 2
    DAEMON_UNREACHABLE = 3
    CLI_MISSING        = 4


FIXES = """Common fixes:
  - Ensure the container user is a member of the socket's group (the agent maps the socket gid at startup).
  - Start the container with the socket mounted: -v /var/run/docker.sock:/var/run/docker.sock
  - Optionally use Docker Compose `group_add` with the host docker gid, or run with --privileged as a last resort.
  - Check host permissions: run 'ls -l /var/run/docker.sock' on the host to inspect uid:gid."""


def _owner_info(socket_path: Path) -> str:
    try:
        st = os.stat(socket_path)
    except OSError:
        return "unknown"
    return f"{st.st_uid}:{st.st_gid}"


def check_docker_socket(
    socket_path: Path,
    identity:    Optional[RuntimeIdentity] = None,
    timeout:     float = 5,
) -> SocketStatus:
    try:
        is_socket = stat.S_ISSOCK(os.stat(socket_path).st_mode)
    except OSError:
        is_socket = False
    if not is_socket:
        log.info(
            f"[docker-check] No docker socket at {socket_path}. To enable docker in workflows "
            f"mount the host socket: -v /var/run/docker.sock:/var/run/docker.sock"
        )
        return SocketStatus.SOCKET_MISSING

    docker = shutil.which("docker")
    if docker is None:
        log.info("[docker-check] docker CLI not found in container; cannot verify daemon connectivity")
        return SocketStatus.CLI_MISSING

    kwargs = identity.popen_kwargs() if identity else {}
    env = {k: v for k, v in os.environ.items() if k != TOKEN_KEY}
    env["DOCKER_HOST"] = f"unix://{socket_path}"
    try:
        result = subprocess.run(
            [docker, "version"],
            capture_output=True, timeout=timeout,
            env=env,
            **kwargs,
        )
        reachable = result.returncode == 0
    except subprocess.TimeoutExpired:
        reachable = False

    if reachable:
        log.info("[docker-check] Docker CLI can reach daemon (socket accessible)")
        return SocketStatus.OK

    who = identity.user if identity else f"uid {os.geteuid()}"
    log.warning(
        f"[docker-check] Docker CLI cannot reach daemon while running as {who}. "
        f"Socket owner uid:gid {_owner_info(socket_path)}\n{FIXES}"
    )
    return SocketStatus.DAEMON_UNREACHABLE
