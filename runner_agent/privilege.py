"""
Privilege Reconciler
====================

Runs once at startup, and only when the agent starts as root.

  1. If the host docker socket is mounted, make sure a container group owns
     the socket's gid and put the runtime user into it, so jobs can talk to
     the host daemon without root.
  2. Resolve the runtime user into an immutable RuntimeIdentity.

Nothing is re-executed: the agent keeps root for itself (group tools,
chown of the runner bundle) and every runner process is started with the
identity's uid/gid/groups via subprocess.
"""

from __future__ import annotations
import grp
import logging
import os
import pwd
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError

log = logging.getLogger(__name__)

DOCKER_GROUP = "docker"


@dataclass(frozen=True)
class RuntimeIdentity:
    user:   str
    uid:    int
    gid:    int
    groups: tuple
    home:   str

    @classmethod
    def lookup(cls, user: str, extra_gids=()) -> "RuntimeIdentity":
        try:
            pw = pwd.getpwnam(user)
        except KeyError:
            raise ConfigurationError(f"Runtime user '{user}' does not exist in this container")
        gids = set(os.getgrouplist(user, pw.pw_gid)) | set(extra_gids)
        gids.discard(pw.pw_gid)
        return cls(
            user   = user,
            uid    = pw.pw_uid,
            gid    = pw.pw_gid,
            groups = tuple(sorted(gids)),
            home   = pw.pw_dir,
        )

    def popen_kwargs(self) -> dict:
        return {"user": self.uid, "group": self.gid, "extra_groups": list(self.groups)}

    def env(self, base: dict) -> dict:
        env = dict(base)
        env.update({"HOME": self.home, "USER": self.user, "LOGNAME": self.user})
        return env


def _run(cmd: list) -> bool:
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
    if result.returncode != 0:
        log.warning(f"{' '.join(cmd)} failed ({result.returncode}): {result.stderr.strip()[:200]}")
        return False
    return True


def socket_gid(socket_path: Path) -> Optional[int]:
    try:
        st = os.stat(socket_path)
    except OSError:
        return None
    if not stat.S_ISSOCK(st.st_mode):
        return None
    return st.st_gid


def map_socket_group(gid: int, group: str = DOCKER_GROUP) -> str:
    """Return the name of a group owning `gid`, creating or retargeting one if needed."""
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        pass

    try:
        old_gid = grp.getgrnam(group).gr_gid
    except KeyError:
        log.info(f"Creating group '{group}' with GID {gid}")
        _run(["groupadd", "-g", str(gid), group])
        return group

    if old_gid != gid:
        log.info(f"Updating group '{group}' GID from {old_gid} to {gid} to match docker socket")
        _run(["groupmod", "-g", str(gid), group])
    return group


def reconcile(user: str, socket_path: Path) -> Optional[RuntimeIdentity]:
    """
    Elevated startup phase. Returns the identity the runner should run as,
    or None when the agent is not root (the runner then runs as whoever we are).
    """
    if os.geteuid() != 0:
        log.info(f"Not running as root — runner processes will run as uid {os.geteuid()}")
        return None

    extra = ()
    gid = socket_gid(socket_path)
    if gid is None:
        log.info(f"No docker socket at {socket_path} visible in container")
    else:
        group = map_socket_group(gid)
        log.info(f"Adding user '{user}' to group '{group}' (gid: {gid})")
        _run(["usermod", "-aG", group, user])
        extra = (gid,)

    identity = RuntimeIdentity.lookup(user, extra_gids=extra)
    log.info(f"Runner processes will run as {identity.user} (uid={identity.uid}, gid={identity.gid}, groups={list(identity.groups)})")
    return identity
