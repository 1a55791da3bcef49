"""Shared fakes: a scripted HTTP session and a fake runner bundle."""

import io
import json
import sys
import tarfile
from pathlib import Path

import pytest
import requests

from runner_agent.config import RunnerConfig

API = "https://api.example"
RELEASES = f"{API}/repos/actions/runner/releases/latest"
TARBALL_URL = "https://downloads.example/actions-runner-linux-x64-2.320.0.tar.gz"


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None, content=b""):
        self.status_code = status_code
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text
        self.content = content

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """
    Routes (METHOD, url) to a list of responses, consumed in order; the last
    entry is repeated. Entries may be FakeResponse, an exception instance,
    or a callable returning either.
    """

    def __init__(self, routes=None):
        self.routes = {k: list(v) if isinstance(v, list) else [v] for k, v in (routes or {}).items()}
        self.calls = []

    def add(self, method, url, *responses):
        self.routes[(method, url)] = list(responses)

    def count(self, method, url=None):
        return sum(1 for m, u, _ in self.calls if m == method and (url is None or u == url))

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append((method, url, dict(headers or {})))
        queue = self.routes.get((method, url))
        if not queue:
            raise requests.ConnectionError(f"no route for {method} {url}")
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(entry):
            entry = entry()
        if isinstance(entry, Exception):
            raise entry
        return entry

    def get(self, url, headers=None, timeout=None, **kwargs):
        return self.request("GET", url, headers=headers, timeout=timeout)


WORKER_PY = """\
import os, signal, sys, time
from pathlib import Path

here = Path(__file__).parent
mode = (here / "mode").read_text().strip() if (here / "mode").exists() else "wait"
if mode.startswith("exit:"):
    sys.exit(int(mode[5:]))
if mode.startswith("kill:"):
    os.kill(os.getpid(), int(mode[5:]))
if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
else:
    signal.signal(signal.SIGTERM, lambda s, f: sys.exit(0))
(here / "ready").write_text("1")
while True:
    time.sleep(0.05)
"""

CONFIG_SH = """\
#!/bin/sh
echo "$@" >> "$(dirname "$0")/config.log"
env > "$(dirname "$0")/config.env"
if [ "$1" != "remove" ]; then touch "$(dirname "$0")/.runner"; fi
exit "$(cat "$(dirname "$0")/config.rc" 2>/dev/null || echo 0)"
"""


def bundle_files() -> dict:
    return {
        "config.sh": CONFIG_SH,
        "run.sh": f'#!/bin/sh\nexec "{sys.executable}" "$(dirname "$0")/worker.py"\n',
        "worker.py": WORKER_PY,
        "bin/Runner.Listener": "#!/bin/sh\n",
    }


def write_bundle(directory: Path):
    for name, text in bundle_files().items():
        path = directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        path.chmod(0o755)


def bundle_tarball() -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, text in bundle_files().items():
            data = text.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def release(tag="v2.320.0", url=TARBALL_URL):
    return {
        "tag_name": tag,
        "assets": [
            {"name": "actions-runner-osx-arm64-2.320.0.tar.gz",
             "browser_download_url": "https://downloads.example/osx.tar.gz"},
            {"name": url.rsplit("/", 1)[-1], "browser_download_url": url},
        ],
    }


def no_sleep(_seconds):
    return None


@pytest.fixture
def runner_dir(tmp_path):
    path = tmp_path / "actions-runner"
    path.mkdir()
    return path


@pytest.fixture
def make_config(tmp_path, runner_dir):
    def _make(**overrides):
        values = dict(
            repo_url      = "https://control.example/owner/repo",
            runner_name   = "runner-01",
            runner_dir    = runner_dir,
            api_url       = API,
            releases_url  = RELEASES,
            secrets_file  = tmp_path / "no-secrets",
            docker_socket = tmp_path / "no-docker.sock",
            stop_timeout  = 5,
            socket_check  = False,
        )
        values.update(overrides)
        return RunnerConfig(**values)
    return _make
