"""
Child-process supervision for the local backend.

Each workload gets a run directory holding its pid, its exit code and its
output. Everything needed to answer a status query is on disk, so a restart
of this process loses nothing.
"""
import logging
import os
import shutil
import signal
import subprocess
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..runner.logs import LogReader

logger = logging.getLogger(__name__)

PID_FILE = "pid"
EXIT_FILE = "exitcode"
STDOUT_FILE = "stdout.log"
STDERR_FILE = "stderr.log"

# Signals go to the whole process group; the wrapper survives them long
# enough to record the command's exit status.
_WRAPPER = """\
trap ':' TERM INT
"$@" &
child=$!
wait "$child"; code=$?
while kill -0 "$child" 2>/dev/null; do wait "$child"; code=$?; done
echo "$code" > "$BOTFLEET_EXIT_FILE.tmp"
mv "$BOTFLEET_EXIT_FILE.tmp" "$BOTFLEET_EXIT_FILE"
"""


def _mtime(path: Path) -> Optional[str]:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).isoformat()
    except FileNotFoundError:
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal_group(pgid: int, sig: int):
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        pass


class ProcessSupervisor:

    def __init__(self, poll_interval: float = 0.2):
        self.poll_interval = poll_interval
        # only used to reap children we started ourselves
        self._children: Dict[str, subprocess.Popen] = {}

    def _reap(self, run_dir: Path):
        proc = self._children.get(str(run_dir))
        if proc is not None and proc.poll() is not None:
            self._children.pop(str(run_dir), None)

    def read_pid(self, run_dir: Path) -> Optional[int]:
        try:
            return int((run_dir / PID_FILE).read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def is_running(self, run_dir: Path) -> bool:
        self._reap(run_dir)
        if (run_dir / EXIT_FILE).exists():
            return False
        pid = self.read_pid(run_dir)
        return pid is not None and _pid_alive(pid)

    def start(self, run_dir: Path, args: List[str], env: Optional[Mapping[str, str]] = None,
              cwd: Optional[str] = None) -> int:
        run_dir.mkdir(parents=True, exist_ok=True)
        if self.is_running(run_dir):
            raise RuntimeError(f"process in {run_dir} is already running")
        (run_dir / EXIT_FILE).unlink(missing_ok=True)

        full_env = {**os.environ, **(env or {}), "BOTFLEET_EXIT_FILE": str(run_dir / EXIT_FILE)}
        logger.info(f"Starting process: {' '.join(args)}")
        with open(run_dir / STDOUT_FILE, "ab") as stdout, open(run_dir / STDERR_FILE, "ab") as stderr:
            proc = subprocess.Popen(
                ["/bin/sh", "-c", _WRAPPER, "botfleet-wrapper", *args],
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                env=full_env,
                cwd=cwd,
                start_new_session=True,
            )
        (run_dir / PID_FILE).write_text(str(proc.pid))
        self._children[str(run_dir)] = proc
        return proc.pid

    def state(self, run_dir: Path) -> Optional[Dict[str, Any]]:
        """Process state shaped like a container engine's inspect State."""
        if not run_dir.is_dir():
            return None
        pid_file = run_dir / PID_FILE
        exit_file = run_dir / EXIT_FILE
        if not pid_file.exists():
            return {"Status": "created", "Running": False, "ExitCode": 0}

        self._reap(run_dir)
        state: Dict[str, Any] = {"StartedAt": _mtime(pid_file), "Pid": self.read_pid(run_dir)}
        if exit_file.exists():
            try:
                code = int(exit_file.read_text().strip() or -1)
            except ValueError:
                code = -1
            state.update(Status="exited", Running=False, ExitCode=code, FinishedAt=_mtime(exit_file))
        elif self.is_running(run_dir):
            state.update(Status="running", Running=True, ExitCode=0)
        else:
            state.update(Status="exited", Running=False, ExitCode=-1,
                         Error="process exited without recording an exit code")
        return state

    def stop(self, run_dir: Path, timeout: float = 30) -> None:
        pid = self.read_pid(run_dir)
        if pid is None or not self.is_running(run_dir):
            return

        _signal_group(pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.is_running(run_dir):
                # anything the wrapper left behind
                _signal_group(pid, signal.SIGKILL)
                return
            time.sleep(self.poll_interval)

        logger.warning(f"Process {pid} did not stop within {timeout}s, killing it")
        _signal_group(pid, signal.SIGKILL)
        if not (run_dir / EXIT_FILE).exists():
            (run_dir / EXIT_FILE).write_text(str(128 + signal.SIGKILL))

    def remove(self, run_dir: Path, timeout: float = 30) -> None:
        self.stop(run_dir, timeout)
        self._children.pop(str(run_dir), None)
        shutil.rmtree(run_dir, ignore_errors=True)

    def _read_tail(self, path: Path, tail: Optional[int]) -> Iterator[bytes]:
        if not path.exists():
            return
        with open(path, "rb") as f:
            lines = deque(f, maxlen=tail) if tail else f.readlines()
        yield from lines

    def _follow(self, path: Path, run_dir: Path, tail: Optional[int]) -> Iterator[bytes]:
        yield from self._read_tail(path, tail)
        position = path.stat().st_size if path.exists() else 0
        while True:
            running = self.is_running(run_dir)
            if path.exists():
                with open(path, "rb") as f:
                    f.seek(position)
                    chunk = f.read()
                    position = f.tell()
                if chunk:
                    yield chunk
            if not running:
                return
            time.sleep(self.poll_interval)

    def logs(self, run_dir: Path, stream: Optional[str] = None, tail: Optional[int] = None,
             follow: bool = False) -> LogReader:
        """stdout and/or stderr; with both, stdout comes first."""
        files = []
        if stream in (None, "stdout"):
            files.append(run_dir / STDOUT_FILE)
        if stream in (None, "stderr"):
            files.append(run_dir / STDERR_FILE)

        def chunks() -> Iterator[bytes]:
            for path in files:
                if follow and len(files) == 1:
                    yield from self._follow(path, run_dir, tail)
                else:
                    yield from self._read_tail(path, tail)

        return LogReader(chunks(), stream=stream)
