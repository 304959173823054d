"""Host process capabilities used by the supervisor and orchestrator.

Termination fallback order: process group, then the single pid, then whatever
is listening on the service port. Every kill is best-effort: a process that is
already gone counts as stopped.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Dict, List, Protocol, Sequence, Set


logger = logging.getLogger(__name__)


class ProcessControl(Protocol):
    def is_alive(self, pid: int) -> bool: ...

    def kill_group(self, pid: int, sig: int = signal.SIGTERM) -> bool: ...

    def kill_single(self, pid: int, sig: int = signal.SIGTERM) -> bool: ...

    def kill_children(self, pid: int) -> None: ...

    def pids_on_port(self, port: int) -> List[int]: ...

    def kill_by_port(self, port: int) -> int: ...

    def spawn_detached(self, command: Sequence[str], *, cwd: Path, env: Dict[str, str], log_path: Path) -> int: ...


def terminate(control: ProcessControl, pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal a process group, falling back to the single process."""
    if control.kill_group(pid, sig):
        return True
    return control.kill_single(pid, sig)


def _pids_from_proc_net(port: int) -> List[int]:
    # Linux fallback when lsof is unavailable: map listening socket inodes to pids.
    hex_port = f"{int(port):04X}"
    inodes: Set[str] = set()
    for tcp_file in ("/proc/net/tcp", "/proc/net/tcp6"):
        try:
            with open(tcp_file, "r", encoding="utf-8") as f:
                lines = f.readlines()[1:]
        except OSError:
            continue
        for line in lines:
            fields = line.split()
            if len(fields) < 10:
                continue
            local = fields[1]
            if local.rsplit(":", 1)[-1].upper() == hex_port:
                inodes.add(fields[9])
    inodes.discard("0")
    if not inodes:
        return []

    out: List[int] = []
    proc = Path("/proc")
    for entry in proc.iterdir() if proc.is_dir() else []:
        if not entry.name.isdigit():
            continue
        try:
            fds = list((entry / "fd").iterdir())
        except OSError:
            continue
        for fd in fds:
            try:
                target = os.readlink(fd)
            except OSError:
                continue
            if target.startswith("socket:[") and target[8:-1] in inodes:
                out.append(int(entry.name))
                break
    return out


class PosixProcessControl:
    """ProcessControl for POSIX hosts with process groups."""

    def __init__(self, *, lsof_bin: str = "lsof", pkill_bin: str = "pkill") -> None:
        self._lsof_bin = lsof_bin
        self._pkill_bin = pkill_bin
        self._children: Dict[int, subprocess.Popen[bytes]] = {}

    def is_alive(self, pid: int) -> bool:
        if not isinstance(pid, int) or pid <= 0:
            return False
        child = self._children.get(pid)
        if child is not None:
            # kill(pid, 0) succeeds on an unreaped zombie; poll() reaps.
            return child.poll() is None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user.
            return True
        except OSError:
            return False
        return True

    def kill_group(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        if not isinstance(pid, int) or pid <= 0:
            return False
        try:
            os.killpg(pid, sig)
            return True
        except OSError:
            return False

    def kill_single(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        if not isinstance(pid, int) or pid <= 0:
            return False
        try:
            os.kill(pid, sig)
            return True
        except OSError:
            return False

    def kill_children(self, pid: int) -> None:
        if not isinstance(pid, int) or pid <= 0:
            return
        try:
            subprocess.run(
                [self._pkill_bin, "-P", str(pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5.0,
                check=False,
            )
        except (OSError, subprocess.SubprocessError):
            pass

    def pids_on_port(self, port: int) -> List[int]:
        try:
            proc = subprocess.run(
                [self._lsof_bin, "-ti", f":{int(port)}"],
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                timeout=5.0,
                check=False,
            )
        except FileNotFoundError:
            return _pids_from_proc_net(port)
        except (OSError, subprocess.SubprocessError):
            return []
        out: List[int] = []
        for line in str(proc.stdout or "").splitlines():
            s = line.strip()
            if s.isdigit() and int(s) not in out:
                out.append(int(s))
        return out

    def kill_by_port(self, port: int) -> int:
        killed = 0
        own_pid = os.getpid()
        for pid in self.pids_on_port(port):
            if pid == own_pid:
                continue
            if self.kill_single(pid, signal.SIGKILL):
                logger.debug("killed pid %s listening on port %s", pid, port)
                killed += 1
        return killed

    def spawn_detached(self, command: Sequence[str], *, cwd: Path, env: Dict[str, str], log_path: Path) -> int:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        f = open(log_path, "ab", buffering=0)
        try:
            # New session: own process group, no controlling terminal, survives our exit.
            proc = subprocess.Popen(
                list(command),
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=f,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        finally:
            # The child keeps its own fd.
            f.close()
        self._children[int(proc.pid)] = proc
        return int(proc.pid)
