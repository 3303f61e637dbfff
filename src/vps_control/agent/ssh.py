from __future__ import annotations

import io
import logging
import os
import posixpath
import re
import shlex
from dataclasses import dataclass

import paramiko

from vps_control.core.config import SshConfig

_BLOCKED_COMMAND = re.compile(r"rm\s+-rf\s+/\s*(;|$)")
_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class SshResult:
    ok: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""


def render_env_file(env: dict[str, str]) -> bytes:
    """Render ``KEY=value`` lines separated by a real LF byte."""
    lines: list[str] = []
    for key in sorted(env):
        value = str(env[key])
        if not _ENV_KEY.match(key):
            raise ValueError(f"invalid env key: {key!r}")
        if "\n" in value or "\r" in value:
            raise ValueError(f"env value for {key} contains a line break")
        lines.append(f"{key}={value}")
    return ("\n".join(lines) + "\n").encode("utf-8")


class SshTransport:
    """Short-lived paramiko sessions against a bot host (one connection per call)."""

    def __init__(self, cfg: SshConfig) -> None:
        self.cfg = cfg
        self._log = logging.getLogger("vps_control.ssh")

    def _connect(self, ip: str, key_path: str | None) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        key = key_path or self.cfg.key_path
        client.connect(
            ip,
            username=self.cfg.username,
            key_filename=os.path.expanduser(key) if key else None,
            timeout=self.cfg.connect_timeout,
            banner_timeout=self.cfg.connect_timeout,
            auth_timeout=self.cfg.connect_timeout,
            look_for_keys=key is None,
            allow_agent=key is None,
        )
        return client

    def run(self, ip: str, command: str, *, key_path: str | None = None,
            timeout: float | None = None) -> SshResult:
        if _BLOCKED_COMMAND.search(command):
            raise ValueError("Command blocked: destructive rm operation")
        try:
            client = self._connect(ip, key_path)
        except (paramiko.SSHException, OSError) as exc:
            self._log.warning("ssh connect failed", extra={"ip": ip, "error": str(exc)})
            return SshResult(ok=False, exit_code=-1, stderr=str(exc))
        try:
            _stdin, stdout, stderr = client.exec_command(
                command, timeout=timeout or self.cfg.command_timeout
            )
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            self._log.warning("ssh command failed", extra={"ip": ip, "error": str(exc)})
            return SshResult(ok=False, exit_code=-1, stderr=str(exc))
        finally:
            client.close()
        self._log.info("ssh command", extra={"ip": ip, "exit_code": rc, "command": command[:80]})
        return SshResult(ok=rc == 0, exit_code=rc, stdout=out, stderr=err)

    def write_file(self, ip: str, path: str, content: bytes, *, key_path: str | None = None) -> SshResult:
        try:
            client = self._connect(ip, key_path)
        except (paramiko.SSHException, OSError) as exc:
            self._log.warning("ssh connect failed", extra={"ip": ip, "error": str(exc)})
            return SshResult(ok=False, exit_code=-1, stderr=str(exc))
        try:
            client.exec_command(f"mkdir -p {shlex.quote(posixpath.dirname(path))}")[1].channel.recv_exit_status()
            sftp = client.open_sftp()
            try:
                sftp.putfo(io.BytesIO(content), path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            self._log.warning("ssh write failed", extra={"ip": ip, "path": path, "error": str(exc)})
            return SshResult(ok=False, exit_code=-1, stderr=str(exc))
        finally:
            client.close()
        return SshResult(ok=True, exit_code=0)

    def remove_file(self, ip: str, path: str, *, key_path: str | None = None) -> SshResult:
        return self.run(ip, f"rm -f {shlex.quote(path)}", key_path=key_path)
