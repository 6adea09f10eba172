"""Local command execution session."""

from __future__ import annotations

import logging
import os
import selectors
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class LocalCommandResult:
    """Result of executing a local command."""
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class LocalSession:
    """
    Runs the external tools (terraform, aws, kubectl, helm, docker, trivy).

    Commands are argument vectors and never go through a shell, so values passed
    on the command line are not re-interpreted. Data that must not appear in
    process listings or logs (secrets, generated manifests) is sent on stdin.
    """

    def __init__(
        self,
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        default_timeout: int = 1800,
    ) -> None:
        """
        Initialize local session.

        Args:
            working_dir: Working directory for commands. Defaults to the current directory.
            env: Extra environment variables layered over ``os.environ``.
            default_timeout: Total timeout in seconds when ``run`` is given none.
        """
        self.working_dir = working_dir or os.getcwd()
        self.extra_env = dict(env or {})
        self.default_timeout = default_timeout

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[int] = None,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None,
        stream_output: bool = False,
    ) -> LocalCommandResult:
        """
        Execute a command locally.

        Args:
            args: Program and arguments
            timeout: Total timeout in seconds (default: ``default_timeout``)
            input_text: Text written to the command's stdin
            cwd: Working directory override for this command
            stream_output: Echo output in real time (long terraform/docker runs)

        Returns:
            LocalCommandResult with stdout, stderr, and exit status. A missing
            executable or a timeout is reported as a negative exit status rather
            than raised, so callers treat every failure the same way.
        """
        if timeout is None:
            timeout = self.default_timeout
        command = shlex.join(args)
        logger.debug("$ %s", command)

        if stream_output and input_text is None:
            return self._run_streaming(args, command, timeout, cwd)
        return self._run_blocking(args, command, timeout, input_text, cwd)

    def _run_blocking(
        self,
        args: Sequence[str],
        command: str,
        timeout: int,
        input_text: Optional[str],
        cwd: Optional[str],
    ) -> LocalCommandResult:
        """Run command and wait for completion."""
        try:
            result = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                input=input_text,
                timeout=timeout,
                cwd=cwd or self.working_dir,
                env=self._get_env(),
            )
        except subprocess.TimeoutExpired:
            return LocalCommandResult(
                command=command,
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_status=-1,
            )
        except OSError as exc:
            return LocalCommandResult(
                command=command,
                stdout="",
                stderr=str(exc),
                exit_status=-1,
            )

        return LocalCommandResult(
            command=command,
            stdout=result.stdout.strip(),
            stderr=result.stderr.strip(),
            exit_status=result.returncode,
        )

    def _run_streaming(
        self,
        args: Sequence[str],
        command: str,
        timeout: int,
        cwd: Optional[str],
    ) -> LocalCommandResult:
        """Run command echoing output as it arrives, with a total timeout."""
        try:
            process = subprocess.Popen(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd or self.working_dir,
                env=self._get_env(),
            )
        except OSError as exc:
            return LocalCommandResult(command=command, stdout="", stderr=str(exc), exit_status=-1)

        stdout_chunks = []
        stderr_chunks = []
        start_time = time.monotonic()

        sel = selectors.DefaultSelector()
        sel.register(process.stdout, selectors.EVENT_READ)
        sel.register(process.stderr, selectors.EVENT_READ)
        try:
            while process.poll() is None:
                for key, _ in sel.select(timeout=0.1):
                    line = key.fileobj.readline()
                    if not line:
                        continue
                    if key.fileobj is process.stdout:
                        stdout_chunks.append(line)
                        sys.stdout.write(line)
                        sys.stdout.flush()
                    else:
                        stderr_chunks.append(line)
                        sys.stderr.write(line)
                        sys.stderr.flush()

                if time.monotonic() - start_time > timeout:
                    process.kill()
                    process.wait()
                    return LocalCommandResult(
                        command=command,
                        stdout="".join(stdout_chunks).strip(),
                        stderr=f"Command exceeded {timeout} seconds total execution time",
                        exit_status=-2,
                    )

            # 读取剩余输出
            for line in process.stdout:
                stdout_chunks.append(line)
                sys.stdout.write(line)
            for line in process.stderr:
                stderr_chunks.append(line)
                sys.stderr.write(line)
            sys.stdout.flush()
            sys.stderr.flush()
        finally:
            sel.close()

        return LocalCommandResult(
            command=command,
            stdout="".join(stdout_chunks).strip(),
            stderr="".join(stderr_chunks).strip(),
            exit_status=process.returncode or 0,
        )

    def _get_env(self) -> dict:
        """Get environment variables for subprocess."""
        env = os.environ.copy()
        env.update(self.extra_env)
        # terraform 非交互
        env.setdefault("TF_IN_AUTOMATION", "1")
        return env
