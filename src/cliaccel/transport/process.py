"""Provider CLI subprocess transport.

Runs one CLI process per request::

    aws <service> <operation> --cli-input-json '<parameters>' --output json [extra args]

and decodes the JSON printed on stdout. A non-zero exit status becomes a
:class:`~cliaccel.exceptions.RemoteError` carrying the provider error code
parsed from stderr (``An error occurred (Code) when calling the Op
operation: message``). Throttling codes are retried with backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Optional, Sequence

from cliaccel.exceptions import RemoteError, Timeout
from cliaccel.models import Request, TransportConfig
from cliaccel.transport.base import Transport

logger = logging.getLogger(__name__)

_CLI_ERROR_RE = re.compile(
    r"An error occurred \((?P<code>[^)]+)\)"
    r"(?: when calling the (?P<operation>\w+) operation)?"
    r"(?: \(reached max retries: \d+\))?"
    r": (?P<message>.*)",
    re.DOTALL,
)


def parse_cli_error(stderr: str, returncode: int, request: Optional[Request] = None) -> RemoteError:
    """Build a :class:`RemoteError` from a failed CLI invocation."""
    text = stderr.strip()
    match = _CLI_ERROR_RE.search(text)
    if match:
        return RemoteError(
            match.group("message").strip(),
            code=match.group("code"),
            request=request,
            status=returncode,
        )
    message = text.splitlines()[-1] if text else f"exited with status {returncode}"
    return RemoteError(message, request=request, status=returncode)


def parse_cli_output(stdout: str) -> Any:
    """Decode CLI stdout: JSON when possible, ``{}`` when empty, raw text otherwise."""
    text = stdout.strip()
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class SubprocessTransport(Transport):
    """Invoke a provider CLI as an asyncio subprocess.

    Args:
        executable: CLI program, e.g. ``"aws"``.
        extra_args: Appended to every command (``["--region", "eu-west-1"]``).
        timeout: Seconds before the process is killed and :class:`Timeout` raised.
        max_retries: Retries for throttling errors.
        retry_base_delay: Initial backoff delay in seconds.
        env: Environment for the child process; inherits ours when ``None``.
    """

    def __init__(
        self,
        executable: str = "aws",
        extra_args: Sequence[str] = (),
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        env: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(max_retries=max_retries, retry_base_delay=retry_base_delay)
        self.executable = executable
        self.extra_args = list(extra_args)
        self.timeout = timeout
        self._env = env

    @classmethod
    def from_config(cls, config: TransportConfig) -> SubprocessTransport:
        return cls(
            executable=config.executable,
            extra_args=config.extra_args,
            timeout=config.timeout,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
        )

    def build_command(self, request: Request) -> list[str]:
        """Return the argv used to execute *request*."""
        command = [self.executable, request.target.service, request.target.operation]
        if request.parameters:
            command += ["--cli-input-json", json.dumps(request.parameters, default=str)]
        command += ["--output", "json", *self.extra_args]
        return command

    async def _call_once(self, request: Request) -> Any:
        command = self.build_command(request)
        logger.debug("Running %s %s", command[0], " ".join(command[1:3]))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
        except OSError as exc:
            raise RemoteError(
                f"Cannot run {self.executable}: {exc}", code="TransportUnavailable", request=request
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise Timeout(
                f"{request.target} did not finish within {self.timeout}s", request=request
            ) from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            raise parse_cli_error(stderr.decode("utf-8", "replace"), process.returncode, request)
        return parse_cli_output(stdout.decode("utf-8", "replace"))

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
