"""
Command Bridge - one JSON request/response per runtime process

Protocol:
- The runtime is started as `<executable> --json-rpc`
- Request on stdin: {"action": <string>, "arguments": <object>}, then stdin is closed
- Response on stdout: {"ok": true, "payload": <object>} or {"ok": false, "error": <string>}
- stderr carries diagnostics only and is never parsed as the response
- Exit code is checked first: non-zero fails the call whatever stdout holds
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from runtimehub.core.runtimes.exceptions import (
    CommandTimeout,
    ExecutableMissing,
    IPCHelperError,
    IPCInvalidResponse,
    ProcessFailed,
)
from runtimehub.core.runtimes.models import IPCRequest

logger = logging.getLogger(__name__)

DEFAULT_RPC_ARGUMENT = "--json-rpc"
DEFAULT_MAX_OUTPUT_BYTES = 2 * 1024 * 1024  # 2MB
READ_CHUNK_SIZE = 64 * 1024
PREVIEW_LENGTH = 240


class OutputBuffer:
    """Accumulates stream fragments, keeping only the most recent `limit` bytes"""

    def __init__(self, limit: int = DEFAULT_MAX_OUTPUT_BYTES):
        self.limit = limit
        self._data = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._data.extend(chunk)
        overflow = len(self._data) - self.limit
        if overflow > 0:
            del self._data[:overflow]
            self.truncated = True

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


async def _drain(stream: Optional[asyncio.StreamReader], buffer: OutputBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        buffer.append(chunk)


def _preview(*texts: str) -> str:
    parts = [text[:PREVIEW_LENGTH].strip() for text in texts]
    return " | ".join(part for part in parts if part)


def classify_response(action: str, exit_code: int, stdout: bytes, stderr: bytes) -> Dict[str, Any]:
    """
    Turn a finished process into a payload or a typed error

    Checked in order: exit code, JSON object, ok flag.

    Raises:
        ProcessFailed: Non-zero exit code
        IPCInvalidResponse: stdout is not a JSON object
        IPCHelperError: Response has ok == false
    """
    out_text = stdout.decode("utf-8", errors="replace")
    err_text = stderr.decode("utf-8", errors="replace").strip()

    if exit_code != 0:
        message = err_text or _preview(out_text) or (
            f"Runtime command '{action}' failed with exit {exit_code}."
        )
        raise ProcessFailed(message, exit_code=exit_code, stderr=err_text)

    try:
        response = json.loads(out_text)
    except json.JSONDecodeError:
        response = None

    if not isinstance(response, dict):
        preview = _preview(out_text, err_text)
        reason = (
            f"Runtime returned an invalid response: {preview}" if preview
            else "Runtime returned an invalid response."
        )
        raise IPCInvalidResponse(reason)

    if response.get("ok") is False:
        error = response.get("error")
        message = error.strip() if isinstance(error, str) else ""
        raise IPCHelperError(message or "Runtime command failed.")

    payload = response.get("payload")
    if isinstance(payload, dict):
        return payload
    return response


class CommandBridge:
    """
    Call-per-process bridge into an installed runtime

    Example:
        bridge = CommandBridge(Path(".../runtime/1.2.0/droppy-voice-runtime"))
        payload = await bridge.call("transcribe", {"audioPath": "/tmp/a.wav"}, timeout=120)
    """

    def __init__(
        self,
        executable: Path,
        rpc_argument: str = DEFAULT_RPC_ARGUMENT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        kill_on_timeout: bool = False
    ):
        """
        Initialize bridge

        Args:
            executable: Runtime executable path
            rpc_argument: Argument selecting single-request RPC mode
            max_output_bytes: Per-stream buffer limit
            kill_on_timeout: Kill the process on timeout instead of leaving it running
        """
        self.executable = Path(executable)
        self.rpc_argument = rpc_argument
        self.max_output_bytes = max_output_bytes
        self.kill_on_timeout = kill_on_timeout

    async def call(
        self,
        action: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Run one command in a fresh runtime process

        Args:
            action: Runtime action name
            arguments: JSON-serializable arguments
            timeout: Seconds to wait before giving up (None waits forever)

        Returns:
            The response payload

        Raises:
            ExecutableMissing, ProcessFailed, IPCInvalidResponse, IPCHelperError, CommandTimeout
        """
        request = IPCRequest(action=action, arguments=arguments or {})
        request_data = json.dumps(request.model_dump()).encode("utf-8")

        logger.debug(f"Runtime command: {action} ({self.executable.name})")

        try:
            process = await asyncio.create_subprocess_exec(
                str(self.executable), self.rpc_argument,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise ExecutableMissing(self.executable.name) from e
        except OSError as e:
            raise ProcessFailed(f"Failed to start runtime: {e}") from e

        stdout = OutputBuffer(self.max_output_bytes)
        stderr = OutputBuffer(self.max_output_bytes)

        try:
            exit_code = await asyncio.wait_for(
                self._exchange(process, request_data, stdout, stderr),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            if self.kill_on_timeout and process.returncode is None:
                logger.warning(f"Runtime command '{action}' timed out, killing pid {process.pid}")
                process.kill()
            else:
                logger.warning(
                    f"Runtime command '{action}' timed out after {timeout}s; "
                    f"leaving pid {process.pid} running"
                )
            raise CommandTimeout(action, timeout)

        if stdout.truncated or stderr.truncated:
            logger.warning(f"Runtime output for '{action}' exceeded {self.max_output_bytes} bytes and was truncated")

        err_text = stderr.text().strip()
        if err_text:
            logger.debug(f"Runtime stderr ({action}): {err_text[:2000]}")

        result = classify_response(action, exit_code, stdout.getvalue(), stderr.getvalue())
        logger.debug(f"Runtime command completed: {action}")
        return result

    async def _exchange(
        self,
        process: asyncio.subprocess.Process,
        request_data: bytes,
        stdout: OutputBuffer,
        stderr: OutputBuffer
    ) -> int:
        readers = [
            asyncio.create_task(_drain(process.stdout, stdout)),
            asyncio.create_task(_drain(process.stderr, stderr)),
        ]

        try:
            try:
                process.stdin.write(request_data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                # Runtime exited without reading its request; the exit code decides
                logger.debug(f"Runtime closed stdin early: {e}")
            finally:
                process.stdin.close()

            await asyncio.gather(*readers)
            return await process.wait()
        finally:
            # Timeout or failure: no reader outlives the call
            pending = [task for task in readers if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
