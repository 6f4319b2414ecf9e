"""Code-signature verification of installed runtime executables"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

from runtimehub.core.runtimes.exceptions import SignatureInvalid

logger = logging.getLogger(__name__)

DEFAULT_CODESIGN_PATH = "/usr/bin/codesign"
TEAM_IDENTIFIER_PREFIX = "TeamIdentifier="
DEFAULT_TIMEOUT = 60.0


def parse_team_identifier(output: str) -> Optional[str]:
    """Extract the TeamIdentifier value from codesign's diagnostic output"""
    for line in output.splitlines():
        line = line.strip()
        if line.startswith(TEAM_IDENTIFIER_PREFIX):
            value = line[len(TEAM_IDENTIFIER_PREFIX):].strip()
            return value or None
    return None


class CodesignVerifier:
    """
    Checks that an executable was signed by the expected publisher team

    This is independent of the artifact checksum: the checksum proves the
    archive arrived intact, the signature proves the unpacked binary comes
    from the expected publisher even if manifest and archive were replaced
    together.
    """

    def __init__(self, tool_path: str = DEFAULT_CODESIGN_PATH, timeout: float = DEFAULT_TIMEOUT):
        self.tool_path = tool_path
        self.timeout = timeout

    async def _inspect(self, executable: Path) -> Tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.tool_path, "-dv", "--verbose=4", str(executable),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise SignatureInvalid(f"Code-signing tool could not be run ({self.tool_path}): {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise SignatureInvalid(f"Code-signing tool timed out after {self.timeout:g} seconds.") from e

        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def verify(self, executable: Path, expected_team_id: str) -> str:
        """
        Verify the publisher team of executable

        Returns:
            The team identifier that was found

        Raises:
            SignatureInvalid: If the tool fails or the team does not match
        """
        logger.info(f"Verifying code signature: {executable}")
        return_code, stdout, stderr = await self._inspect(executable)

        if return_code != 0:
            details = (stderr or stdout).strip() or f"exit status {return_code}"
            raise SignatureInvalid(details)

        # codesign writes its -d report to stderr
        team_id = parse_team_identifier(stderr) or parse_team_identifier(stdout)
        if team_id is None:
            raise SignatureInvalid("No TeamIdentifier found.")

        if team_id != expected_team_id:
            raise SignatureInvalid(f"Unexpected TeamIdentifier '{team_id}'.")

        logger.info(f"Code signature verified: TeamIdentifier={team_id}")
        return team_id
