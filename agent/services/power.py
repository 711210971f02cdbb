"""OS power-off capability.

One command per supported OS family, picked once at startup so the
shutdown state machine never branches on platform.
"""

import asyncio
import logging
import platform
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence, Tuple

from agent.core.errors import CommandExecutionError

logger = logging.getLogger(__name__)

POWER_OFF_COMMANDS: Dict[str, Tuple[str, ...]] = {
    "windows": ("shutdown", "/s", "/t", "0"),
    "linux": ("systemctl", "poweroff"),
    "darwin": ("osascript", "-e", 'tell application "System Events" to shut down'),
}

DEFAULT_COMMAND_TIMEOUT = 30.0
MAX_OUTPUT_CHARS = 2000


class PowerOff(Protocol):
    platform: str

    async def power_off(self) -> str: ...


@dataclass(frozen=True)
class CommandPowerOff:
    """Powers the machine off by running a fixed command."""
    platform: str
    argv: Tuple[str, ...]
    timeout: float = DEFAULT_COMMAND_TIMEOUT

    async def power_off(self) -> str:
        """Run the command. Returns its output, raises CommandExecutionError."""
        logger.info(f"Running power-off command: {' '.join(self.argv)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise CommandExecutionError(f"could not start {self.argv[0]}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            raise CommandExecutionError(f"{self.argv[0]} timed out after {self.timeout:.1f}s")

        output = (stdout or b"").decode("utf-8", errors="ignore").strip()
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + "...(truncated)"
        if proc.returncode != 0:
            detail = f": {output}" if output else ""
            raise CommandExecutionError(f"{self.argv[0]} exited with status {proc.returncode}{detail}")
        return output


def host_os() -> str:
    return platform.system().lower()


def select_power_off(
    system: Optional[str] = None,
    command: Optional[Sequence[str]] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> Optional[PowerOff]:
    """Pick the power-off implementation for this host.

    `command` replaces the built-in argv. Returns None for unsupported
    OS families.
    """
    system = (system or host_os()).lower()
    if command:
        return CommandPowerOff(platform=system, argv=tuple(command), timeout=timeout)

    argv = POWER_OFF_COMMANDS.get(system)
    if argv is None:
        logger.warning(f"Unsupported OS: {system}. Shutdown requests will not be executed.")
        return None
    return CommandPowerOff(platform=system, argv=argv, timeout=timeout)
