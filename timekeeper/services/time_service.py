import logging
import subprocess
from typing import List, Protocol

from timekeeper.config import get_settings

logger = logging.getLogger(__name__)


class TimeServiceError(RuntimeError):
    """Raised when a w32tm command cannot be run or reports failure."""


class TimeService(Protocol):
    """Control and query surface of the time synchronization service."""

    def query(self) -> str: ...

    def query_peers(self) -> str: ...

    def reload(self) -> None: ...

    def resync(self, rediscover: bool = False) -> bool: ...

    def register(self) -> None: ...

    def unregister(self) -> None: ...


class W32tmTimeService:
    """TimeService backed by the w32tm command line tool."""

    def __init__(self, executable: str = "w32tm") -> None:
        self.executable = executable

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        command: List[str] = [self.executable, *args]
        logger.debug("Running %s", " ".join(command))
        try:
            return subprocess.run(
                command,
                check=check,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise TimeServiceError(
                f"{self.executable} binary not found; is this a Windows host?"
            ) from exc
        except subprocess.CalledProcessError as exc:
            output = (exc.stderr or exc.stdout or "").strip()
            raise TimeServiceError(
                f"{' '.join(command)} failed with return code {exc.returncode}: {output}"
            ) from exc

    def query(self) -> str:
        return self._run("/query", "/status").stdout

    def query_peers(self) -> str:
        return self._run("/query", "/peers").stdout

    def reload(self) -> None:
        self._run("/config", "/update")

    def resync(self, rediscover: bool = False) -> bool:
        """
        Ask the service to resynchronize without waiting for the result.

        Returns False if w32tm exited non-zero; a resync may legitimately
        still be in progress, so this never raises for the exit code.
        """
        args = ["/resync"]
        if rediscover:
            args.append("/rediscover")
        args.append("/nowait")
        result = self._run(*args, check=False)
        if result.returncode != 0:
            logger.warning(
                "w32tm %s returned %s: %s",
                " ".join(args),
                result.returncode,
                (result.stdout or result.stderr or "").strip(),
            )
            return False
        return True

    def register(self) -> None:
        self._run("/register")

    def unregister(self) -> None:
        self._run("/unregister")


def get_time_service() -> TimeService:
    return W32tmTimeService(get_settings().w32tm_path)
