"""Filesystem/VCS probe used to validate a reconstructed work state."""

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from continuity.core.errors import ProbeError

logger = logging.getLogger(__name__)


class StateProbe(Protocol):
    """Everything resume validation may ask of the local environment."""

    def directory_exists(self, path: str) -> bool: ...

    def branch_exists(self, repo: str, branch: str) -> bool: ...


class LocalStateProbe:
    """Probe the local filesystem and git."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def directory_exists(self, path: str) -> bool:
        return Path(path).expanduser().is_dir()

    def branch_exists(self, repo: str, branch: str) -> bool:
        """True if the local branch exists in the repository at repo.

        Raises:
            ProbeError: git could not be run
        """
        if not self.directory_exists(repo):
            return False
        try:
            result = subprocess.run(
                ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
                cwd=Path(repo).expanduser(),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProbeError(f"Could not check branch '{branch}' in {repo}: {e}") from e
        logger.debug(f"Branch {branch} in {repo}: rev-parse exited {result.returncode}")
        return result.returncode == 0
