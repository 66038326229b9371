"""
Lifecycle script hooks.

Scripts ending in .sh directly under a hook directory run in lexical order,
with the process environment plus a per-stage overlay.
"""

import os
import logging
import subprocess
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)

SCRIPT_SUFFIX = '.sh'


class HookError(Exception):
    """Raised when a hook script exits with a non-zero status."""

    def __init__(self, message: str, stage: str = None, script: str = None, returncode: int = None):
        super().__init__(message)
        self.stage = stage
        self.script = script
        self.returncode = returncode


def list_hooks(directory: Optional[str]) -> List[str]:
    """
    Find hook scripts in directory.

    Returns:
        Full paths of matching files, sorted by name; empty if the
        directory is unset or missing
    """
    if not directory or not os.path.isdir(directory):
        return []

    names = sorted(
        entry.name for entry in os.scandir(directory)
        if entry.name.endswith(SCRIPT_SUFFIX) and entry.is_file()
    )
    return [os.path.join(directory, name) for name in names]


def run_hooks(directory: Optional[str], env: Dict[str, str] = None, stage: str = None) -> int:
    """
    Run every hook script in directory, stopping at the first failure.

    Executable scripts are run directly; others are run with /bin/sh.
    Standard streams are inherited.

    Args:
        directory: Hook directory; missing directories are a no-op
        env: Variables merged over os.environ for each script
        stage: Lifecycle stage name, used in logs and errors

    Returns:
        Number of scripts executed

    Raises:
        HookError: If a script exits non-zero or cannot be started
    """
    scripts = list_hooks(directory)
    stage = stage or directory

    if not scripts:
        logger.debug("No %s hooks found in %s", stage, directory)
        return 0

    script_env = dict(os.environ)
    script_env.update({key: str(value) for key, value in (env or {}).items()})

    for script in scripts:
        command = [script] if os.access(script, os.X_OK) else ['/bin/sh', script]
        logger.info("Running %s hook: %s", stage, script)

        try:
            result = subprocess.run(command, env=script_env, check=False)
        except OSError as e:
            raise HookError(f"Failed to start {stage} hook {script}: {e}",
                            stage=stage, script=script) from e

        if result.returncode != 0:
            raise HookError(
                f"{stage} hook {script} exited with status {result.returncode}",
                stage=stage,
                script=script,
                returncode=result.returncode
            )

    return len(scripts)
