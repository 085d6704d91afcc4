"""
SecureEnv - Command Runner

Starts a command with secrets injected as environment variables. The
secrets only ever exist in the child's environment: no temporary file,
no command-line argument. On POSIX the current process is replaced
with exec, so nothing outlives the child.
"""

import logging
import os
import subprocess
import sys
from typing import Dict, List, Mapping, Optional

from .config import PASSPHRASE_ENV_VAR
from .errors import ValidationError

logger = logging.getLogger(__name__)


def build_child_env(secrets: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Copy of the base environment (os.environ by default) with secrets on top.

    The store passphrase variable is never passed on to the child.
    """
    env = dict(os.environ if base is None else base)
    env.pop(PASSPHRASE_ENV_VAR, None)
    env.update(secrets)
    return env


def exec_with_secrets(command: List[str], secrets: Mapping[str, str]) -> int:
    """
    Run `command` with `secrets` in its environment.

    On POSIX this does not return on success (the process is replaced).
    Elsewhere the command runs as a child and its exit code is returned.

    Raises:
        ValidationError: Empty command
        OSError: The program could not be started
    """
    if not command:
        raise ValidationError("No command specified")

    env = build_child_env(secrets)
    logger.debug(f"Running {command[0]} with {len(secrets)} injected secrets")

    if os.name == "posix":
        sys.stdout.flush()
        sys.stderr.flush()
        os.execvpe(command[0], command, env)

    completed = subprocess.run(command, env=env)
    return completed.returncode
