"""
Runs shell scripts through mongosh (or the legacy ``mongo`` shell).

The connection URI never appears on the command line: the shell starts with
``--nodb`` and the script itself begins with ``db = connect(`<uri>`)``,
piped in through stdin.
"""

import shutil
import subprocess
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from config import MONGOSH_PATH, SCRIPT_TIMEOUT_SECONDS
from logger import logger

SHELL_CANDIDATES = ("mongosh", "mongo")
SHELL_ARGS = ["--nodb", "--quiet", "--norc"]
SHELL_NOT_FOUND = (
    "mongosh or mongo shell not found. "
    "Please install MongoDB Shell: https://www.mongodb.com/try/download/shell"
)


def find_shell(explicit_path: str = MONGOSH_PATH) -> Optional[str]:
    if explicit_path:
        return shutil.which(explicit_path)
    for name in SHELL_CANDIDATES:
        path = shutil.which(name)
        if path:
            return path
    return None


def check_mongosh_available() -> Tuple[bool, str]:
    path = find_shell()
    return (True, path) if path else (False, "")


def uri_with_database(uri: str, database: str) -> str:
    """Replace the URI path with ``/<database>``, keeping options."""
    parts = urlsplit(uri)
    return urlunsplit(parts._replace(path="/" + database))


def build_wrapped_script(uri: str, script: str) -> str:
    escaped = uri.replace("\\", "\\\\").replace("`", "\\`")
    return f"db = connect(`{escaped}`);\n{script}"


def execute_script_with_database(
    uri: str,
    database: str,
    script: str,
    timeout: Union[int, float] = SCRIPT_TIMEOUT_SECONDS,
) -> Dict[str, Union[str, int]]:
    """Run ``script`` against ``database``.

    Returns ``{output, exitCode, error}``; a non-zero exit code is reported,
    not raised.  Raises ``ValueError`` for empty input and ``RuntimeError``
    when no shell is installed.
    """
    if not script:
        raise ValueError("script cannot be empty")
    if not database:
        raise ValueError("database name cannot be empty")

    shell = find_shell()
    if shell is None:
        raise RuntimeError(SHELL_NOT_FOUND)

    wrapped = build_wrapped_script(uri_with_database(uri, database), script)
    logger.info("[SCRIPT] Running %d-char script against %s via %s", len(script), database, shell)

    try:
        completed = subprocess.run(
            [shell, *SHELL_ARGS],
            input=wrapped,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        output, error, exit_code = completed.stdout, completed.stderr, completed.returncode
    except subprocess.TimeoutExpired:
        output, error, exit_code = "", f"script execution timed out ({int(timeout)}s limit)", -1
    except OSError as exc:
        output, error, exit_code = "", str(exc), -1

    if error and not output:
        output = error

    if exit_code != 0:
        logger.warning("[SCRIPT] Shell exited with %d: %s", exit_code, error.strip()[:200])
    return {"output": output, "exitCode": exit_code, "error": error}
