"""
SecureEnv - Environment File Parsing

Reads KEY=VALUE style input for `senv import-env`. Accepted line forms:

    KEY=VALUE            dotenv
    KEY="VALUE"          quoted (single or double)
    export KEY=VALUE     shell export
    KEY: VALUE           heroku config
    # comment            ignored
"""

from typing import Iterable, List, Optional, Tuple


def parse_line(line: str) -> Optional[Tuple[str, str]]:
    """
    Parse one line into (key, value).

    Returns None for blank lines, comments and lines that do not parse.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    if line.startswith("export "):
        line = line[len("export "):].lstrip()

    if "=" in line:
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if key and not any(ch.isspace() for ch in key):
            return key, value

    if ":" in line:
        key, value = line.split(":", 1)
        key = key.strip()
        if key and not any(ch.isspace() for ch in key):
            return key, value.strip()

    return None


def parse_lines(lines: Iterable[str]) -> Tuple[List[Tuple[str, str]], List[str]]:
    """
    Parse many lines.

    Returns:
        (pairs, skipped) where skipped holds non-blank, non-comment lines
        that did not parse
    """
    pairs = []
    skipped = []
    for line in lines:
        parsed = parse_line(line)
        if parsed:
            pairs.append(parsed)
        elif line.strip() and not line.strip().startswith("#"):
            skipped.append(line.strip())
    return pairs, skipped
