"""
Safe .env parser for swarm.env.

Parses KEY=value lines without shell execution. Values that look like shell
expansion are rejected rather than silently passed through, since swarm.env
is often copied from deployment scripts.
"""

import re
from pathlib import Path

FORBIDDEN_PATTERNS = [
    r'`',           # backticks
    r'\$\(',        # command substitution
    r'\$\{',        # variable expansion
    r';',           # command chaining
    r'&&',
    r'\|',          # pipes and OR chaining
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')


def parse_env_text(text: str, source: str = "<string>") -> dict[str, str]:
    """
    Parse KEY=value text.

    A leading "export " is tolerated so files can double as shell snippets.

    Raises:
        ValueError: on invalid syntax or a forbidden pattern
    """
    result = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()

        if '=' not in line:
            raise ValueError(f"{source}:{lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if not KEY_PATTERN.match(key):
            raise ValueError(f"{source}:{lineno}: Invalid key '{key}'")

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]

        for pattern in FORBIDDEN_PATTERNS:
            if re.search(pattern, value):
                raise ValueError(f"{source}:{lineno}: Forbidden pattern in value for {key}")

        result[key] = value

    return result


def load_env(filepath: Path | str, required: bool = True) -> dict[str, str]:
    """
    Parse an env file, return dict.

    Raises:
        FileNotFoundError: if required and the file doesn't exist
        ValueError: if syntax invalid or forbidden pattern found
    """
    path = Path(filepath)
    if not path.exists():
        if required:
            raise FileNotFoundError(f"Env file not found: {filepath}")
        return {}
    return parse_env_text(path.read_text(), source=str(path))
