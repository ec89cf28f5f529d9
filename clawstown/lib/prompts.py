"""
Prompt loader.

Loads prompt templates from the package's prompts/ directory and
interpolates variables with str.format(): {variable_name}. Use {{ and }}
for literal braces (JSON examples).

HTML comments (<!-- ... -->) are stripped before rendering; use them for
notes that shouldn't reach the agent.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

from clawstown.lib.errors import CapabilityError

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)


class PromptError(CapabilityError):
    """Raised when prompt loading or rendering fails."""
    pass


@lru_cache(maxsize=32)
def load_prompt(name: str) -> str:
    """Load a prompt template by name (cached), HTML comments stripped.

    Raises:
        PromptError: If the template doesn't exist
    """
    prompt_path = PROMPTS_DIR / f"{name}.md"
    if not prompt_path.exists():
        raise PromptError(f"Prompt template '{name}' not found. Expected file: {prompt_path}")

    logger.debug(f"Loading prompt template: {name}")
    content = _HTML_COMMENT_PATTERN.sub('', prompt_path.read_text())
    return content.lstrip()


def render_prompt(name: str, **kwargs) -> str:
    """
    Load and render a prompt template.

    Example:
        render_prompt('review', title='Add auth', diff='...')
    """
    template = load_prompt(name)
    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. Provided: {list(kwargs.keys())}"
        ) from e


def build_section(content: str | None, header: str, empty_msg: str | None = None) -> str:
    """Markdown section if content exists, else empty_msg under the header, else ""."""
    if content:
        return f"{header}\n\n{content}\n"
    elif empty_msg is not None:
        return f"{header}\n\n{empty_msg}\n"
    return ""


def clear_cache():
    load_prompt.cache_clear()
