import logging
import re
from typing import Iterable, List, Mapping

from errors import CompositionError

log = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r'\$\{([A-Za-z0-9_.\-]+)\}')


def replace_text(value: str, replacements: dict) -> str:
    """
    Replaces all occurrences of specified substrings within a string.
    Does not use regular expressions.

    Args:
        value: The original string to perform replacements on.
        replacements: A dictionary where keys are the substrings
                      to find and values are the strings to
                      replace them with.

    Returns:
        The string with all specified replacements made.
        Returns the original value if it's not a string.
    """
    if not isinstance(value, str):
        return value

    modified_value = value
    for search_string, replace_string in replacements.items():
        if isinstance(search_string, str) and isinstance(replace_string, str):
            modified_value = modified_value.replace(search_string, replace_string)
        else:
            log.warning(f"replace_text: Skipping replacement for key '{search_string}' as either key or value is not a string.")
    return modified_value


def substitute(template: str, values: Mapping[str, str]) -> str:
    """
    Fills every `${name}` placeholder of an argument template.

    Raises CompositionError for a placeholder with no value: a launch command
    carrying a literal `${...}` token would only fail later inside the game.
    """
    def fill(match: 're.Match') -> str:
        name = match.group(1)
        if name not in values:
            raise CompositionError(f"Unresolved placeholder ${{{name}}} in argument {template!r}", placeholder=name)
        return str(values[name])

    return PLACEHOLDER.sub(fill, template)


def substitute_all(templates: Iterable[str], values: Mapping[str, str]) -> List[str]:
    return [substitute(template, values) for template in templates]
