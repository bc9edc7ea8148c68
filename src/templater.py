"""Placeholder substitution for resource definitions.

Templates carry PLACEHOLDER_<NAME> tokens. Rendering is pure: output
depends only on the template text and the arguments.

Two kinds of substitution:
- Values: every PLACEHOLDER_<NAME> is replaced literally with
  substitutions[NAME].
- Conditional fragments: a line holding a fragment token is either
  replaced (token swapped for the fragment text of the selected variant,
  continuation lines indented to match) or dropped entirely when the
  variant has no fragment. A fragment is never partially rendered.

Any token left after rendering raises UnresolvedPlaceholderError; a
document with a literal placeholder is never returned.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence

from common import DeployError

TOKEN_PREFIX = 'PLACEHOLDER_'
TOKEN_PATTERN = re.compile(r'PLACEHOLDER_[A-Z0-9_]+')


class UnresolvedPlaceholderError(DeployError):
    """Rendered output still contains placeholder tokens."""

    def __init__(self, tokens: list[str], source: str = ''):
        self.tokens = tokens
        self.source = source
        where = f" in {source}" if source else ''
        super().__init__(f"Unresolved placeholders{where}: {', '.join(tokens)}")


@dataclass(frozen=True)
class ConditionalFragment:
    """Text inserted for some variants of a selector and elided for others.

    Attributes:
        name: Token name without prefix (e.g. REMOTE_STORAGE_EXTRA)
        variants: Selector value → fragment text
    """
    name: str
    variants: Mapping[str, str] = field(default_factory=dict)

    @property
    def token(self) -> str:
        return f'{TOKEN_PREFIX}{self.name}'


def _apply_fragment(text: str, fragment: ConditionalFragment, selector: Optional[str]) -> str:
    replacement = fragment.variants.get(selector) if selector is not None else None
    out: list[str] = []
    for line in text.splitlines(keepends=True):
        # Match the whole token, not a longer token sharing its prefix
        if fragment.token not in TOKEN_PATTERN.findall(line):
            out.append(line)
            continue
        if replacement is None:
            continue
        indent = line[:len(line) - len(line.lstrip())]
        body = replacement.rstrip('\n').replace('\n', '\n' + indent)
        out.append(line.replace(fragment.token, body))
    return ''.join(out)


def render(
    template: str,
    substitutions: Mapping[str, object],
    fragments: Sequence[ConditionalFragment] = (),
    selector: Optional[str] = None,
    source: str = '',
) -> str:
    """Render a template.

    Args:
        template: Template text
        substitutions: NAME → value for each PLACEHOLDER_NAME token
        fragments: Conditional fragments, resolved before value substitution
        selector: Variant key choosing which fragment text to insert
        source: Template origin for error messages

    Raises:
        UnresolvedPlaceholderError: If any token remains, or a used token
            maps to an empty value
    """
    text = template
    for fragment in fragments:
        text = _apply_fragment(text, fragment, selector)

    empty = sorted(
        f'{TOKEN_PREFIX}{name}' for name, value in substitutions.items()
        if (value is None or str(value) == '') and f'{TOKEN_PREFIX}{name}' in text
    )
    if empty:
        raise UnresolvedPlaceholderError(empty, source)

    def _substitute(match: re.Match) -> str:
        name = match.group(0)[len(TOKEN_PREFIX):]
        if name in substitutions:
            return str(substitutions[name])
        return match.group(0)

    text = TOKEN_PATTERN.sub(_substitute, text)

    remaining = sorted(set(TOKEN_PATTERN.findall(text)))
    if remaining:
        raise UnresolvedPlaceholderError(remaining, source)
    return text


def render_file(
    path: Path,
    substitutions: Mapping[str, object],
    fragments: Sequence[ConditionalFragment] = (),
    selector: Optional[str] = None,
) -> str:
    """Read and render a template file."""
    with open(path, encoding='utf-8') as f:
        template = f.read()
    return render(template, substitutions, fragments, selector, source=str(path))
