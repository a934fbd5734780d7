import logging
import re
from typing import FrozenSet, Iterable, Sequence

from manifest import Argument, Rule, RuleAction
from runtime import RuntimeContext

log = logging.getLogger(__name__)

# Names a manifest may use for the same OS / CPU family.
OS_ALIASES = {
    'osx': ('osx', 'macos', 'mac'),
    'windows': ('windows',),
    'linux': ('linux',),
}
ARCH_ALIASES = {
    'x86_64': ('x86_64', 'amd64', 'x64'),
    'x86': ('x86', 'i386', 'i686'),
    'arm64': ('arm64', 'aarch64'),
    'arm32': ('arm32', 'arm'),
}


def _family(aliases: dict, value: str) -> FrozenSet[str]:
    return frozenset(aliases.get(value, (value,)))


def _pattern_matches(pattern: str, candidates: Iterable[str]) -> bool:
    try:
        compiled = re.compile(pattern)
    except re.error:
        log.warning(f"Invalid rule pattern {pattern!r}, comparing literally.")
        return pattern in candidates
    return any(compiled.fullmatch(candidate) for candidate in candidates)


def rule_matches(rule: Rule, ctx: RuntimeContext) -> bool:
    """True if every predicate of the rule holds for the context."""
    if rule.os_name is not None and not _pattern_matches(rule.os_name, _family(OS_ALIASES, ctx.os_name)):
        return False
    if rule.arch is not None and not _pattern_matches(rule.arch, _family(ARCH_ALIASES, ctx.arch)):
        return False
    if rule.os_version is not None:
        try:
            if re.search(rule.os_version, ctx.os_version) is None:
                return False
        except re.error:
            log.warning(f"Invalid OS version pattern {rule.os_version!r}, rule does not match.")
            return False
    for feature, expected in rule.features:
        if bool(ctx.features.get(feature, False)) != expected:
            return False
    return True


def evaluate(rules: Sequence[Rule], ctx: RuntimeContext) -> bool:
    """
    Decides whether an item gated by `rules` applies to the context.

    An empty rule list always applies. Otherwise rules are walked in declaration
    order and the last matching rule decides; if none matches the item is excluded.
    """
    if not rules:
        return True
    allowed = False
    for rule in rules:
        if rule_matches(rule, ctx):
            allowed = rule.action is RuleAction.ALLOW
    return allowed


def applicable_values(arguments: Sequence[Argument], ctx: RuntimeContext) -> list:
    """Flattens argument templates, keeping only entries whose rules apply."""
    values = []
    for argument in arguments:
        if evaluate(argument.rules, ctx):
            values.extend(argument.values)
    return values
