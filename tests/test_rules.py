import pytest

from manifest import Argument, Rule, RuleAction, parse_version
from rules import applicable_values, evaluate, rule_matches

from conftest import library, make_context, os_rule, resource, version_document

ALLOW_ALL = Rule(RuleAction.ALLOW)
DENY_WINDOWS = Rule(RuleAction.DENY, os_name='windows')


def test_empty_rule_list_always_applies(linux_ctx):
    assert evaluate((), linux_ctx) is True


def test_last_matching_rule_wins(linux_ctx, windows_ctx):
    rules = (ALLOW_ALL, DENY_WINDOWS)
    assert evaluate(rules, windows_ctx) is False
    assert evaluate(rules, linux_ctx) is True


def test_no_matching_rule_excludes(linux_ctx, windows_ctx):
    rules = (Rule(RuleAction.ALLOW, os_name='windows'),)
    assert evaluate(rules, windows_ctx) is True
    assert evaluate(rules, linux_ctx) is False


def test_rule_order_matters(windows_ctx):
    assert evaluate((DENY_WINDOWS, ALLOW_ALL), windows_ctx) is True


def test_os_aliases(tmp_path):
    mac = make_context('osx', tmp_path)
    assert rule_matches(Rule(RuleAction.ALLOW, os_name='osx'), mac)
    assert rule_matches(Rule(RuleAction.ALLOW, os_name='macos'), mac)
    assert not rule_matches(Rule(RuleAction.ALLOW, os_name='linux'), mac)


def test_arch_pattern(tmp_path):
    x86 = make_context('windows', tmp_path, arch='x86')
    arm = make_context('linux', tmp_path, arch='arm64')
    assert rule_matches(Rule(RuleAction.ALLOW, arch='x86'), x86)
    assert not rule_matches(Rule(RuleAction.ALLOW, arch='x86'), arm)
    assert rule_matches(Rule(RuleAction.ALLOW, arch='aarch64'), arm)
    assert rule_matches(Rule(RuleAction.ALLOW, arch='arm.*'), arm)


def test_os_version_pattern(tmp_path):
    ctx = make_context('osx', tmp_path, os_version='10.5.8')
    assert rule_matches(Rule(RuleAction.ALLOW, os_name='osx', os_version=r'^10\.5\.\d$'), ctx)
    assert not rule_matches(Rule(RuleAction.ALLOW, os_version=r'^10\.6'), ctx)


def test_invalid_pattern_falls_back_to_literal(tmp_path):
    ctx = make_context('linux', tmp_path)
    assert not rule_matches(Rule(RuleAction.ALLOW, os_name='lin[ux'), ctx)


def test_all_predicates_must_hold(tmp_path):
    rule = Rule(RuleAction.ALLOW, os_name='windows', arch='x86')
    assert rule_matches(rule, make_context('windows', tmp_path, arch='x86'))
    assert not rule_matches(rule, make_context('windows', tmp_path, arch='x86_64'))


def test_feature_flags(linux_ctx):
    rule = Rule(RuleAction.ALLOW, features=(('is_demo_user', True),))
    assert not rule_matches(rule, linux_ctx)
    assert rule_matches(rule, linux_ctx.with_features(is_demo_user=True))


def test_missing_feature_counts_as_false(linux_ctx):
    rule = Rule(RuleAction.ALLOW, features=(('has_custom_resolution', False),))
    assert rule_matches(rule, linux_ctx)


def test_disallow_is_parsed_as_deny(windows_ctx):
    document = version_document('v', libraries=[
        library('org:lib:1.0', resource('lib'), rules=[os_rule('allow'), os_rule('disallow', name='windows')]),
    ])
    lib = parse_version(document).libraries[0]
    assert lib.rules[1].action is RuleAction.DENY
    assert evaluate(lib.rules, windows_ctx) is False


@pytest.mark.parametrize('features, expected', [
    ({}, ['--username', 'Steve']),
    ({'has_custom_resolution': True}, ['--username', 'Steve', '--width', '800']),
])
def test_applicable_values(linux_ctx, features, expected):
    arguments = (
        Argument(values=('--username', 'Steve')),
        Argument(values=('--width', '800'), rules=(Rule(RuleAction.ALLOW, features=(('has_custom_resolution', True),)),)),
    )
    assert applicable_values(arguments, linux_ctx.with_features(**features)) == expected
