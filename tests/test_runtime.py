import pathlib

import pytest

import runtime
from runtime import RuntimeContext, get_arch_name, get_os_name


@pytest.mark.parametrize('system, expected', [('Windows', 'windows'), ('Darwin', 'osx'), ('Linux', 'linux')])
def test_os_name(monkeypatch, system, expected):
    monkeypatch.setattr(runtime.platform, 'system', lambda: system)
    assert get_os_name() == expected


def test_unsupported_os(monkeypatch):
    monkeypatch.setattr(runtime.platform, 'system', lambda: 'Plan9')
    with pytest.raises(OSError):
        get_os_name()


@pytest.mark.parametrize('machine, expected', [
    ('AMD64', 'x86_64'), ('i686', 'x86'), ('aarch64', 'arm64'), ('armv7l', 'arm32'), ('riscv64', 'x86_64'),
])
def test_arch_name(monkeypatch, machine, expected):
    monkeypatch.setattr(runtime.platform, 'machine', lambda: machine)
    assert get_arch_name() == expected


def test_context_is_immutable_and_copied_on_feature_change(tmp_path):
    ctx = RuntimeContext('linux', 'x86_64', tmp_path, features={'is_demo_user': False})
    demo = ctx.with_features(is_demo_user=True)
    assert ctx.features == {'is_demo_user': False}
    assert demo.features == {'is_demo_user': True}
    with pytest.raises(AttributeError):
        ctx.os_name = 'windows'


def test_pointer_width(tmp_path):
    assert RuntimeContext('windows', 'x86', tmp_path).pointer_width == '32'
    assert RuntimeContext('windows', 'x86_64', tmp_path).pointer_width == '64'


def test_current(monkeypatch, tmp_path):
    monkeypatch.setattr(runtime.platform, 'system', lambda: 'Linux')
    monkeypatch.setattr(runtime.platform, 'machine', lambda: 'x86_64')
    ctx = RuntimeContext.current(str(tmp_path), max_memory_mb=2048)
    assert (ctx.os_name, ctx.arch) == ('linux', 'x86_64')
    assert ctx.install_root == pathlib.Path(tmp_path)
    assert ctx.max_memory_mb == 2048
