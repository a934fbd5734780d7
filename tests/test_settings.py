import json

import pytest

from errors import ConfigError
from settings import load_config


def write(path, document):
    path.write_text(json.dumps(document), encoding='utf-8')
    return path


def test_defaults_and_thisdir(tmp_path):
    write(tmp_path / 'launcher_config.json', {'version': '1.20.1', 'basepath': ':thisdir:/data', 'java': ':thisdir:/java'})

    config = load_config(tmp_path)

    assert config.version == '1.20.1'
    assert config.install_root == tmp_path.resolve() / 'data' / '.minecraft'
    assert config.cache_root == config.install_root / 'cache'
    assert config.versions_dir == config.install_root / 'versions'
    assert config.java == tmp_path.resolve() / 'java'
    assert config.workers == 8
    assert config.retries == 3
    assert config.account.player_name == 'Player'


def test_default_basepath(tmp_path):
    config = load_config(write(tmp_path / 'launcher_config.json', {}))
    assert config.install_root == tmp_path.resolve() / '.mc_launcher_data' / '.minecraft'


def test_user_config_overrides_account(tmp_path):
    write(tmp_path / 'launcher_config.json', {'auth_player_name': 'FromLauncher', 'workers': 4})
    write(tmp_path / 'config.json', {'auth_player_name': 'Alex', 'auth_uuid': '', 'max_memory': '4096',
                                     'resolution_width': 1280, 'resolution_height': 720, 'demo': True,
                                     'workers': 99})

    config = load_config(tmp_path / 'launcher_config.json')

    assert config.account.player_name == 'Alex'
    assert config.account.uuid == '00000000-0000-0000-0000-000000000000'
    assert config.max_memory == 4096
    assert config.resolution == (1280, 720)
    assert config.features == {'is_demo_user': True}
    assert config.workers == 4


def test_broken_user_config_is_ignored(tmp_path, caplog):
    write(tmp_path / 'launcher_config.json', {'version': 'x'})
    (tmp_path / 'config.json').write_text('{oops', encoding='utf-8')
    assert load_config(tmp_path).version == 'x'
    assert 'config.json' in caplog.text


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match='not found'):
        load_config(tmp_path)


def test_invalid_json(tmp_path):
    (tmp_path / 'launcher_config.json').write_text('{', encoding='utf-8')
    with pytest.raises(ConfigError):
        load_config(tmp_path)


@pytest.mark.parametrize('document', [
    {'workers': 'many'},
    {'workers': 0},
    {'features': ['is_demo_user']},
    {'basepath': 12},
    [],
])
def test_invalid_values(tmp_path, document):
    write(tmp_path / 'launcher_config.json', document)
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_runtime_context(tmp_path):
    write(tmp_path / 'launcher_config.json', {'features': {'is_quick_play_singleplayer': True},
                                              'resolution_width': 800, 'resolution_height': 600,
                                              'min_memory': 512, 'auth_access_token': 'secret'})
    ctx = load_config(tmp_path).runtime_context()
    assert ctx.features == {'is_quick_play_singleplayer': True, 'has_custom_resolution': True}
    assert ctx.resolution == (800, 600)
    assert ctx.min_memory_mb == 512
    assert ctx.account.access_token == 'secret'
    assert ctx.install_root == tmp_path.resolve() / '.mc_launcher_data' / '.minecraft'
