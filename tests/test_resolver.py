import pytest

from errors import ResolutionError
from manifest import load_version_from, parse_version
from resolver import ArtifactKind, DuplicatePolicy, compare_versions, deduplicate, resolve

from conftest import library, make_context, os_rule, resource, version_document


def end_to_end_documents():
    return {
        'base': version_document('base', client=resource('client-base'), libraries=[
            library('com.example:A:1.0', resource('A-1.0')),
            library('com.example:A:2.0', resource('A-2.0'), rules=[os_rule('allow', name='windows')]),
        ]),
        '1.20': version_document('1.20', parent='base', client=resource('client-1.20')),
    }


def test_end_to_end_windows_gets_newer_library(windows_ctx):
    resolved = resolve(load_version_from(end_to_end_documents(), '1.20'), windows_ctx)
    assert [artifact.id for artifact in resolved.libraries] == ['com.example:A:2.0']


def test_end_to_end_linux_gets_base_library(linux_ctx):
    resolved = resolve(load_version_from(end_to_end_documents(), '1.20'), linux_ctx)
    assert [artifact.id for artifact in resolved.libraries] == ['com.example:A:1.0']
    assert resolved.client.id == 'client:1.20'
    assert resolved.client.kind is ArtifactKind.CLIENT


def test_resolution_is_deterministic(windows_ctx):
    descriptor = load_version_from(end_to_end_documents(), '1.20')
    first = resolve(descriptor, windows_ctx)
    for _ in range(5):
        assert resolve(descriptor, windows_ctx) == first


@pytest.mark.parametrize('a, b, expected', [
    ('1.0', '2.0', -1),
    ('1.10', '1.9', 1),
    ('1.0', '1.0.0', 0),
    ('1.0-rc1', '1.0', -1),
    ('1.0-SNAPSHOT', '1.0', -1),
    ('1.0-alpha', '1.0-beta', -1),
    ('31.1-jre', '31.1-android', 1),
    ('3.3.1', '3.3.1', 0),
])
def test_compare_versions(a, b, expected):
    assert compare_versions(a, b) == expected
    assert compare_versions(b, a) == -expected


class TestDeduplicate:
    def libraries(self, *names):
        document = version_document('v', libraries=[library(name, resource(name)) for name in names])
        return parse_version(document).libraries

    def test_highest_version_keeps_first_slot(self):
        libs = self.libraries('org:a:2.0', 'org:b:1.0', 'org:a:1.0', 'org:a:3.0')
        assert [lib.name for lib in deduplicate(libs)] == ['org:a:3.0', 'org:b:1.0']

    def test_last_declared(self):
        libs = self.libraries('org:a:2.0', 'org:b:1.0', 'org:a:1.0')
        assert [lib.name for lib in deduplicate(libs, DuplicatePolicy.LAST_DECLARED)] == ['org:a:1.0', 'org:b:1.0']

    def test_classifier_is_part_of_identity(self):
        libs = self.libraries('org:a:1.0', 'org:a:1.0:natives-linux')
        assert len(deduplicate(libs)) == 2

    def test_no_duplicate_keys_after_resolve(self, linux_ctx):
        document = version_document('v', client=resource('client'), libraries=[
            library(name, resource(name)) for name in ('org:a:1.0', 'org:a:1.1', 'org:b:1', 'org:b:1', 'org:c:1')
        ])
        resolved = resolve(parse_version(document), linux_ctx)
        assert [artifact.id for artifact in resolved.libraries] == ['org:a:1.1', 'org:b:1', 'org:c:1']


class TestNatives:
    def test_legacy_natives_map_with_arch(self, tmp_path):
        lib = library('org.lwjgl:lwjgl-platform:2.9.4', natives={'linux': 'natives-linux', 'windows': 'natives-windows-${arch}'},
                      classifiers={'natives-windows-64': resource('win64'), 'natives-windows-32': resource('win32'),
                                   'natives-linux': resource('linux')}, exclude=['META-INF/'])
        descriptor = parse_version(version_document('v', client=resource('client'), libraries=[lib]))

        windows = resolve(descriptor, make_context('windows', tmp_path))
        assert windows.libraries == ()
        assert [n.id for n in windows.natives] == ['org.lwjgl:lwjgl-platform:2.9.4:natives-windows-64']
        assert windows.natives[0].extract_exclude == ('META-INF/',)

        windows32 = resolve(descriptor, make_context('windows', tmp_path, arch='x86'))
        assert windows32.natives[0].download.url.endswith('win32')

    def test_classifier_naming_convention(self, tmp_path):
        lib = library('org.lwjgl:lwjgl:3.3.1', resource('lwjgl'),
                      classifiers={'natives-linux': resource('l'), 'natives-linux-arm64': resource('la'),
                                   'natives-macos': resource('m')})
        descriptor = parse_version(version_document('v', client=resource('client'), libraries=[lib]))

        arm = resolve(descriptor, make_context('linux', tmp_path, arch='arm64'))
        assert [a.id for a in arm.libraries] == ['org.lwjgl:lwjgl:3.3.1']
        assert [n.id for n in arm.natives] == ['org.lwjgl:lwjgl:3.3.1:natives-linux-arm64']
        mac = resolve(descriptor, make_context('osx', tmp_path))
        assert [n.id for n in mac.natives] == ['org.lwjgl:lwjgl:3.3.1:natives-macos']
        windows = resolve(descriptor, make_context('windows', tmp_path))
        assert windows.natives == ()

    def test_declared_native_without_download(self, linux_ctx):
        lib = library('org.lwjgl:lwjgl-platform:2.9.4', natives={'linux': 'natives-linux'},
                      classifiers={'natives-windows': resource('w')})
        descriptor = parse_version(version_document('v', client=resource('client'), libraries=[lib]))
        with pytest.raises(ResolutionError):
            resolve(descriptor, linux_ctx)


def test_library_without_any_download(linux_ctx):
    descriptor = parse_version(version_document('v', client=resource('client'), libraries=[library('org:a:1.0')]))
    with pytest.raises(ResolutionError, match='org:a:1.0'):
        resolve(descriptor, linux_ctx)


def test_excluded_library_needs_no_download(linux_ctx):
    descriptor = parse_version(version_document('v', client=resource('client'), libraries=[
        library('org:a:1.0', rules=[os_rule('allow', name='windows')]),
    ]))
    assert resolve(descriptor, linux_ctx).libraries == ()


def test_missing_client(linux_ctx):
    with pytest.raises(ResolutionError):
        resolve(parse_version(version_document('v')), linux_ctx)


def test_artifact_order(linux_ctx):
    document = version_document('v', client=resource('client'), libraries=[library('org:a:1', resource('a'))],
                                asset_index=dict(resource('index'), id='5'), logging_file=dict(resource('log'), id='client-1.12.xml'))
    resolved = resolve(parse_version(document), linux_ctx)
    assert [a.id for a in resolved.artifacts()] == ['org:a:1', 'client:v', 'asset-index:5', 'logging:client-1.12.xml']
