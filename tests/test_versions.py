import pytest

from stigkit.versions import OSIdentity


@pytest.mark.parametrize('text', ['centos10', 'CentOS 10', 'centos-10', 'centos10.1', ('centos', '10')])
def test_parse(text):
    assert OSIdentity.parse(text) == OSIdentity('centos', 10)


@pytest.mark.parametrize('text', ['', '10', 'centos', 'centos ten'])
def test_parse_invalid(text):
    with pytest.raises(ValueError):
        OSIdentity.parse(text)


def test_str():
    assert str(OSIdentity('rhel', 9)) == 'rhel9'


def test_markers():
    assert OSIdentity('rhel', 10).markers() == ('rhel10', 'RHEL 10', 'Red Hat Enterprise Linux 10')
    assert OSIdentity('centos', 10).markers() == ('centos10', 'CentOS 10', 'CentOS Stream 10')


def test_unknown_distro():
    with pytest.raises(ValueError, match='unknown distro'):
        OSIdentity('plan', 9).markers()


def test_from_os_release(tmp_path):
    os_release = tmp_path / 'os-release'
    os_release.write_text(
        '# comment\n'
        'NAME="CentOS Stream"\n'
        'VERSION="10 (Coughlan)"\n'
        'ID="centos"\n'
        'VERSION_ID="10"\n'
    )
    assert OSIdentity.from_os_release(os_release) == OSIdentity('centos', 10)

    os_release.write_text('ID=rhel\nVERSION_ID="9.6"\n')
    assert OSIdentity.from_os_release(os_release) == OSIdentity('rhel', 9)
