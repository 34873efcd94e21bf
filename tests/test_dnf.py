import pytest

from conftest import FakeRunner, result
from stigkit.dnf import Provisioner
from stigkit.errors import ToolMissing


def test_install_with_sudo():
    runner = FakeRunner(tools=['dnf', 'sudo'])
    assert Provisioner(runner).install() is True
    assert runner.calls == [
        ['sudo', 'dnf', 'install', '-y', 'openscap-scanner', 'scap-security-guide'],
    ]


def test_install_yum_as_root():
    runner = FakeRunner(tools=['yum'], root=True)
    assert Provisioner(runner, ['scap-security-guide']).install() is True
    assert runner.calls == [['yum', 'install', '-y', 'scap-security-guide']]


def test_install_once():
    runner = FakeRunner(lambda cmd: result(1), tools=['dnf'], root=True)
    provisioner = Provisioner(runner)
    assert provisioner.install() is False
    assert provisioner.install() is False
    assert len(runner.calls) == 1
    # a different set is a different attempt
    provisioner.install('openscap-scanner')
    assert len(runner.calls) == 2


def test_no_package_manager():
    with pytest.raises(ToolMissing, match='neither dnf nor yum'):
        Provisioner(FakeRunner(root=True)).install()


def test_no_sudo():
    with pytest.raises(ToolMissing):
        Provisioner(FakeRunner(tools=['dnf'])).install()


def test_ensure_tool_present():
    runner = FakeRunner(tools=['oscap'])
    assert Provisioner(runner).ensure_tool('oscap') == '/usr/bin/oscap'
    assert runner.calls == []


def test_ensure_tool_installs():
    runner = FakeRunner(tools=['dnf'], root=True)

    def handler(cmd):
        runner.tools.add('oscap')
    runner.handler = handler
    assert Provisioner(runner).ensure_tool('oscap') == '/usr/bin/oscap'
    assert runner.commands('dnf')


def test_ensure_tool_still_missing():
    runner = FakeRunner(tools=['dnf'], root=True)
    with pytest.raises(ToolMissing, match='oscap'):
        Provisioner(runner).ensure_tool('oscap')
