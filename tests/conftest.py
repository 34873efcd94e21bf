import pytest

from stigkit.util import ToolResult

# minimal SCAP source datastream, with the OS identity markers as placeholders
DATASTREAM = """\
<?xml version="1.0" encoding="UTF-8"?>
<ds:data-stream-collection xmlns:ds="http://scap.nist.gov/schema/scap/source/1.2" xmlns:xlink="http://www.w3.org/1999/xlink" id="scap_org.open-scap_collection_from_xccdf_ssg-{short}-xccdf.xml" schematron-version="1.3">
  <ds:data-stream id="scap_org.open-scap_datastream_from_xccdf_ssg-{short}-xccdf.xml" scap-version="1.3" use-case="OTHER">
    <ds:checklists>
      <ds:component-ref id="scap_org.open-scap_cref_ssg-{short}-xccdf.xml" xlink:href="#scap_org.open-scap_comp_ssg-{short}-xccdf.xml"/>
    </ds:checklists>
  </ds:data-stream>
  <ds:component id="scap_org.open-scap_comp_ssg-{short}-xccdf.xml" timestamp="2025-05-01T10:00:00">
    <xccdf-1.2:Benchmark xmlns:xccdf-1.2="http://checklists.nist.gov/xccdf/1.2" id="xccdf_org.ssgproject.content_benchmark_STIG">
      <xccdf-1.2:title>Guide to the Secure Configuration of {full}</xccdf-1.2:title>
      <!-- profiles for {human} -->
      <xccdf-1.2:Profile id="xccdf_org.ssgproject.content_profile_stig">
        <xccdf-1.2:title>DISA STIG for {full}</xccdf-1.2:title>
        <xccdf-1.2:description>Hardens <xccdf-1.2:em>{short}</xccdf-1.2:em> {short} systems.</xccdf-1.2:description>
      </xccdf-1.2:Profile>
      <xccdf-1.2:Profile id="xccdf_org.ssgproject.content_profile_cis">
        <xccdf-1.2:title>CIS {human} Benchmark</xccdf-1.2:title>
      </xccdf-1.2:Profile>
    </xccdf-1.2:Benchmark>
  </ds:component>
</ds:data-stream-collection>
"""


class FakeRunner:
    """
    Stands in for util.ToolRunner, recording every command.

    'handler' is called with the full command list and returns a ToolResult,
    or None for the default (success, no output). 'tools' are what which()
    finds.
    """

    def __init__(self, handler=None, tools=(), root=False):
        self.handler = handler
        self.tools = set(tools)
        self.root = root
        self.calls = []
        self.envs = []

    def run(self, cmd, *args, capture=True, env=None, input=None):  # noqa: A002
        full = [cmd, *(str(x) for x in args)]
        self.calls.append(full)
        self.envs.append(env)
        result = self.handler(full) if self.handler else None
        return result or ToolResult(0, '' if capture else None, '' if capture else None)

    def which(self, name):
        return f'/usr/bin/{name}' if name in self.tools else None

    def is_root(self):
        return self.root

    def commands(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for var in ['STIGKIT_CONFIG', 'STIGKIT_CONTENT_DIR', 'STIGKIT_REPORT_DIR',
                'STIGKIT_PROFILE', 'STIGKIT_TARGET', 'STIGKIT_VERBOSE']:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def make_ds():
    """Write a datastream labeled for an OSIdentity to 'path', return 'path'."""
    def make(path, identity):
        short, human, full = identity.markers()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DATASTREAM.format(short=short, human=human, full=full))
        return path
    return make


@pytest.fixture
def runner():
    return FakeRunner()


def result(returncode=0, stdout='', stderr=''):
    return ToolResult(returncode, stdout, stderr)
