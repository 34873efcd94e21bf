import enum
import collections
import xml.etree.ElementTree as ET
from pathlib import Path
from datetime import datetime

from stigkit import util
from stigkit.errors import PartialEvaluation

PROFILE_PREFIX = 'xccdf_org.ssgproject.content_profile_'


class Mode(enum.Enum):
    EVALUATE = 'evaluate'
    REMEDIATE = 'remediate'


class Report(enum.Enum):
    HTML = 'html'
    XML = 'xml'


class ExitOutcome(collections.namedtuple('ExitOutcome', ['returncode', 'reports'])):
    """
    What came out of one oscap run: its exit code and a dict of
    {Report: Path} of the report files it was asked to write.

    oscap exits with 0 if everything passed, 2 if some rules failed,
    1 on an error.
    """

    @property
    def compliant(self):
        return self.returncode == 0

    @property
    def rules_failed(self):
        return self.returncode == 2

    def check(self):
        """Raise PartialEvaluation if oscap didn't return 0."""
        if self.returncode != 0:
            raise PartialEvaluation(self)
        return self


def parse_xml(path):
    """
    Stream through an XML file, yielding (frames, elements) whenever an
    element is complete, ie. on its closing tag.

    'frames' are the tag names (without namespace) from the root down to
    the just-closed element, 'elements' the matching Element objects, so
    a caller looks at frames[-2:] == ['Profile', 'title'] and reads
    elements[-1].

    Closed subtrees are dropped from their parent afterwards, a multi-MB
    datastream is never held in memory as a whole tree.
    """
    parser = ET.XMLPullParser(events=['start', 'end'])
    frames = []
    elements = []
    with open(path, 'rb') as f:
        while chunk := f.read(65536):
            parser.feed(chunk)
            for event, elem in parser.read_events():
                if event == 'start':
                    frames.append(elem.tag.partition('}')[2] or elem.tag)
                    elements.append(elem)
                else:
                    yield (frames, elements)
                    frames.pop()
                    elements.pop()
                    # free already processed subtrees
                    if elements:
                        elements[-1].remove(elem)


def list_profiles(datastream):
    """
    Return a dict of {short_profile_id: title} of all XCCDF profiles
    in 'datastream', ie. {'stig': 'DISA STIG for Red Hat Enterprise Linux 9'}.
    """
    profiles = {}
    for frames, elements in parse_xml(datastream):
        if frames[-1] == 'Profile':
            profile = elements[-1].get('id', '').removeprefix(PROFILE_PREFIX)
            profiles.setdefault(profile, None)
        elif len(frames) >= 2 and frames[-2:] == ['Profile', 'title']:
            profile = elements[-2].get('id', '').removeprefix(PROFILE_PREFIX)
            profiles[profile] = elements[-1].text
    return profiles


def default_report_paths(report_dir, reports, timestamp=None):
    """
    Return {Report: Path} of timestamped report file names in 'report_dir',
    for the requested set of 'reports'.
    """
    timestamp = timestamp or datetime.now().strftime('%Y%m%d-%H%M%S')
    report_dir = Path(report_dir)
    return {
        report: report_dir / f'stig-compliance-{timestamp}.{report.value}'
        for report in Report if report in reports
    }


def eval_cmd(datastream, profile, *, mode=Mode.EVALUATE, reports=None):
    """
    Return 'oscap xccdf eval' arguments (without 'oscap' itself)
    for the given {Report: Path} 'reports'.
    """
    reports = reports or {}
    args = ['xccdf', 'eval', '--profile', profile]
    if mode == Mode.REMEDIATE:
        args.append('--remediate')
    if Report.HTML in reports:
        args += ['--report', str(reports[Report.HTML])]
    if Report.XML in reports:
        args += ['--results', str(reports[Report.XML])]
    args.append(str(datastream))
    return args


def invoke(
    runner, datastream, profile, *, mode=Mode.EVALUATE, reports=None,
    html_path=None, xml_path=None,
):
    """
    Run oscap on 'datastream' with 'profile', writing the {Report: Path}
    'reports', and return an ExitOutcome.

    'html_path' and 'xml_path' are shortcuts for adding to 'reports'.

    The scan output is left on the console, nothing here parses results.
    """
    reports = dict(reports or {})
    if html_path:
        reports[Report.HTML] = Path(html_path)
    if xml_path:
        reports[Report.XML] = Path(xml_path)
    for path in reports.values():
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    if mode == Mode.REMEDIATE:
        util.warning("running in remediation mode, this will make changes to the system")
    args = eval_cmd(datastream, profile, mode=mode, reports=reports)
    result = runner.run('oscap', *args, capture=False)
    if result.returncode == 0:
        util.log("all rules passed")
    elif result.returncode == 2:
        util.warning("some rules failed, see the reports for details")
    else:
        util.error(f"oscap failed with exit code {result.returncode}")
    return ExitOutcome(result.returncode, dict(reports))
