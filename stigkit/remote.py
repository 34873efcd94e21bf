"""
OpenSCAP validation of a remote host, over plain ssh/scp.

The whole exchange is one round trip:
 - check the host answers ssh non-interactively, abort before touching it
   if it doesn't
 - generate a self-contained bash script (find or install the scanner and
   a datastream, run oscap, print report locations as KEY=value markers)
 - copy it over, run it, parse the markers from its output
 - copy the reports back, remove the script and reports on the remote side

Remote cleanup is best-effort, a failure there is only logged.
"""

import os
import sys
import shlex
import tempfile
from pathlib import Path

from stigkit import util, oscap
from stigkit.oscap import Report
from stigkit.errors import ConnectivityFailed, RemoteExecutionFailed

# short connect timeout, and never prompt for passwords or host keys
SSH_OPTS = ['-o', 'ConnectTimeout=5', '-o', 'BatchMode=yes']

_MARKERS = ['REPORTS_DIR', 'HTML_REPORT', 'XML_REPORT', 'OSCAP_EXIT']


class RemoteHost:
    def __init__(self, runner, host):
        self.runner = runner
        self.host = host

    def ssh(self, *cmd, **kwargs):
        """Run a command on the host, 'cmd' arguments are shell-quoted."""
        quoted = (shlex.quote(str(x)) for x in cmd)
        return self.runner.run('ssh', *SSH_OPTS, self.host, '--', *quoted, **kwargs)

    def _scp(self, src, dst):
        ret = self.runner.run('scp', '-q', *SSH_OPTS, src, dst)
        if ret.returncode != 0:
            stderr = (ret.stderr or '').strip()
            raise RemoteExecutionFailed(f"scp {src} {dst} failed: {stderr}")

    def copy_to(self, local_file, remote_file):
        self._scp(str(local_file), f'{self.host}:{remote_file}')

    def copy_from(self, remote_file, local_file):
        self._scp(f'{self.host}:{remote_file}', str(local_file))

    def check_connectivity(self):
        if self.ssh('echo', 'Connection test').returncode != 0:
            util.error(
                f"cannot connect to {self.host}, make sure key-based ssh login works, "
                "the host is reachable and the user has sudo privileges there",
            )
            raise ConnectivityFailed(self.host)
        util.log(f"connected to {self.host}")


def validation_script(profile, reports, datastream_paths, packages):
    """
    Return the bash script run on the remote host, scanning with 'profile'
    and producing the Report types in 'reports'.
    """
    paths = ' '.join(shlex.quote(str(x)) for x in datastream_paths)
    packages = ' '.join(shlex.quote(x) for x in packages)
    report_args = []
    echo_reports = []
    if Report.HTML in reports:
        report_args.append('--report "$HTML_REPORT"')
        echo_reports.append('echo "HTML_REPORT=$HTML_REPORT"')
    if Report.XML in reports:
        report_args.append('--results "$XML_REPORT"')
        echo_reports.append('echo "XML_REPORT=$XML_REPORT"')
    report_args = ' '.join(report_args)
    # indented to match the template below, so dedent() still works
    echo_reports = '\n        '.join(echo_reports)

    return util.dedent(fr'''
        #!/bin/bash
        set -e

        SUDO=
        if [ "$(id -u)" -ne 0 ]; then
            SUDO='sudo -n'
        fi

        install_content() {{
            if command -v dnf >/dev/null 2>&1; then
                $SUDO dnf install -y {packages}
            elif command -v yum >/dev/null 2>&1; then
                $SUDO yum install -y {packages}
            else
                echo "ERROR: neither dnf nor yum found" >&2
                return 1
            fi
        }}

        find_datastream() {{
            for path in {paths}; do
                if [ -f "$path" ]; then
                    echo "$path"
                    return 0
                fi
            done
            return 1
        }}

        if ! command -v oscap >/dev/null 2>&1; then
            echo "Installing OpenSCAP..."
            install_content
        fi

        DATASTREAM=$(find_datastream) || true
        if [ -z "$DATASTREAM" ]; then
            echo "Installing scap-security-guide..."
            install_content
            DATASTREAM=$(find_datastream) || true
        fi
        if [ -z "$DATASTREAM" ]; then
            echo "ERROR: STIG data stream not found" >&2
            exit 1
        fi

        TMP_DIR=$(mktemp -d)
        HTML_REPORT="$TMP_DIR/stig-compliance.html"
        XML_REPORT="$TMP_DIR/stig-compliance.xml"

        echo "Running OpenSCAP evaluation of $DATASTREAM..."
        rc=0
        $SUDO oscap xccdf eval --profile {shlex.quote(profile)} {report_args} "$DATASTREAM" || rc=$?
        $SUDO chown -R "$(id -u)" "$TMP_DIR" || true

        echo "REPORTS_DIR=$TMP_DIR"
        {echo_reports}
        echo "OSCAP_EXIT=$rc"
    ''') + '\n'


def validate(runner, host, profile, reports, *, datastream_paths, packages):
    """
    Scan 'host' with 'profile', fetching reports to the local {Report: Path}
    'reports'. Return an oscap.ExitOutcome with the fetched reports.

    'datastream_paths' are probed on the remote host in order, 'packages'
    get installed there if the scanner or all datastreams are missing.
    """
    remote = RemoteHost(runner, host)
    remote.check_connectivity()

    script = validation_script(profile, set(reports), datastream_paths, packages)
    remote_script = f'/tmp/stigkit-validate-{os.getpid()}.sh'
    with tempfile.NamedTemporaryFile('w', prefix='stigkit-', suffix='.sh', delete=False) as f:
        f.write(script)
        local_script = f.name

    markers = {}
    fetched = {}
    try:
        remote.copy_to(local_script, remote_script)
        util.log(f"executing validation on {host}")
        ret = remote.ssh('bash', remote_script)
        output = ret.stdout or ''
        markers = util.parse_markers(output, _MARKERS)
        # pass through what the remote script and oscap printed
        for line in output.splitlines():
            if line.partition('=')[0] not in _MARKERS:
                sys.stdout.write(f'{line}\n')
        sys.stdout.flush()

        if 'REPORTS_DIR' not in markers:
            stderr = (ret.stderr or '').strip()
            raise RemoteExecutionFailed(
                f"failed to retrieve report paths from {host} (exit code {ret.returncode}): {stderr}",
            )

        for report, key in [(Report.HTML, 'HTML_REPORT'), (Report.XML, 'XML_REPORT')]:
            if report in reports and markers.get(key):
                local = Path(reports[report])
                local.parent.mkdir(parents=True, exist_ok=True)
                remote.copy_from(markers[key], local)
                util.log(f"downloaded {report.value.upper()} report: {local}")
                fetched[report] = local

        returncode = int(markers.get('OSCAP_EXIT', ret.returncode))
    finally:
        leftovers = [x for x in (markers.get('REPORTS_DIR'), remote_script) if x]
        ret = remote.ssh('rm', '-rf', *leftovers)
        if ret.returncode != 0:
            util.warning(f"could not clean up {' '.join(leftovers)} on {host}")
        Path(local_script).unlink(missing_ok=True)

    return oscap.ExitOutcome(returncode, fetched)
