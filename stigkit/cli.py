"""
Command line interface, one verb per operation:

    stigkit apply [--check] [--tags LIST] [--limit HOST]
    stigkit enforce [--xml PATH]
    stigkit validate [HOST]
    stigkit scan [HOST] [--remote] [--profile NAME] [--remediate] [--html|--xml]
    stigkit datastream [--target ID] [--relabel] [--force] [--mirror DIR]

Exit codes are 0 on success, 1 when a precondition failed (missing tool,
no datastream, no connectivity, aborted by the user, ...), 2 on bad
arguments or when the scan found failing rules.
"""

import os
import argparse
import textwrap
import xml.etree.ElementTree as ET
from pathlib import Path

from stigkit import util, config, dnf, oscap, ansible, remote, datastream
from stigkit.oscap import Report
from stigkit.versions import OSIdentity
from stigkit.datastream import Fidelity
from stigkit.errors import StigkitError, PartialEvaluation, UserAborted


def _log_resolved(resolved):
    util.log(f"datastream: {resolved.path} ({resolved.strategy.value})")
    if resolved.fidelity == Fidelity.APPROXIMATE:
        util.warning(
            f"{resolved.path} has {resolved.source_identity} content, results are "
            "approximate, some rules may not apply or may be missing",
        )


def _profile_id(profile):
    if profile.startswith(oscap.PROFILE_PREFIX):
        return profile
    return f'{oscap.PROFILE_PREFIX}{profile}'


def _check_profile(ds, profile):
    short = profile.removeprefix(oscap.PROFILE_PREFIX)
    try:
        profiles = oscap.list_profiles(ds)
    except ET.ParseError as e:
        raise StigkitError(f"cannot read profiles from {ds}: {e}") from None
    if short not in profiles:
        available = ', '.join(sorted(profiles)) or 'none'
        raise StigkitError(f"profile '{short}' not in {ds}, available: {available}")
    util.log(f"profile: {short} ({profiles[short]})")


def _summarize_reports(outcome):
    for report, path in outcome.reports.items():
        path = Path(path)
        if not path.exists():
            util.warning(f"{report.value.upper()} report was not created: {path}")
        elif report == Report.HTML:
            util.log(f"HTML report: file://{os.path.realpath(path)}")
        else:
            util.log(f"XML results: {path}")


def cmd_apply(args, cfg, runner, input_func):
    ansible.check_ansible(runner)
    ansible.check_role(cfg.role_dir)
    toggles = ansible.rule_toggles(cfg.role_dir)
    if toggles:
        enabled = sum(toggles.values())
        util.log(f"{enabled} of {len(toggles)} STIG rules enabled in {cfg.role_dir}")

    if args.check:
        util.log("running in check mode (dry-run)")
    if args.tags:
        util.log(f"applying tags: {args.tags}")
    if args.limit:
        util.log(f"limiting to host: {args.limit}")

    util.warning("this will apply DISA STIG security controls to your systems")
    util.warning("make sure you have backups and have tested in a non-production environment")
    util.require_confirmation("Continue?", input_func=input_func)

    ret = ansible.run_playbook(
        runner, cfg.playbook, check=args.check, tags=args.tags, limit=args.limit,
    )
    if ret == 0:
        util.log("STIG application completed, review the changes and reboot if necessary")
    return ret


def cmd_enforce(args, cfg, runner, input_func):
    ansible.check_ansible(runner)
    xml_path = Path(args.xml).absolute()

    util.warning("this will make significant security changes to your systems")
    util.warning("make sure you have backups and have tested in a non-production environment")
    util.require_confirmation("Continue?", input_func=input_func)

    util.log(f"XML compliance report will be saved to: {xml_path}")
    ret = ansible.run_playbook(
        runner, cfg.playbook, env={'XML_PATH': str(xml_path)},
        inventory=cfg.inventory, become=True, verbose=True,
    )
    if ret == 0:
        util.log(f"STIG enforcement completed, XML compliance report: {xml_path}")
        util.warning("reboot may be required, review changes before rebooting")
    return ret


def cmd_validate(args, cfg, runner, input_func):
    ansible.check_ansible(runner)
    host = args.host or 'all'
    util.log(f"validating STIG compliance for: {host}")
    ret = ansible.run_playbook(
        runner, cfg.playbook, limit=host, check=True, tags='stig,compliance',
    )
    if ret == 0:
        util.log("validation completed, review the output above for compliance status")
    return ret


def _scan_remote(args, cfg, runner, reports):
    locator = datastream.Locator(cfg.content_dir)
    paths = [c.path for c in locator.candidates([cfg.target, *cfg.fallbacks])]
    return remote.validate(
        runner, args.host, _profile_id(args.profile), reports,
        datastream_paths=paths, packages=cfg.packages,
    )


def _scan_local(args, cfg, runner, reports, input_func):
    if not runner.is_root():
        raise StigkitError("a local scan must be run as root (try sudo)")

    provisioner = dnf.Provisioner(runner, cfg.packages)
    provisioner.ensure_tool('oscap')
    env = util.EnvironmentCapabilities.probe(runner)
    locator = datastream.Locator(cfg.content_dir, cfg.search_dirs)
    resolver = datastream.Resolver(locator, runner=runner, provisioner=provisioner)
    resolved = resolver.resolve(cfg.target, cfg.fallbacks, env)
    _log_resolved(resolved)
    _check_profile(resolved.path, args.profile)

    if args.remediate:
        mode = oscap.Mode.REMEDIATE
        util.warning("remediation will modify this system")
        util.require_confirmation("Continue?", input_func=input_func)
    else:
        mode = oscap.Mode.EVALUATE

    return oscap.invoke(
        runner, resolved.path, _profile_id(args.profile), mode=mode, reports=reports,
    )


def cmd_scan(args, cfg, runner, input_func):
    if args.html:
        wanted = {Report.HTML}
    elif args.xml:
        wanted = {Report.XML}
    else:
        wanted = set(Report)
    reports = oscap.default_report_paths(cfg.report_dir, wanted)

    if args.host:
        if not args.remote:
            util.warning(f"treating '{args.host}' as a remote host, use --remote to be explicit")
        util.log(f"scanning {args.host} with profile {args.profile}")
        outcome = _scan_remote(args, cfg, runner, reports)
    else:
        util.log(f"scanning this system with profile {args.profile}")
        outcome = _scan_local(args, cfg, runner, reports, input_func)

    _summarize_reports(outcome)
    try:
        outcome.check()
    except PartialEvaluation as e:
        util.warning(str(e))
    return outcome.returncode


def cmd_datastream(args, cfg, runner, input_func):
    target = args.target or cfg.target
    fallbacks = [x for x in cfg.fallbacks if x != target]

    if args.force:
        overwrite = True
    else:
        def overwrite(path):
            return util.confirm(f"{path} already exists, re-create it?", input_func=input_func)

    provisioner = dnf.Provisioner(runner, ['scap-security-guide'])
    env = util.EnvironmentCapabilities.probe(runner)
    locator = datastream.Locator(cfg.content_dir, cfg.search_dirs)
    resolver = datastream.Resolver(locator, runner=runner, provisioner=provisioner)
    resolved = resolver.resolve(
        target, fallbacks, env, overwrite=overwrite, relabel=args.relabel,
    )
    _log_resolved(resolved)
    if args.mirror:
        datastream.mirror(resolved, args.mirror)

    util.log(
        f"scan with: oscap xccdf eval --profile {_profile_id(cfg.profile)} "
        f"--report report.html {resolved.path}",
    )
    return 0


def _identity(text):
    try:
        return OSIdentity.parse(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser():
    parser = argparse.ArgumentParser(
        prog='stigkit',
        description=textwrap.dedent("""
            Apply, enforce and validate DISA STIG compliance with Ansible and
            OpenSCAP, providing a SCAP datastream for the target OS when
            scap-security-guide doesn't ship one.
        """),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    verbs = parser.add_subparsers(dest='verb', metavar='VERB', required=True)

    p = verbs.add_parser('apply', help="apply the STIG role with ansible-playbook")
    p.add_argument(
        '--check', '--dry-run', action='store_true',
        help="run in check mode, make no changes",
    )
    p.add_argument('--tags', help="comma-separated role tags to apply")
    p.add_argument('--limit', metavar='HOST', help="limit to a specific host")
    p.set_defaults(func=cmd_apply)

    p = verbs.add_parser('enforce', help="enforce the STIG, saving an XML compliance report")
    p.add_argument(
        '--xml', default='stig-compliance-report.xml', metavar='PATH',
        help="where the playbook saves the XML report (default: %(default)s)",
    )
    p.set_defaults(func=cmd_enforce)

    p = verbs.add_parser('validate', help="check STIG compliance with the role in check mode")
    p.add_argument('host', nargs='?', help="host or group to validate (default: all)")
    p.set_defaults(func=cmd_validate)

    p = verbs.add_parser('scan', help="evaluate (or remediate) with OpenSCAP")
    p.add_argument('host', nargs='?', help="scan this remote host over ssh")
    p.add_argument('--remote', action='store_true', help="HOST is a remote host")
    p.add_argument('--profile', help="XCCDF profile (default: from configuration)")
    p.add_argument(
        '--remediate', action='store_true',
        help="remediate failing rules (local scans only)",
    )
    formats = p.add_mutually_exclusive_group()
    formats.add_argument('--html', action='store_true', help="produce only the HTML report")
    formats.add_argument('--xml', action='store_true', help="produce only the XML results")
    p.set_defaults(func=cmd_scan)

    p = verbs.add_parser('datastream', help="find or create the target OS datastream")
    p.add_argument(
        '--target', type=_identity, metavar='ID',
        help="target OS identity, ie. centos10 (default: from configuration)",
    )
    p.add_argument(
        '--relabel', action='store_true',
        help="rewrite the borrowed content to the target OS identity",
    )
    p.add_argument(
        '--force', action='store_true',
        help="re-create an adapted datastream without asking",
    )
    p.add_argument('--mirror', metavar='DIR', help="also make it available in DIR")
    p.set_defaults(func=cmd_datastream)

    return parser


def _check_scan_args(parser, args, cfg):
    if args.remote and not args.host:
        parser.error("--remote needs a HOST")
    if args.host and not args.remote and not cfg.implicit_remote:
        parser.error(f"use --remote to scan '{args.host}'")
    if args.host and args.remediate:
        parser.error("--remediate is only supported for local scans")


def main(argv=None, *, runner=None, input_func=input):
    parser = build_parser()
    args = parser.parse_args(argv)
    runner = runner or util.ToolRunner()

    try:
        cfg = config.load()
        if args.verb == 'scan':
            _check_scan_args(parser, args, cfg)
            args.profile = args.profile or cfg.profile
        return args.func(args, cfg, runner, input_func)
    except UserAborted:
        return 1
    except StigkitError as e:
        util.error(str(e))
        return 1
