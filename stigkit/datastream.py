"""
Finding a SCAP datastream for a given OS, or making one available.

scap-security-guide doesn't always ship a datastream for the OS we run on
(ie. CentOS Stream 10 on a system that only has ssg-rhel10-ds.xml or
ssg-rhel9-ds.xml), so the Resolver here
 - probes the candidate locations for the target OS datastream
 - if there is none, installs scap-security-guide (once) and probes again
 - if there is still none, takes the datastream of the first available
   fallback OS and makes it available under the target OS file name,
   by a symlink, a copy, or a relabeled (rewritten) copy

The result says which of these happened, and whether the content is exact
for the target OS (only when it was found as-is) or approximate (borrowed).

Note that nothing here serializes concurrent resolvers on one host - copies
are renamed into place atomically so readers never see partial files, but
two processes creating the same symlink may race.
"""

import os
import re
import enum
import errno
import shutil
import filecmp
import tempfile
import collections
from pathlib import Path

from stigkit import util, rewrite
from stigkit.versions import OSIdentity
from stigkit.errors import NotFound, AdaptationFailed, RewriteError, ToolMissing


class Strategy(enum.Enum):
    DIRECT = 'direct'
    SYMLINK = 'symlink'
    COPY = 'copy'
    REWRITTEN = 'rewrite'


class Fidelity(enum.Enum):
    # content made for the requested OS
    EXACT = 'exact'
    # content of another OS, reused verbatim or only relabeled
    APPROXIMATE = 'approximate'


CandidatePath = collections.namedtuple(
    'CandidatePath',
    [
        # Path: datastream file location
        'path',
        # int: higher is probed first
        'priority',
        # OSIdentity or None: whose datastream it is (None = guess from file name)
        'identity',
    ],
    defaults=[None],
)

AdaptedDatastream = collections.namedtuple(
    'AdaptedDatastream',
    [
        # Path: what to pass to oscap
        'path',
        # Strategy: how 'path' came to be
        'strategy',
        # OSIdentity: whose content 'path' actually has
        'source_identity',
        # Fidelity
        'fidelity',
        # Path: the datastream the content came from ('path' itself if DIRECT)
        'source_path',
    ],
)


class Locator:
    """
    Where datastreams for OS identities live, ie.

        Locator('/usr/share/xml/scap/ssg/content', ['roles/rhel9STIG/files'])

    maps OSIdentity('rhel', 10) to .../content/ssg-rhel10-ds.xml first,
    roles/rhel9STIG/files/ssg-rhel10-ds.xml second.

    The first directory ('content_dir') is also where adapted datastreams
    get created.
    """

    name_template = 'ssg-{identity}-ds.xml'

    def __init__(self, content_dir, search_dirs=()):
        self.content_dir = Path(content_dir)
        self.search_dirs = [Path(x) for x in search_dirs]

    def __repr__(self):
        return f'Locator({str(self.content_dir)!r}, {[str(x) for x in self.search_dirs]!r})'

    def file_name(self, identity):
        return self.name_template.format(identity=identity)

    def path_for(self, identity):
        """Return the deterministic destination path for 'identity'."""
        return self.content_dir / self.file_name(identity)

    def identity_of(self, path):
        """Guess the OSIdentity of a datastream from its file name, or None."""
        prefix, _, suffix = self.name_template.partition('{identity}')
        pattern = re.escape(prefix) + r'([a-z]+[0-9]+)' + re.escape(suffix)
        match = re.fullmatch(pattern, Path(path).name)
        return OSIdentity.parse(match.group(1)) if match else None

    def candidates(self, identities):
        """
        Return CandidatePath entries for all 'identities' (in order) across
        all directories, highest priority first.
        """
        dirs = [self.content_dir, *self.search_dirs]
        paths = [
            (identity, directory / self.file_name(identity))
            for identity in identities
            for directory in dirs
        ]
        total = len(paths)
        return [
            CandidatePath(path, total-i, identity)
            for i, (identity, path) in enumerate(paths)
        ]


def find_first_existing(candidates):
    """
    Return the path of the first of 'candidates' (CandidatePath entries or
    plain paths) that exists and is readable, highest priority first,
    or None.

    A dangling symlink doesn't exist. An error when checking one candidate
    is logged and the candidate skipped.
    """
    candidates = [
        c if isinstance(c, CandidatePath) else CandidatePath(Path(c), 0)
        for c in candidates
    ]
    # stable sort, equal priorities keep their given order
    for candidate in sorted(candidates, key=lambda c: c.priority, reverse=True):
        path = Path(candidate.path)
        try:
            # stat() follows symlinks, so a dangling one fails here
            if path.is_file() and os.access(path, os.R_OK):
                return path
        except OSError as e:
            util.warning(f"skipping {path}: {e}")
    return None


def _symlink_target(source, dest):
    # relative within one directory, so the link survives moving the tree
    if Path(source).parent.resolve() == Path(dest).parent.resolve():
        return Path(source).name
    return str(Path(source).absolute())


def _atomic_symlink(target, dest):
    """
    Point symlink 'dest' at 'target', replacing whatever 'dest' was
    in one rename.
    """
    dest = Path(dest)
    tmp = dest.with_name(f'.{dest.name}.{os.getpid()}.tmp')
    os.symlink(target, tmp)
    try:
        os.replace(tmp, dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def atomic_write(dest, writer):
    """
    Create 'dest' by calling 'writer(fileobj)' on a temporary file in the
    same directory, then renaming it over 'dest'.

    A reader sees either the old 'dest' (or none), or the complete new one,
    never a partially written file.
    """
    dest = Path(dest)
    fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f'.{dest.name}.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as f:
            writer(f)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o644)
        os.replace(tmp, dest)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class _Infeasible(Exception):
    """A strategy can't be used in this environment."""


class Resolver:
    """
    Resolves a datastream for a target OSIdentity using a Locator.

    'runner' (util.ToolRunner) is used for sudo fallbacks, 'provisioner'
    (dnf.Provisioner) to install missing content; both are optional.
    """

    def __init__(self, locator, *, runner=None, provisioner=None, products=None):
        self.locator = locator
        self.runner = runner
        self.provisioner = provisioner
        self.products = products

    def _candidates_for(self, identity, candidates):
        return [
            c for c in candidates
            if (c.identity or self.locator.identity_of(c.path)) == identity
        ]

    def _find_source(self, fallbacks, candidates):
        for identity in fallbacks:
            path = find_first_existing(self._candidates_for(identity, candidates))
            if path:
                return (identity, path)
        return (None, None)

    def _identify(self, path, candidates):
        """Return the OSIdentity of the candidate at 'path', or a guess from its name."""
        real = Path(path).resolve()
        for c in candidates:
            if Path(c.path).resolve() == real:
                return c.identity or self.locator.identity_of(c.path)
        return self.locator.identity_of(real)

    def _prior_adaptation(self, dest, others):
        """
        Return (Strategy, source_path, source_identity) of an earlier
        adaptation at 'dest', or None if 'dest' looks like a real (native)
        datastream. 'source_path' and 'source_identity' may be None when
        the source can't be found anymore.
        """
        if dest.is_symlink():
            real = dest.resolve()
            return (Strategy.SYMLINK, real, self._identify(real, others))
        if rewrite.is_relabeled(dest):
            identity = rewrite.relabeled_from(dest)
            source = None
            if identity:
                source = find_first_existing(self._candidates_for(identity, others))
            return (Strategy.REWRITTEN, source, identity)
        for c in others:
            path = Path(c.path)
            if not (path.is_file() and os.access(path, os.R_OK)):
                continue
            if filecmp.cmp(dest, path, shallow=False):
                return (Strategy.COPY, path, c.identity or self.locator.identity_of(path))
        return None

    def resolve(self, target, fallbacks, env, *, candidates=None, overwrite=False, relabel=False):
        """
        Return an AdaptedDatastream for OSIdentity 'target'.

        'fallbacks' are OSIdentity entries to borrow content from, in order
        of preference. 'env' is util.EnvironmentCapabilities.

        'candidates' are CandidatePath entries to probe, by default all
        Locator paths of 'target' and 'fallbacks'. The destination path of
        'target' is always probed first.

        'overwrite' decides what to do with a datastream adapted by an earlier
        run: a bool, or a function called with the path, returning a bool.

        'relabel' prefers rewriting the content to the target identity over
        a symlink/copy which keep the source labels.
        """
        dest = self.locator.path_for(target)
        if candidates is None:
            candidates = self.locator.candidates([target, *fallbacks])
        own = [CandidatePath(dest, max((c.priority for c in candidates), default=0)+1, target)]
        own += self._candidates_for(target, candidates)
        others = [c for c in candidates if c not in own]

        # ask (possibly the user) only once, even if we probe twice
        decisions = {}

        def should_overwrite(path):
            if path not in decisions:
                decisions[path] = bool(overwrite(path) if callable(overwrite) else overwrite)
            return decisions[path]

        provisioned = False
        while True:
            ref = self._probe_existing(target, own, others, fallbacks, should_overwrite)
            if ref:
                return ref
            source_identity, source = self._find_source(fallbacks, others)
            if source:
                break
            if provisioned or not self.provisioner:
                probed = [c.path for c in own + others]
                raise NotFound(f"no datastream for {target} or any of its fallbacks", probed)
            provisioned = True
            util.warning(f"no datastream found for {target}, installing content")
            try:
                self.provisioner.install()
            except ToolMissing as e:
                util.error(str(e))

        util.log(f"using {source_identity} datastream {source} for {target}")

        # a dangling symlink left from an earlier run, source since removed;
        # the strategies replace it anyway, so failing to remove it is fine
        if dest.is_symlink() and not dest.exists():
            util.log(f"removing stale symlink {dest}")
            try:
                dest.unlink()
            except OSError as e:
                util.warning(f"could not remove {dest}: {e}")

        if relabel:
            order = [Strategy.REWRITTEN, Strategy.SYMLINK, Strategy.COPY]
        else:
            order = [Strategy.SYMLINK, Strategy.COPY, Strategy.REWRITTEN]

        attempts = []
        for strategy in order:
            try:
                self._adapt(strategy, source, dest, source_identity, target, env)
            except (OSError, RewriteError, _Infeasible) as e:
                util.warning(f"{strategy.value} failed: {e}")
                attempts.append((strategy, str(e)))
                continue
            if relabel and strategy != Strategy.REWRITTEN:
                util.warning(f"could not relabel, {dest} keeps {source_identity} labels")
            util.log(f"created {dest} via {strategy.value}")
            return AdaptedDatastream(
                dest, strategy, source_identity, Fidelity.APPROXIMATE, source,
            )
        raise AdaptationFailed(attempts)

    def _probe_existing(self, target, own, others, fallbacks, should_overwrite):
        found = find_first_existing(own)
        if not found:
            return None
        prior = self._prior_adaptation(found, others)
        if not prior:
            util.log(f"found native {target} datastream: {found}")
            return AdaptedDatastream(found, Strategy.DIRECT, target, Fidelity.EXACT, found)

        strategy, source, source_identity = prior
        if should_overwrite(found):
            util.log(f"re-creating {found}, previously made via {strategy.value}")
            return None
        util.warning(f"keeping {found}, previously made via {strategy.value}")
        # borrowed content of unknown origin, the best guess is the first fallback
        if source_identity is None:
            source_identity = fallbacks[0] if fallbacks else target
            util.warning(f"cannot tell where {found} came from, assuming {source_identity}")
        return AdaptedDatastream(
            found, strategy, source_identity, Fidelity.APPROXIMATE, source or found,
        )

    def _adapt(self, strategy, source, dest, src, dst, env):
        if strategy == Strategy.SYMLINK:
            self._symlink(source, dest, env)
        elif strategy == Strategy.COPY:
            def copy_source(f):
                with open(source, 'rb') as f_src:
                    shutil.copyfileobj(f_src, f)
            self._write(dest, copy_source, env)
        else:
            engine = rewrite.engine_for(env)
            if not engine:
                raise _Infeasible("no XML parser and textual substitution not allowed")
            data, result = engine.apply(source, dest, src, dst, self.products)
            util.log(f"{result.engine} rewrite replaced {result.replaced} markers")
            self._write(dest, lambda f: f.write(data), env)

    def _symlink(self, source, dest, env):
        if not env.symlinks:
            raise _Infeasible("symlinks not supported")
        target = _symlink_target(source, dest)
        try:
            _atomic_symlink(target, dest)
        except PermissionError:
            if not (env.sudo and self.runner):
                raise
            # -n: no password prompt, -f: replace, -T: never link inside a dir
            util.log(f"{dest.parent} not writable, using sudo")
            ret = self.runner.run('sudo', '-n', 'ln', '-sfT', target, str(dest))
            if ret.returncode != 0:
                raise _Infeasible(f"sudo ln failed: {(ret.stderr or '').strip()}") from None

    def _write(self, dest, writer, env):
        try:
            atomic_write(dest, writer)
        except PermissionError:
            if not (env.sudo and self.runner):
                raise
            util.log(f"{dest.parent} not writable, using sudo")
            # write where we can, then install + rename as root, still
            # atomic from the point of view of readers of 'dest'
            with tempfile.TemporaryDirectory() as tmpdir:
                staged = Path(tmpdir) / dest.name
                with open(staged, 'wb') as f:
                    writer(f)
                tmp_dest = dest.with_name(f'.{dest.name}.{os.getpid()}.tmp')
                cmds = [
                    ['install', '-m', '0644', str(staged), str(tmp_dest)],
                    ['mv', '-f', '-T', str(tmp_dest), str(dest)],
                ]
                for cmd in cmds:
                    ret = self.runner.run('sudo', '-n', *cmd)
                    if ret.returncode != 0:
                        self.runner.run('sudo', '-n', 'rm', '-f', str(tmp_dest))
                        raise _Infeasible(
                            f"sudo {cmd[0]} failed: {(ret.stderr or '').strip()}",
                        ) from None


def mirror(resolved, directory):
    """
    Also make 'resolved' (AdaptedDatastream) available in 'directory',
    ie. the Ansible role's files/, as a symlink or, failing that, a copy.
    Return the created path.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    dest = directory / resolved.path.name
    if dest.resolve() == Path(resolved.path).resolve():
        return dest
    source = Path(resolved.path).absolute()
    try:
        _atomic_symlink(str(source), dest)
    except OSError as e:
        if e.errno not in (errno.EPERM, errno.EACCES, errno.EXDEV, errno.ENOTSUP, errno.EROFS):
            raise
        util.warning(f"cannot symlink into {directory} ({e}), copying")
        with open(source, 'rb') as f_src:
            atomic_write(dest, lambda f: shutil.copyfileobj(f_src, f))
    util.log(f"also available as {dest}")
    return dest
