"""
Relabeling SCAP datastreams from one OS identity to another.

A datastream borrowed from a different OS (RHEL 10 content used on CentOS
Stream 10) works with oscap as-is, but everything in it still says
'rhel10' / 'RHEL 10' / 'Red Hat Enterprise Linux 10' - in component ids,
xlink:href references, profile titles, descriptions, CPE names, etc.
The rewrite replaces all of these consistently (ids AND the references
pointing at them), so the document stays internally consistent.

Only labels change, the actual rule logic stays the same, so rewritten
content is never 'exact' for the target OS.

There are two engines with the same apply() interface:
 - StructuralRewrite parses the XML with ElementTree and rewrites every
   attribute value, text and tail, then verifies the output re-parses and
   all internal component references still resolve
 - TextualRewrite does a line-by-line substitution over the raw file,
   for environments without an XML parser, with no such guarantees
engine_for() picks one based on EnvironmentCapabilities.
"""

import re
import copy
import collections
import xml.etree.ElementTree as ET
from pathlib import Path

from stigkit import util
from stigkit.versions import OSIdentity
from stigkit.errors import RewriteError

# must not contain any OS identity marker, it would get flagged as leftover,
# hence 'rhel-9' and not 'rhel9' for the source identity
PROVENANCE = 'relabeled by stigkit'
_PROVENANCE_SOURCE = re.compile(rb'relabeled by stigkit from ([a-z]+-[0-9]+)')

DS_NS = 'http://scap.nist.gov/schema/scap/source/1.2'
XLINK_NS = 'http://www.w3.org/1999/xlink'

RewriteResult = collections.namedtuple(
    'RewriteResult',
    [
        # str: 'structural' or 'textual'
        'engine',
        # int: number of marker occurrences replaced
        'replaced',
        # int: source markers still present in the output (ie. inside tag names)
        'remaining',
    ],
)


def marker_pairs(src, dst, products=None):
    """
    Return (old, new) marker pairs for relabeling 'src' OSIdentity content
    as 'dst', longest 'old' first.

    The ordering matters when one marker is a substring of another - the
    longer one has to win, or its embedded shorter part would get replaced
    on its own, leaving a hybrid of both identities.
    """
    pairs = {}
    for old, new in zip(src.markers(products), dst.markers(products)):
        if old != new:
            pairs[old] = new
    return sorted(pairs.items(), key=lambda pair: len(pair[0]), reverse=True)


class Substitution:
    """
    Single-pass find/replace of all markers at once.

    A regex alternation tries the alternatives left to right at every
    position, so with longest-first ordering the longest marker wins, and
    because it's one pass, replaced text is never matched again.
    """

    def __init__(self, pairs):
        self.mapping = dict(pairs)
        if self.mapping:
            self.pattern = re.compile('|'.join(re.escape(old) for old, _ in pairs))
        else:
            self.pattern = None

    def __call__(self, text):
        """Return (new_text, number_of_replacements)."""
        if not text or not self.pattern:
            return (text, 0)
        return self.pattern.subn(lambda m: self.mapping[m.group(0)], text)

    def count(self, text):
        if not text or not self.pattern:
            return 0
        return sum(1 for _ in self.pattern.finditer(text))


def provenance(src):
    """Return the comment marking a file relabeled from 'src' OSIdentity."""
    return f'<!-- {PROVENANCE} from {src.distro}-{src.major}, rule content unchanged -->'


class _Target:
    """
    ElementTree parser target keeping comments and processing instructions,
    and remembering the namespace prefixes the document declared.

    Comments and processing instructions outside the root element, and
    the DOCTYPE, are collected separately, the tree can't hold them.
    """

    def __init__(self):
        self._builder = ET.TreeBuilder(insert_comments=True, insert_pis=True)
        self._depth = 0
        self._seen_root = False
        self.namespaces = []
        self.doctype_decl = None
        self.prolog = []
        self.epilog = []

    def _outside(self, elem):
        (self.epilog if self._seen_root else self.prolog).append(elem)

    def start_ns(self, prefix, uri):
        self.namespaces.append((prefix, uri))

    def doctype(self, name, pubid, system):
        self.doctype_decl = (name, pubid, system)

    def start(self, tag, attrib):
        self._depth += 1
        self._seen_root = True
        return self._builder.start(tag, attrib)

    def end(self, tag):
        self._depth -= 1
        return self._builder.end(tag)

    def data(self, data):
        if self._depth:
            self._builder.data(data)

    def comment(self, text):
        if not self._depth:
            return self._outside(ET.Comment(text))
        return self._builder.comment(text)

    def pi(self, target, text=None):
        if not self._depth:
            return self._outside(ET.PI(target, text))
        return self._builder.pi(target, text)

    def close(self):
        return self._builder.close()


class DatastreamDocument:
    """
    A parsed SCAP source datastream (or any XML document) with the
    namespace prefixes it was written with.

    'prolog' and 'epilog' are the comments and processing instructions
    before and after the root element, 'doctype' is (name, pubid, system)
    or None. An internal DTD subset is not kept.
    """

    def __init__(self, root, path=None, namespaces=(), prolog=(), epilog=(), doctype=None):
        self.root = root
        self.path = Path(path) if path else None
        self.namespaces = list(namespaces)
        self.prolog = list(prolog)
        self.epilog = list(epilog)
        self.doctype = doctype

    @classmethod
    def _parse(cls, chunks, path=None):
        target = _Target()
        parser = ET.XMLParser(target=target)
        for chunk in chunks:
            parser.feed(chunk)
        root = parser.close()
        return cls(
            root, path, target.namespaces, target.prolog, target.epilog, target.doctype_decl,
        )

    @classmethod
    def load(cls, path):
        def read_chunks():
            with open(path, 'rb') as f:
                while chunk := f.read(65536):
                    yield chunk
        return cls._parse(read_chunks(), path)

    @classmethod
    def from_bytes(cls, data, path=None):
        return cls._parse([data], path)

    def copy(self):
        return DatastreamDocument(
            copy.deepcopy(self.root), self.path, self.namespaces,
            copy.deepcopy(self.prolog), copy.deepcopy(self.epilog), self.doctype,
        )

    def iter(self):
        """Iterate over all elements, including those outside the root."""
        yield from self.prolog
        yield from self.root.iter()
        yield from self.epilog

    @property
    def collection_id(self):
        return self.root.get('id')

    def component_refs(self):
        """Return a list of (id, href) of all ds:component-ref elements."""
        return [
            (ref.get('id'), ref.get(f'{{{XLINK_NS}}}href'))
            for ref in self.root.iter(f'{{{DS_NS}}}component-ref')
        ]

    def unresolved_refs(self, base_dir=None):
        """
        Return (internal, external) lists of (id, href) component refs that
        don't resolve.

        Internal refs ('#some-id') need a ds:component or ds:extended-component
        of that id in this document, external refs need a file of that name
        next to the document (or in 'base_dir').
        """
        component_tags = {f'{{{DS_NS}}}component', f'{{{DS_NS}}}extended-component'}
        component_ids = {
            elem.get('id') for elem in self.root.iter() if elem.tag in component_tags
        }
        if base_dir is None and self.path:
            base_dir = self.path.parent
        internal = []
        external = []
        for ref_id, href in self.component_refs():
            if not href:
                internal.append((ref_id, href))
            elif href.startswith('#'):
                if href[1:] not in component_ids:
                    internal.append((ref_id, href))
            # remote URLs are resolved by oscap itself
            elif re.match(r'[a-z]+://', href):
                continue
            elif base_dir is None or not (Path(base_dir) / href).exists():
                external.append((ref_id, href))
        return (internal, external)

    def _register_namespaces(self):
        # ElementTree serializes with a global prefix map, teach it the
        # document's own prefixes so the output keeps ds:, xlink:, etc.
        all_qualified = all(
            elem.tag.startswith('{') for elem in self.root.iter() if isinstance(elem.tag, str)
        )
        for prefix, uri in self.namespaces:
            # ns0, ns1 are reserved by ElementTree for auto-generated prefixes
            if re.fullmatch(r'ns\d+', prefix):
                continue
            # an unprefixed default namespace would capture any unqualified
            # elements on re-parse, so only use it if there are none
            if not prefix and not all_qualified:
                continue
            ET.register_namespace(prefix, uri)

    def _doctype_decl(self):
        name, pubid, system = self.doctype
        if pubid:
            return f'<!DOCTYPE {name} PUBLIC "{pubid}" "{system}">'
        if system:
            return f'<!DOCTYPE {name} SYSTEM "{system}">'
        return f'<!DOCTYPE {name}>'

    def serialize(self, header_comment=None):
        """
        Return the document as UTF-8 bytes, with 'header_comment' (a full
        '<!-- ... -->' string) right after the XML declaration.
        """
        self._register_namespaces()
        parts = [b"<?xml version='1.0' encoding='utf-8'?>"]
        if header_comment:
            parts.append(header_comment.encode())
        if self.doctype:
            parts.append(self._doctype_decl().encode())
        parts += [ET.tostring(elem, encoding='utf-8') for elem in self.prolog]
        parts.append(ET.tostring(self.root, encoding='utf-8'))
        parts += [ET.tostring(elem, encoding='utf-8') for elem in self.epilog]
        return b'\n'.join(parts) + b'\n'


def _relabel(doc, subst):
    replaced = 0
    # includes comments and processing instructions
    for elem in doc.iter():
        for key, value in list(elem.attrib.items()):
            value, count = subst(value)
            if count:
                elem.set(key, value)
                replaced += count
        elem.text, count = subst(elem.text)
        replaced += count
        elem.tail, count = subst(elem.tail)
        replaced += count
    return replaced


def rewrite(doc, src, dst, products=None):
    """
    Return a new DatastreamDocument with all 'src' OSIdentity markers
    in 'doc' replaced by 'dst' ones. 'doc' itself is left untouched.
    """
    new = doc.copy()
    _relabel(new, Substitution(marker_pairs(src, dst, products)))
    return new


class StructuralRewrite:
    name = 'structural'

    def apply(self, source, dest, src, dst, products=None):
        """
        Relabel datastream file 'source' from 'src' to 'dst' OSIdentity,
        for later placement at 'dest'.

        Comments and processing instructions around the root element are
        carried over, as is the DOCTYPE name and external ID, but not an
        internal DTD subset. Whitespace between them is normalized.

        Return (bytes, RewriteResult). Raise RewriteError if the source can't
        be parsed, or if the result isn't well-formed or has broken internal
        references.
        """
        try:
            doc = DatastreamDocument.load(source)
        except ET.ParseError as e:
            raise RewriteError(f"cannot parse {source}: {e}") from None

        subst = Substitution(marker_pairs(src, dst, products))
        replaced = _relabel(doc, subst)
        data = doc.serialize(header_comment=provenance(src))

        try:
            result_doc = DatastreamDocument.from_bytes(data, dest)
        except ET.ParseError as e:
            raise RewriteError(f"rewrite produced malformed XML: {e}") from None

        internal, external = result_doc.unresolved_refs()
        if internal:
            refs = ', '.join(href or '<no href>' for _, href in internal)
            raise RewriteError(f"rewrite broke internal component references: {refs}")
        for ref_id, href in external:
            util.warning(f"component {ref_id} refers to missing sibling file {href}")

        remaining = subst.count(data.decode('utf-8', errors='replace'))
        if remaining:
            util.warning(f"{remaining} {src} markers left outside of text and attributes")
        return (data, RewriteResult(self.name, replaced, remaining))


class TextualRewrite:
    name = 'textual'

    def apply(self, source, dest, src, dst, products=None):  # noqa: ARG002
        """
        Like StructuralRewrite.apply(), but substituting line by line over
        the raw file, without parsing it. The output is NOT checked for
        well-formedness, and markers split across lines are left as-is.
        """
        subst = Substitution(marker_pairs(src, dst, products))
        lines = []
        replaced = 0
        # surrogateescape to pass through any bytes that aren't valid UTF-8
        with open(source, encoding='utf-8', errors='surrogateescape', newline='') as f:
            for line in f:
                line, count = subst(line)
                replaced += count
                lines.append(line)
        text = ''.join(lines)

        comment = provenance(src)
        if text.startswith('<?xml') and '?>' in text:
            end = text.index('?>') + 2
            text = f'{text[:end]}\n{comment}{text[end:]}'
        else:
            text = f'{comment}\n{text}'

        util.warning("textual rewrite, the result was not verified to be well-formed")
        remaining = subst.count(text)
        data = text.encode('utf-8', errors='surrogateescape')
        return (data, RewriteResult(self.name, replaced, remaining))


def engine_for(env):
    """
    Return a rewrite engine usable in EnvironmentCapabilities 'env',
    or None if there isn't any.
    """
    if env.structural_parser:
        return StructuralRewrite()
    if env.textual_substitution:
        return TextualRewrite()
    return None


def _head(path):
    try:
        with open(path, 'rb') as f:
            return f.read(512)
    except OSError:
        return b''


def is_relabeled(path):
    """Return True if 'path' was written by one of the rewrite engines."""
    return PROVENANCE.encode() in _head(path)


def relabeled_from(path):
    """
    Return the OSIdentity 'path' was relabeled from, as recorded by
    the rewrite engines, or None.
    """
    match = _PROVENANCE_SOURCE.search(_head(path))
    return OSIdentity.parse(match.group(1).decode()) if match else None
