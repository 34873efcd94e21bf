import xml.etree.ElementTree as ET

import pytest

from stigkit import rewrite
from stigkit.util import EnvironmentCapabilities
from stigkit.versions import OSIdentity, Product, PRODUCTS
from stigkit.errors import RewriteError

CENTOS10 = OSIdentity('centos', 10)
RHEL10 = OSIdentity('rhel', 10)

RHEL10_MARKERS = ['rhel10', 'RHEL 10', 'Red Hat Enterprise Linux 10']


def test_marker_pairs_longest_first():
    pairs = rewrite.marker_pairs(RHEL10, CENTOS10)
    assert pairs == [
        ('Red Hat Enterprise Linux 10', 'CentOS Stream 10'),
        ('RHEL 10', 'CentOS 10'),
        ('rhel10', 'centos10'),
    ]


def test_marker_pairs_same_identity():
    assert rewrite.marker_pairs(RHEL10, RHEL10) == []


def test_substitution_single_pass():
    # 'b' -> 'a' must not be matched again by 'a' -> 'c'
    subst = rewrite.Substitution([('a', 'b'), ('b', 'a')])
    assert subst('abba') == ('baab', 4)
    assert subst(None) == (None, 0)


def test_structural_rewrite(tmp_path, make_ds):
    source = make_ds(tmp_path / 'ssg-rhel10-ds.xml', RHEL10)
    dest = tmp_path / 'ssg-centos10-ds.xml'
    data, res = rewrite.StructuralRewrite().apply(source, dest, RHEL10, CENTOS10)

    assert res.engine == 'structural'
    assert res.replaced > 0
    assert res.remaining == 0
    text = data.decode()
    for marker in RHEL10_MARKERS:
        assert marker not in text
    # attribute, text, tail and comment
    assert 'ssg-centos10-xccdf.xml' in text
    assert 'DISA STIG for CentOS Stream 10' in text
    assert '</xccdf-1.2:em> centos10 systems' in text
    assert '<!-- profiles for CentOS 10 -->' in text
    # namespace prefixes kept, still well-formed
    assert '<ds:data-stream-collection' in text
    root = ET.fromstring(data)
    assert root.tag == f'{{{rewrite.DS_NS}}}data-stream-collection'


def test_rewrite_leaves_original(tmp_path, make_ds):
    doc = rewrite.DatastreamDocument.load(make_ds(tmp_path / 'ds.xml', RHEL10))
    new = rewrite.rewrite(doc, RHEL10, CENTOS10)
    assert 'rhel10' in doc.collection_id
    assert 'centos10' in new.collection_id
    internal, external = new.unresolved_refs()
    assert internal == []
    assert external == []


def test_structural_rewrite_keeps_prolog(tmp_path):
    source = tmp_path / 'ds.xml'
    source.write_text(
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<!DOCTYPE doc SYSTEM "doc.dtd">\n'
        '<?xml-stylesheet type="text/xsl" href="rhel10.xsl"?>\n'
        '<!-- content for RHEL 10 -->\n'
        '<doc id="rhel10">rhel10</doc>\n'
        '<!-- end of RHEL 10 content -->\n'
    )
    data, res = rewrite.StructuralRewrite().apply(source, source, RHEL10, CENTOS10)
    text = data.decode()
    assert res.remaining == 0
    assert '<!DOCTYPE doc SYSTEM "doc.dtd">' in text
    assert '<?xml-stylesheet type="text/xsl" href="centos10.xsl"?>' in text
    assert '<!-- content for CentOS 10 -->' in text
    assert '<!-- end of CentOS 10 content -->' in text
    assert text.index('content for CentOS 10') < text.index('<doc ')
    assert text.index('end of CentOS 10') > text.index('</doc>')
    doc = rewrite.DatastreamDocument.from_bytes(data)
    assert doc.doctype == ('doc', None, 'doc.dtd')
    assert len(doc.prolog) == 3
    assert len(doc.epilog) == 1
    assert doc.root.text == 'centos10'


def test_longest_marker_wins(tmp_path):
    products = dict(PRODUCTS)
    products['acme'] = Product('acme{major}', 'ACME {major}', 'ACME {major} Enterprise Server')
    acme10 = OSIdentity('acme', 10)
    source = tmp_path / 'ds.xml'
    source.write_text(
        '<doc title="ACME 10 Enterprise Server">'
        'ACME 10 Enterprise Server, or ACME 10 for short'
        '</doc>'
    )
    data, _ = rewrite.StructuralRewrite().apply(source, source, acme10, RHEL10, products)
    text = data.decode()
    assert 'RHEL 10 Enterprise Server' not in text
    assert text.count('Red Hat Enterprise Linux 10') == 2
    assert 'or RHEL 10 for short' in text


def test_unparseable_source(tmp_path):
    source = tmp_path / 'ds.xml'
    source.write_text('<ds:data-stream-collection rhel10')
    with pytest.raises(RewriteError, match='cannot parse'):
        rewrite.StructuralRewrite().apply(source, source, RHEL10, CENTOS10)


def test_broken_internal_reference(tmp_path):
    source = tmp_path / 'ds.xml'
    source.write_text(
        f'<ds:data-stream-collection xmlns:ds="{rewrite.DS_NS}"'
        f' xmlns:xlink="{rewrite.XLINK_NS}" id="rhel10">'
        '<ds:data-stream><ds:checklists>'
        '<ds:component-ref id="cref" xlink:href="#nonexistent"/>'
        '</ds:checklists></ds:data-stream>'
        '</ds:data-stream-collection>'
    )
    with pytest.raises(RewriteError, match='#nonexistent'):
        rewrite.StructuralRewrite().apply(source, source, RHEL10, CENTOS10)


def test_textual_rewrite(tmp_path, make_ds):
    source = make_ds(tmp_path / 'ds.xml', RHEL10)
    # a byte that isn't valid UTF-8 must survive untouched
    source.write_bytes(source.read_bytes() + b'<!-- \xff -->\n')
    data, res = rewrite.TextualRewrite().apply(source, source, RHEL10, CENTOS10)
    assert res.engine == 'textual'
    assert res.remaining == 0
    assert b'\xff' in data
    assert rewrite.PROVENANCE.encode() in data
    assert data.startswith(b'<?xml version="1.0" encoding="UTF-8"?>\n<!--')
    for marker in RHEL10_MARKERS:
        assert marker.encode() not in data


def test_engine_for():
    assert isinstance(rewrite.engine_for(EnvironmentCapabilities()), rewrite.StructuralRewrite)
    env = EnvironmentCapabilities(structural_parser=False)
    assert isinstance(rewrite.engine_for(env), rewrite.TextualRewrite)
    env = EnvironmentCapabilities(structural_parser=False, textual_substitution=False)
    assert rewrite.engine_for(env) is None


def test_is_relabeled(tmp_path, make_ds):
    plain = make_ds(tmp_path / 'ds.xml', RHEL10)
    assert not rewrite.is_relabeled(plain)
    assert not rewrite.is_relabeled(tmp_path / 'missing.xml')
    data, _ = rewrite.StructuralRewrite().apply(plain, plain, RHEL10, CENTOS10)
    relabeled = tmp_path / 'relabeled.xml'
    relabeled.write_bytes(data)
    assert rewrite.is_relabeled(relabeled)


@pytest.mark.parametrize('engine', [rewrite.StructuralRewrite, rewrite.TextualRewrite])
def test_relabeled_from(tmp_path, make_ds, engine):
    plain = make_ds(tmp_path / 'ds.xml', RHEL10)
    assert rewrite.relabeled_from(plain) is None
    assert rewrite.relabeled_from(tmp_path / 'missing.xml') is None
    data, _ = engine().apply(plain, plain, RHEL10, CENTOS10)
    relabeled = tmp_path / 'relabeled.xml'
    relabeled.write_bytes(data)
    assert rewrite.relabeled_from(relabeled) == RHEL10
