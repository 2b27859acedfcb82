import pytest

from collector.filters import (
    DomainReferenceFilter,
    ExtensionReferenceFilter,
    FilterChain,
    MaxSizeDocumentFilter,
    RegexDocumentFilter,
    RegexMetadataFilter,
    RegexReferenceFilter,
    get_base_domain,
)
from collector.models import FetchedDocument


def test_empty_chain_accepts():
    res = FilterChain.for_references([]).evaluate("http://x/")
    assert res.accepted and res.filter_name is None


def test_first_rejection_wins_and_short_circuits():
    calls = []

    class Spy:
        name = "spy"

        def accept_reference(self, ref):
            calls.append(ref)
            return True

    chain = FilterChain.for_references([RegexReferenceFilter("private", "EXCLUDE"), Spy()])
    res = chain.evaluate("https://ex.com/private/a")
    assert res.rejected
    assert "private" in res.filter_name
    assert calls == []

    assert chain.evaluate("https://ex.com/public").accepted
    assert calls == ["https://ex.com/public"]


def test_raising_filter_becomes_rejection():
    class Broken:
        def accept_reference(self, ref):
            raise KeyError("oops")

    res = FilterChain.for_references([Broken()]).evaluate("x")
    assert res.rejected
    assert res.filter_name == "Broken"
    assert "oops" in res.reason


def test_chain_checks_filter_interface():
    with pytest.raises(TypeError):
        FilterChain.for_documents([RegexReferenceFilter("x")])


def test_regex_reference_include_exclude():
    inc = RegexReferenceFilter(r"/docs/")
    exc = RegexReferenceFilter(r"/docs/", "exclude")
    assert inc.accept_reference("https://a.com/DOCS/x")
    assert not inc.accept_reference("https://a.com/blog/x")
    assert not exc.accept_reference("https://a.com/docs/x")
    assert not RegexReferenceFilter("/DOCS/", case_sensitive=True).accept_reference("https://a.com/docs/")
    with pytest.raises(ValueError):
        RegexReferenceFilter("x", "MAYBE")


def test_extension_filter():
    f = ExtensionReferenceFilter([".PDF", "zip"])
    assert not f.accept_reference("https://a.com/file.pdf?x=1")
    assert not f.accept_reference("/tmp/archive.ZIP")
    assert f.accept_reference("https://a.com/page.html")
    assert f.accept_reference("https://a.com/")
    only = ExtensionReferenceFilter(["md"], "INCLUDE")
    assert only.accept_reference("notes/readme.md")
    assert not only.accept_reference("notes/readme")


def test_domain_filter_uses_registrable_domain():
    assert get_base_domain("www.shop.example.co.uk") == "example.co.uk"
    assert get_base_domain("localhost") == "localhost"

    f = DomainReferenceFilter(["example.com"])
    assert f.accept_reference("https://blog.example.com/post")
    assert f.accept_reference("http://www.example.com")
    assert not f.accept_reference("https://example.org/")
    assert not f.accept_reference("/local/path")


def test_metadata_filter():
    f = RegexMetadataFilter("content-type", r"^text/", "INCLUDE")
    assert f.accept_metadata("r", {"Content-Type": "text/html; charset=utf-8"})
    assert not f.accept_metadata("r", {"Content-Type": "image/png"})
    assert not f.accept_metadata("r", {})
    assert f.accept_metadata("r", {"content-type": ["image/png", "text/plain"]})


def test_metadata_chain_hands_out_read_only_view():
    seen = {}

    class Peek:
        def accept_metadata(self, ref, metadata):
            seen["meta"] = metadata
            return metadata.get("k") == "v"

    meta = {"k": "v"}
    assert FilterChain.for_metadata([Peek()]).evaluate("r", meta).accepted
    with pytest.raises(TypeError):
        seen["meta"]["k"] = "changed"
    assert meta == {"k": "v"}


def test_document_filters():
    doc = FetchedDocument("r", b"Hello confidential world")
    assert not RegexDocumentFilter("CONFIDENTIAL", "EXCLUDE").accept_document("r", doc)
    assert RegexDocumentFilter("hello").accept_document("r", doc)
    assert MaxSizeDocumentFilter(100).accept_document("r", doc)
    assert not MaxSizeDocumentFilter(5).accept_document("r", doc)
    assert MaxSizeDocumentFilter(0).accept_document("r", FetchedDocument("r", None))
    with pytest.raises(ValueError):
        MaxSizeDocumentFilter(-1)
