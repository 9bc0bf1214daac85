import pytest

from app.services.errors import ArchiveLimitError, CorruptInputError
from app.services.extraction import iter_documents, split_upload

from factories import make_pdf, make_zip


class CountingSplitter:
    """Splits every document into ``parts`` identical parts."""

    def __init__(self, parts: int):
        self.parts = parts

    def split(self, content, origin):
        return [content] * self.parts


def test_single_pdf_is_one_candidate(extractor):
    candidates = split_upload(make_pdf("EMP001"), "january.pdf", extractor=extractor)
    assert len(candidates) == 1
    assert candidates[0].identifier == "EMP001"
    assert candidates[0].origin == "january.pdf"
    assert candidates[0].identified


def test_zip_entries_in_archive_order_and_non_pdf_ignored(extractor):
    upload = make_zip([
        ("b.pdf", make_pdf("EMP002")),
        ("notes.txt", b"ignore me"),
        ("folder/", b""),
        ("folder/a.pdf", make_pdf("EMP001")),
        ("photo.PNG", b"\x89PNG"),
    ])
    candidates = split_upload(upload, "batch.zip", extractor=extractor)
    assert [c.identifier for c in candidates] == ["EMP002", "EMP001"]
    assert [c.origin for c in candidates] == ["b.pdf", "folder/a.pdf"]


def test_nested_zip_origins_are_composite(extractor):
    inner = make_zip([("payslip.pdf", make_pdf("EMP002"))])
    upload = make_zip([("payslip.pdf", make_pdf("EMP001")), ("inner.zip", inner)])
    candidates = split_upload(upload, "outer.ZIP", extractor=extractor)
    assert [c.origin for c in candidates] == ["payslip.pdf", "inner.zip::payslip.pdf"]


def test_same_named_entries_in_different_folders_keep_distinct_origins(extractor):
    inner = make_zip([("march/a.pdf", make_pdf("EMP003"))])
    upload = make_zip([
        ("january/a.pdf", make_pdf("EMP001")),
        ("february/a.pdf", make_pdf("EMP002")),
        ("archive/inner.zip", inner),
    ])
    candidates = split_upload(upload, "batch.zip", extractor=extractor)
    assert [c.origin for c in candidates] == [
        "january/a.pdf",
        "february/a.pdf",
        "archive/inner.zip::march/a.pdf",
    ]


def test_missing_identifier_uses_fallback(extractor):
    candidates = split_upload(make_pdf(None), "x.pdf", extractor=extractor, fallback_identifier="IPPIS4536")
    assert candidates[0].identifier == "IPPIS4536"
    assert candidates[0].identified is False


def test_splitter_parts_get_numbered_origins(extractor):
    candidates = split_upload(make_pdf("EMP001"), "x.pdf", extractor=extractor, splitter=CountingSplitter(2))
    assert [c.origin for c in candidates] == ["x.pdf#1", "x.pdf#2"]


def test_corrupt_zip_is_fatal(extractor):
    with pytest.raises(CorruptInputError):
        split_upload(b"PK\x03\x04 definitely not a zip", "batch.zip", extractor=extractor)


def test_document_without_pdf_signature_is_fatal(extractor):
    upload = make_zip([("fake.pdf", b"just text")])
    with pytest.raises(CorruptInputError) as exc:
        split_upload(upload, "batch.zip", extractor=extractor)
    assert exc.value.details["origin"] == "fake.pdf"


def test_nesting_depth_limit(extractor):
    level3 = make_zip([("deep.pdf", make_pdf("EMP001"))])
    level2 = make_zip([("l3.zip", level3)])
    upload = make_zip([("l2.zip", level2)])
    # top-level archive is depth 1, so three levels fit in max_depth=3
    assert len(split_upload(upload, "u.zip", extractor=extractor, max_depth=3)) == 1
    with pytest.raises(ArchiveLimitError):
        split_upload(upload, "u.zip", extractor=extractor, max_depth=2)


def test_total_size_limit(extractor):
    upload = make_zip([("a.pdf", make_pdf("EMP001") + b" " * 5000), ("b.pdf", make_pdf("EMP002") + b" " * 5000)])
    with pytest.raises(ArchiveLimitError):
        split_upload(upload, "u.zip", extractor=extractor, max_total_bytes=8000)


def test_archive_limit_is_a_corrupt_input_error():
    assert issubclass(ArchiveLimitError, CorruptInputError)


def test_iter_documents_is_lazy():
    upload = make_zip([("a.pdf", make_pdf("EMP001")), ("bad.pdf", b"nope")])
    documents = iter_documents(upload, "u.zip")
    first = next(documents)
    assert first.origin == "a.pdf"
    with pytest.raises(CorruptInputError):
        next(documents)
