import pytest

from collector.checksum import (
    FILE_MODIFIED_FIELD,
    FILE_SIZE_FIELD,
    FieldsMetadataChecksummer,
    HashDocumentChecksummer,
    LastModifiedMetadataChecksummer,
    MD5DocumentChecksummer,
)
from collector.utils import ChecksumError


def test_md5_document_checksum():
    cs = MD5DocumentChecksummer()
    assert cs.create_document_checksum(b"hello") == "5d41402abc4b2a76b9719d911017c592"
    # str is hashed as utf-8
    assert cs.create_document_checksum("hello") == cs.create_document_checksum(b"hello")
    assert cs.create_document_checksum(b"") == "d41d8cd98f00b204e9800998ecf8427e"
    assert cs.create_document_checksum(None) is None


def test_hash_document_checksummer_rejects_bad_input():
    with pytest.raises(ValueError):
        HashDocumentChecksummer("not-a-hash")
    with pytest.raises(ChecksumError):
        MD5DocumentChecksummer().create_document_checksum(12345)
    assert len(HashDocumentChecksummer("sha256").create_document_checksum(b"x")) == 64


def test_metadata_checksum_is_order_and_case_insensitive():
    cs = FieldsMetadataChecksummer(fields=("Last-Modified", "ETag"))
    a = cs.create_metadata_checksum({"ETag": "abc", "Last-Modified": "Mon", "Other": 1})
    b = cs.create_metadata_checksum({"last-modified": "Mon", "etag": "abc"})
    assert a == b
    assert a != cs.create_metadata_checksum({"ETag": "abd", "Last-Modified": "Mon"})


def test_metadata_checksum_none_when_no_fields():
    cs = FieldsMetadataChecksummer(fields=("ETag",))
    assert cs.create_metadata_checksum({}) is None
    assert cs.create_metadata_checksum({"Content-Type": "text/html"}) is None
    assert cs.create_metadata_checksum({"ETag": None}) is None
    assert cs.create_metadata_checksum(None) is None
    with pytest.raises(ChecksumError):
        cs.create_metadata_checksum(["ETag", "x"])


def test_metadata_checksum_case_sensitive_and_lists():
    cs = FieldsMetadataChecksummer(fields=("ETag",), case_sensitive=True)
    assert cs.create_metadata_checksum({"etag": "x"}) is None
    multi = cs.create_metadata_checksum({"ETag": ["x", "y"]})
    assert multi is not None and multi != cs.create_metadata_checksum({"ETag": "x"})


def test_last_modified_default_covers_file_system_fields():
    cs = LastModifiedMetadataChecksummer(keep=True)
    assert cs.keep is True
    assert cs.target_field == "collector.metadata-checksum"
    one = cs.create_metadata_checksum({FILE_SIZE_FIELD: 10, FILE_MODIFIED_FIELD: 1})
    two = cs.create_metadata_checksum({FILE_SIZE_FIELD: 10, FILE_MODIFIED_FIELD: 2})
    assert one and two and one != two
