import pytest

from conftest import attributed_body
from hearth_sync.decoders import decode_avatar_blob, decode_message_text, detect_mime_type

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 200
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 200
EXTERNAL_NAME = "0B7D3E5A-7C1F-4B43-9E38-2D5F1C0A9B11"


def test_decode_message_text_reads_length_prefixed_text():
    assert decode_message_text(attributed_body(b"hello")) == "hello"


def test_decode_message_text_minimal_fixture():
    blob = b"NSString" + b"\x00" * 5 + bytes([5]) + b"hello"
    assert decode_message_text(blob) == "hello"


@pytest.mark.parametrize("blob", [None, b"", b"streamtyped without marker"])
def test_decode_message_text_missing_input_or_marker(blob):
    assert decode_message_text(blob) == ""


def test_decode_message_text_length_byte_out_of_range():
    assert decode_message_text(b"xxNSString\x01\x94") == ""


def test_decode_message_text_slice_past_end():
    assert decode_message_text(attributed_body(b"hi", length=200)[:-7]) == ""


def test_decode_message_text_zero_length():
    assert decode_message_text(attributed_body(b"", length=0)) == ""


def test_decode_message_text_strips_attachment_placeholder_and_controls():
    text = "\ufffc see this\n".encode("utf-8")
    assert decode_message_text(attributed_body(text)) == "see this"


def test_decode_message_text_utf8():
    text = "café \U0001f600".encode("utf-8")
    assert decode_message_text(attributed_body(text)) == "café \U0001f600"


def test_decode_message_text_truncates_at_replacement_character():
    # a length byte that overruns into the trailing typedstream bytes
    blob = attributed_body(b"ok", length=4)
    assert decode_message_text(blob) == "ok"


def test_decode_message_text_accepts_memoryview():
    assert decode_message_text(memoryview(attributed_body(b"hello"))) == "hello"


@pytest.mark.parametrize(
    "prefix, expected",
    [
        (b"\xff\xd8", "image/jpeg"),
        (b"\x89\x50", "image/png"),
        (b"\x49\x49", "image/tiff"),
        (b"\x4d\x4d", "image/tiff"),
        (b"GIF8", "image/jpeg"),
        (b"", "image/jpeg"),
    ],
)
def test_detect_mime_type(prefix, expected):
    assert detect_mime_type(prefix + b"\x00\x00") == expected


@pytest.mark.parametrize("blob", [None, b"", b"\x01"])
def test_decode_avatar_blob_too_short(blob):
    assert decode_avatar_blob(blob) is None


def test_decode_avatar_blob_inline_image():
    image = decode_avatar_blob(b"\x01" + PNG)
    assert image is not None
    assert image.data == PNG
    assert image.mime_type == "image/png"


def test_decode_avatar_blob_inline_short_is_rejected():
    assert decode_avatar_blob(b"\x01" + b"\xff\xd8" + b"\x00" * 20) is None


def test_decode_avatar_blob_external_reference(tmp_path):
    (tmp_path / EXTERNAL_NAME).write_bytes(JPEG)
    blob = b"\x02" + EXTERNAL_NAME.encode("ascii") + b"\x00"
    assert len(blob) == 38

    image = decode_avatar_blob(blob, tmp_path)
    assert image is not None
    assert image.data == JPEG
    assert image.mime_type == "image/jpeg"


def test_decode_avatar_blob_external_missing_or_empty(tmp_path):
    blob = b"\x02" + EXTERNAL_NAME.encode("ascii") + b"\x00"
    assert decode_avatar_blob(blob, tmp_path) is None

    (tmp_path / EXTERNAL_NAME).write_bytes(b"")
    assert decode_avatar_blob(blob, tmp_path) is None
    assert decode_avatar_blob(blob, None) is None


def test_decode_avatar_blob_bare_image():
    image = decode_avatar_blob(PNG)
    assert image is not None
    assert image.data == PNG


def test_decode_avatar_blob_unknown_layout():
    assert decode_avatar_blob(b"\x07" + b"\x00" * 300) is None


def test_decode_avatar_blob_non_ascii_reference_does_not_raise(tmp_path):
    blob = b"\x02" + b"\xff" * 36 + b"\x00"
    assert decode_avatar_blob(blob, tmp_path) is None


def test_image_data_uri():
    image = decode_avatar_blob(b"\x01" + PNG)
    assert image.to_data_uri().startswith("data:image/png;base64,iVBORw0KGgo")
