"""Wire protocol tests: line framing and payload validation."""

import pytest

from peridot.protocol import (
    ProtocolError,
    b64decode,
    decode_message,
    encode_message,
    package_payload,
    parse_package_command,
    parse_render_command,
    parse_render_result,
    parse_reply,
)
from peridot.types import Package, PackageFile


class TestFraming:
    def test_encode_is_one_compact_line(self):
        line = encode_message({"id": 1, "type": "INIT"})
        assert line == b'{"id":1,"type":"INIT"}\n'

    def test_decode_accepts_bytes_and_text(self):
        assert decode_message(b'{"id": 2}\n') == {"id": 2}
        assert decode_message('{"id": 2}') == {"id": 2}

    def test_decode_rejects_garbage(self):
        with pytest.raises(ProtocolError):
            decode_message(b"{oops")

    def test_decode_rejects_non_object(self):
        with pytest.raises(ProtocolError):
            decode_message(b"[1, 2]")

    def test_unicode_survives(self):
        assert decode_message(encode_message({"source": "Grüße ✓"})) == {"source": "Grüße ✓"}


class TestPayloads:
    def test_render_command(self):
        request = parse_render_command({"id": 1, "type": "RENDER", "source": "s", "filePath": "a.typ", "dpi": 1.5})
        assert (request.source, request.file_path, request.dpi) == ("s", "a.typ", 1.5)

    def test_render_command_rejects_zero_dpi(self):
        with pytest.raises(ProtocolError):
            parse_render_command({"source": "s", "filePath": "a.typ", "dpi": 0})

    def test_package_command(self):
        package = Package(spec="@preview/a:1.0.0", files=[PackageFile("lib.typ", b"\x00\xff")])
        parsed = parse_package_command(package_payload(package))
        assert parsed == package

    def test_package_command_rejects_bad_base64(self):
        with pytest.raises(ProtocolError):
            parse_package_command({"package": {"spec": "@preview/a:1.0.0", "files": [{"path": "x", "bytes": "%%%"}]}})

    def test_reply_requires_id(self):
        with pytest.raises(ProtocolError):
            parse_reply({"type": "READY"})

    def test_render_result_size_checked(self):
        with pytest.raises(ProtocolError):
            parse_render_result({"width": 1, "height": 1, "data": "AAAA"})

    def test_render_result_missing_fields(self):
        with pytest.raises(ProtocolError):
            parse_render_result({"width": 1})

    def test_b64decode_strict(self):
        assert b64decode("AAAAAA==") == b"\x00\x00\x00\x00"
        with pytest.raises(ProtocolError):
            b64decode("not base64!")
