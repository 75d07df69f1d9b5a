"""Data model tests: package specs, frames and link rectangles."""

import dataclasses

import pytest

from peridot.types import InvalidPackageSpec, LinkRect, Package, PackageFile, PackageSpec, RenderResult


class TestPackageSpec:
    @pytest.mark.parametrize(
        "raw",
        ["@preview/example:0.1.0", "preview/example:0.1.0", "preview/example/0.1.0", "  @preview/example:0.1.0  "],
    )
    def test_accepted_forms_normalize(self, raw):
        spec = PackageSpec.parse(raw)
        assert (spec.namespace, spec.name, spec.version) == ("preview", "example", "0.1.0")
        assert spec.canonical == "@preview/example:0.1.0"
        assert str(spec) == "@preview/example:0.1.0"

    @pytest.mark.parametrize(
        "raw",
        ["", "@preview", "preview/example", "@preview/example:0.1.0/extra", "@preview/../x:1", "@pre view/x:1"],
    )
    def test_malformed_rejected(self, raw):
        with pytest.raises(InvalidPackageSpec):
            PackageSpec.parse(raw)

    def test_invalid_spec_is_value_error(self):
        with pytest.raises(ValueError):
            PackageSpec.parse("nope")

    def test_archive_name(self):
        assert PackageSpec.parse("@preview/example:0.1.0").archive_name == "example-0.1.0.tar.gz"


class TestRenderResult:
    def test_valid_frame(self):
        result = RenderResult(width=2, height=3, pixels=bytes(24))
        assert result.links == ()

    def test_wrong_length_rejected(self):
        with pytest.raises(ValueError, match="expected 24"):
            RenderResult(width=2, height=3, pixels=bytes(23))

    def test_empty_frame(self):
        assert RenderResult(width=0, height=0, pixels=b"").pixels == b""

    def test_links_frozen_as_tuple(self):
        link = LinkRect(0, 0, 1, 1, "peridot://a")
        result = RenderResult(width=1, height=1, pixels=bytes(4), links=[link])
        assert result.links == (link,)
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.links = ()


class TestLinkRect:
    def test_contains_is_inclusive_on_every_edge(self):
        rect = LinkRect(x=20, y=20, width=100, height=40, url="u")
        assert rect.contains(20, 20)
        assert rect.contains(120, 60)
        assert rect.contains(20, 60)
        assert rect.contains(120, 20)
        assert not rect.contains(19.9, 30)
        assert not rect.contains(120.1, 30)
        assert not rect.contains(50, 60.1)

    def test_immutable(self):
        rect = LinkRect(0, 0, 1, 1, "u")
        with pytest.raises(dataclasses.FrozenInstanceError):
            rect.x = 5


def test_package_file_map():
    package = Package(spec="@preview/example:0.1.0", files=[PackageFile("lib.typ", b"x")])
    assert package.file_map() == {"lib.typ": b"x"}
