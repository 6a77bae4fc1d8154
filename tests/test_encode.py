"""
Unit tests for QR symbol encoding, ASCII armor and page geometry
"""

import os
import sys

import pytest

# Add parent directory to path to import paper_age
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import paper_age as pa
from qrcode import util as qr_util


def payload_of(length: int) -> bytes:
    return (bytes(range(256)) * (length // 256 + 1))[:length]


class TestCapacityTable:
    """Test the static byte-mode capacity table"""

    def test_table_covers_all_versions(self):
        for level in pa.ErrorCorrection:
            assert len(pa.QR_BYTE_CAPACITY[level]) == pa.MAX_QR_VERSION

    def test_capacity_non_decreasing(self):
        """Capacity grows with version at every level"""
        for level in pa.ErrorCorrection:
            capacities = pa.QR_BYTE_CAPACITY[level]
            assert all(a < b for a, b in zip(capacities, capacities[1:]))

    def test_stronger_error_correction_holds_less(self):
        for version in range(1, pa.MAX_QR_VERSION + 1):
            assert (pa.get_qr_capacity(version, pa.ErrorCorrection.L)
                    > pa.get_qr_capacity(version, pa.ErrorCorrection.M)
                    > pa.get_qr_capacity(version, pa.ErrorCorrection.Q)
                    > pa.get_qr_capacity(version, pa.ErrorCorrection.H))

    def test_matches_qrcode_bit_limits(self):
        """Table agrees with the data bits qrcode reserves per version"""
        for level, constant in pa.ERROR_CORRECTION_LEVELS.items():
            for version in range(1, pa.MAX_QR_VERSION + 1):
                overhead = 4 + qr_util.length_in_bits(qr_util.MODE_8BIT_BYTE, version)
                expected = (qr_util.BIT_LIMIT_TABLE[constant][version] - overhead) // 8
                assert pa.get_qr_capacity(version, level) == expected, (version, level)

    def test_known_capacities(self):
        assert pa.get_qr_capacity(1, pa.ErrorCorrection.L) == 17
        assert pa.get_qr_capacity(10, pa.ErrorCorrection.M) == 213
        assert pa.get_qr_capacity(40, pa.ErrorCorrection.L) == 2953
        assert pa.get_qr_capacity(40, pa.ErrorCorrection.H) == 1273


class TestVersionSelection:
    """Test smallest-fitting version selection"""

    def test_qr_modules(self):
        """Test module count formula"""
        assert pa.get_qr_modules(1) == 21
        assert pa.get_qr_modules(10) == 57
        assert pa.get_qr_modules(40) == 177

    def test_select_smallest_version(self):
        spec = pa.select_qr_version(14, pa.ErrorCorrection.M)

        assert spec.version == 1
        assert spec.capacity == 14
        assert spec.modules == 21

    @pytest.mark.parametrize("level", list(pa.ErrorCorrection))
    @pytest.mark.parametrize("version", [1, 9, 10, 25, 39])
    def test_capacity_boundary(self, version, level):
        """Exactly at capacity fits; one byte more moves to the next version"""
        capacity = pa.get_qr_capacity(version, level)

        assert pa.select_qr_version(capacity, level).version == version
        assert pa.select_qr_version(capacity + 1, level).version == version + 1

    def test_capacity_exceeded(self):
        max_capacity = pa.get_qr_capacity(40, pa.ErrorCorrection.M)

        with pytest.raises(pa.CapacityExceeded) as excinfo:
            pa.select_qr_version(max_capacity + 1, pa.ErrorCorrection.M)

        assert excinfo.value.payload_len == max_capacity + 1
        assert excinfo.value.max_capacity == max_capacity
        assert f"{max_capacity + 1:,}" in str(excinfo.value)
        assert f"{max_capacity:,}" in str(excinfo.value)

    def test_monotonic_version_choice(self):
        """Longer payloads never get a smaller version"""
        lengths = [0, 1, 50, 100, 200, 500, 1000, 1500, 2000, 2331]
        versions = [pa.select_qr_version(n).version for n in lengths]

        assert versions == sorted(versions)


class TestEncodeSymbol:
    """Test module grid generation"""

    def test_grid_size_matches_version(self):
        grid = pa.encode_symbol(payload_of(100))

        assert grid.spec.version == pa.select_qr_version(100).version
        assert grid.size == pa.get_qr_modules(grid.spec.version)
        assert all(len(row) == grid.size for row in grid.modules)

    def test_finder_pattern_present(self):
        """Top-left finder pattern: dark outer ring, light inner ring"""
        grid = pa.encode_symbol(b"finder")

        assert all(grid.modules[0][:7])
        assert all(grid.modules[6][:7])
        assert not any(grid.modules[1][1:6])

    def test_deterministic(self):
        """Same payload and level always give the same grid"""
        payload = os.urandom(300)

        first = pa.encode_symbol(payload, pa.ErrorCorrection.Q)
        second = pa.encode_symbol(payload, pa.ErrorCorrection.Q)

        assert first == second

    def test_payload_at_capacity_encodes(self):
        """qrcode accepts a payload exactly at the table capacity"""
        capacity = pa.get_qr_capacity(5, pa.ErrorCorrection.H)

        grid = pa.encode_symbol(payload_of(capacity), pa.ErrorCorrection.H)

        assert grid.spec.version == 5

    def test_digits_use_byte_capacity(self):
        """Numeric-looking payloads are still sized as bytes"""
        grid = pa.encode_symbol(b"1" * 17, pa.ErrorCorrection.L)

        assert grid.spec.version == 1

    def test_largest_symbol(self):
        capacity = pa.get_qr_capacity(40, pa.ErrorCorrection.H)

        grid = pa.encode_symbol(payload_of(capacity), pa.ErrorCorrection.H)

        assert grid.spec.version == 40
        assert grid.size == 177

    def test_too_large_payload(self):
        capacity = pa.get_qr_capacity(40, pa.ErrorCorrection.H)

        with pytest.raises(pa.CapacityExceeded) as excinfo:
            pa.encode_symbol(payload_of(capacity + 1), pa.ErrorCorrection.H)

        assert excinfo.value.error_correction == pa.ErrorCorrection.H

    def test_render_grid_image(self):
        """Rasterized image includes the quiet zone"""
        grid = pa.encode_symbol(b"image")

        img = pa.render_grid_image(grid, box_size=4)

        assert img.size == ((grid.size + 2 * pa.QUIET_ZONE_MODULES) * 4,) * 2
        assert img.getpixel((0, 0)) == 255
        offset = pa.QUIET_ZONE_MODULES * 4
        assert img.getpixel((offset, offset)) == 0


class TestArmor:
    """Test ASCII armor of envelopes"""

    def test_armor_round_trip(self):
        envelope = os.urandom(500)

        assert pa.dearmor(pa.armor(envelope)) == envelope

    def test_armor_format(self):
        armored = pa.armor(os.urandom(200)).decode('ascii')
        lines = armored.strip().split("\n")

        assert lines[0] == pa.ARMOR_BEGIN
        assert lines[-1] == pa.ARMOR_END
        assert all(len(line) <= pa.ARMOR_LINE_LENGTH for line in lines[1:-1])

    def test_dearmor_accepts_crlf_and_whitespace(self):
        envelope = os.urandom(100)
        armored = pa.armor(envelope).decode('ascii').replace("\n", "\r\n")

        assert pa.dearmor("\n  " + armored + "  \n") == envelope

    def test_dearmor_missing_markers(self):
        with pytest.raises(pa.DecodeError, match="markers"):
            pa.dearmor("aGVsbG8=")

    def test_dearmor_invalid_base64(self):
        with pytest.raises(pa.DecodeError, match="base64"):
            pa.dearmor(f"{pa.ARMOR_BEGIN}\n!!!notbase64!!!\n{pa.ARMOR_END}\n")

    def test_dearmor_non_ascii(self):
        with pytest.raises(pa.DecodeError):
            pa.dearmor(b"\xff\xfe")


class TestPageGeometry:
    """Test page size lookup"""

    def test_a4_dimensions(self):
        geometry = pa.get_page_geometry(pa.PageSize.A4)

        assert geometry.width_mm == pytest.approx(210, abs=0.1)
        assert geometry.height_mm == pytest.approx(297, abs=0.1)

    def test_letter_dimensions(self):
        geometry = pa.get_page_geometry("letter")

        assert geometry.width_mm == pytest.approx(215.9, abs=0.1)
        assert geometry.height_mm == pytest.approx(279.4, abs=0.1)

    def test_lookup_case_insensitive(self):
        assert pa.resolve_page_size("LEGAL") == pa.PageSize.LEGAL
        assert pa.resolve_page_size(" A4 ") == pa.PageSize.A4

    def test_every_page_size_has_geometry(self):
        for page_size in pa.PageSize:
            assert pa.PAGE_GEOMETRY[page_size].margin_mm > 0

    def test_unknown_page_size(self):
        with pytest.raises(pa.UnknownPageSize, match="Unknown page size"):
            pa.get_page_geometry("tabloid")

    def test_unknown_page_size_is_value_error(self):
        with pytest.raises(ValueError):
            pa.resolve_page_size(42)
