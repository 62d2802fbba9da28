"""Tests for ledger enum ordering and the accepted-formats bitmask."""

import pytest

from sdmarket.base.errors import InvalidFormatError, InvalidFormatsMaskError
from sdmarket.shared.enums import (
    DATA_FORMAT_ORDER,
    MAX_FORMATS_MASK,
    DataFormat,
    SubmissionStatus,
    decode_formats_mask,
    encode_formats,
    validate_formats_mask,
)


class TestFormatIndex:

    def test_contract_order(self):
        assert [f.value for f in DATA_FORMAT_ORDER] == ["AUDIO", "CSV", "IMAGE", "TEXT", "VIDEO", "MIXED"]

    def test_index_lookup(self):
        assert DataFormat.from_index(1) is DataFormat.CSV
        assert DataFormat.CSV.ledger_index == 1
        assert DataFormat.MIXED.ledger_index == 5

    @pytest.mark.parametrize("bad", [-1, 6, 255, "x", None])
    def test_unknown_index_rejected(self, bad):
        with pytest.raises(InvalidFormatError):
            DataFormat.from_index(bad)

    def test_name_is_case_insensitive(self):
        assert DataFormat.from_name(" image ") is DataFormat.IMAGE

    def test_unknown_name_rejected(self):
        with pytest.raises(InvalidFormatError):
            DataFormat.from_name("PARQUET")


class TestFormatsMask:

    def test_every_valid_mask_survives_decode_encode(self):
        for mask in range(1, MAX_FORMATS_MASK + 1):
            assert encode_formats(decode_formats_mask(mask)) == mask

    def test_zero_mask_is_invalid_not_empty(self):
        with pytest.raises(InvalidFormatsMaskError):
            decode_formats_mask(0)

    def test_out_of_range_mask(self):
        with pytest.raises(InvalidFormatsMaskError):
            validate_formats_mask(MAX_FORMATS_MASK + 1)

    def test_bool_is_not_a_mask(self):
        with pytest.raises(InvalidFormatsMaskError):
            validate_formats_mask(True)

    def test_encoding_empty_set_fails(self):
        with pytest.raises(InvalidFormatsMaskError):
            encode_formats([])

    def test_bit_positions(self):
        assert decode_formats_mask(0b000110) == [DataFormat.CSV, DataFormat.IMAGE]
        assert encode_formats(["audio", DataFormat.MIXED]) == 0b100001


def test_terminal_submission_statuses():
    assert SubmissionStatus.PAID.is_terminal
    assert SubmissionStatus.REFUNDED.is_terminal
    assert not SubmissionStatus.APPROVED.is_terminal
